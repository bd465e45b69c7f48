# Meridian Protocol Detection
# Guesses which protocol a server speaks by fetching GET {endpoint}/info
# and looking at the shape of the JSON it returns.
#
# Only used when a server is registered without a declared type. The host
# selector never calls into this module, so a detection failure can never
# block routing to an already-tagged host.

import logging
import os

import requests

from registry import ProtocolType, parse_protocol

log = logging.getLogger("meridian")

DETECT_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_DETECT_TIMEOUT_SEC", "5"))

# Keys whose presence in an /info document marks the protocol.
MCP_MARKERS = ("mcpVersion", "protocolVersion")
A2A_MARKERS = ("agentCapabilities", "agentType", "a2aVersion")


def info_url(endpoint: str) -> str:
    return endpoint.rstrip("/") + "/info"


def classify_info(data) -> ProtocolType:
    """Map an /info document to a protocol type. Anything unrecognized is misc."""
    if not isinstance(data, dict):
        return ProtocolType.MISC
    if str(data.get("protocol", "")).lower() == "mcp" or any(k in data for k in MCP_MARKERS):
        return ProtocolType.MCP
    if any(k in data for k in A2A_MARKERS):
        return ProtocolType.A2A
    return ProtocolType.MISC


class ProtocolDetector:
    """Interface: detect(endpoint) -> ProtocolType. Must not raise."""

    def detect(self, endpoint: str) -> ProtocolType:
        raise NotImplementedError


class StaticDetector(ProtocolDetector):
    """Always answers the same type. Backs `meridian server-add --no-detect`."""

    def __init__(self, protocol=ProtocolType.MISC):
        self.protocol = parse_protocol(protocol) or ProtocolType.MISC

    def detect(self, endpoint: str) -> ProtocolType:
        return self.protocol


class InfoEndpointDetector(ProtocolDetector):
    def __init__(self, timeout: float = DETECT_TIMEOUT_SEC):
        self.timeout = timeout

    def detect(self, endpoint: str) -> ProtocolType:
        url = info_url(endpoint)
        try:
            resp = requests.get(url, timeout=self.timeout)
            if resp.status_code != 200:
                log.debug("DETECT %s returned %d, assuming misc", url, resp.status_code)
                return ProtocolType.MISC
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.debug("DETECT %s failed: %s", url, e)
            return ProtocolType.MISC

        protocol = classify_info(data)
        log.info("DETECT %s -> %s", endpoint, protocol.value)
        return protocol

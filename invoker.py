# Meridian Remote Invoker
# Exactly one POST {host.endpoint}/execute per dispatch. No retries.
#
# Request body:  {"server", "server_type", "function", "parameters"}
# Success:       2xx with a JSON body, which becomes the execution result
# Failure:       timeout, connection error, non-2xx, or a body that is not JSON
#
# Failures never escape invoke(); they come back as Invocation(ok=False).

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests

from registry import Host, ProtocolType, parse_protocol

log = logging.getLogger("meridian")

INVOKE_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_INVOKE_TIMEOUT_SEC", "30"))
MAX_ERROR_BODY_CHARS = 500


class RemoteInvocationFailure(Exception):
    """Raised inside the invoker for any failed call, reported as an Invocation."""


@dataclass
class Invocation:
    ok: bool
    elapsed_ms: int
    result: Any = None
    error: Optional[str] = None


def execute_url(endpoint: str) -> str:
    return endpoint.rstrip("/") + "/execute"


class RemoteInvoker:
    def __init__(self, timeout: float = INVOKE_TIMEOUT_SEC):
        self.timeout = timeout

    def invoke(
        self,
        host: Host,
        server_name: str,
        protocol_type,
        function_name: str,
        parameters=None,
    ) -> Invocation:
        """Call the host once. elapsed_ms covers only the remote call."""
        protocol = parse_protocol(protocol_type) or ProtocolType.MISC
        url = execute_url(host.endpoint)
        body = {
            "server": server_name,
            "server_type": protocol.value,
            "function": function_name,
            "parameters": parameters,
        }

        started = time.monotonic()
        try:
            result = self._call(url, body)
        except RemoteInvocationFailure as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            log.warning(
                "INVOKE FAILED host=%s %s.%s | %dms | %s",
                host.host_id, server_name, function_name, elapsed_ms, e,
            )
            return Invocation(ok=False, elapsed_ms=elapsed_ms, error=str(e))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "INVOKE OK host=%s %s.%s | %dms",
            host.host_id, server_name, function_name, elapsed_ms,
        )
        return Invocation(ok=True, elapsed_ms=elapsed_ms, result=result)

    def _call(self, url, body):
        try:
            resp = requests.post(url, json=body, timeout=self.timeout)
        except requests.Timeout:
            raise RemoteInvocationFailure(f"Host timed out after {self.timeout:g}s")
        except requests.RequestException as e:
            raise RemoteInvocationFailure(f"Host unreachable: {e}")

        if not 200 <= resp.status_code < 300:
            text = (resp.text or "")[:MAX_ERROR_BODY_CHARS]
            raise RemoteInvocationFailure(f"Host returned {resp.status_code}: {text}")

        try:
            return resp.json()
        except ValueError:
            raise RemoteInvocationFailure("Host returned malformed JSON")

# Meridian Host Selector
# Picks one host for a dispatch from the registry's online hosts.
#
# Eligibility: online, speaks the requested protocol (compatible set or
# primary type; any host when no protocol is requested), and carries every
# required capability tag.
#
# Ranking is a placeholder until a real ranking policy exists: hosts in the
# preferred location first, then lowest host_id.

import logging
from dataclasses import dataclass
from typing import Optional, Union

from registry import Host, HostRegistry, HostStatus, ProtocolType, parse_protocol

log = logging.getLogger("meridian")


@dataclass
class Selection:
    host: Host
    location_match: bool = False


@dataclass
class NoHostAvailable:
    """Selection came back empty. A value, not an error."""
    reason: str
    protocol_type: Optional[str] = None


def is_eligible(host: Host, required_capabilities=(), protocol_type=None) -> bool:
    if host.status != HostStatus.ONLINE.value:
        return False
    if protocol_type is not None and not host.speaks(protocol_type):
        return False
    return set(required_capabilities or ()) <= set(host.capabilities)


def select_host(
    hosts,
    required_capabilities=(),
    protocol_type=None,
    preferred_location=None,
) -> Union[Selection, NoHostAvailable]:
    """Choose a host from a snapshot of hosts. Never raises for an empty result."""
    protocol = parse_protocol(protocol_type)
    required = sorted({str(c).strip() for c in (required_capabilities or ()) if str(c).strip()})

    candidates = [h for h in hosts if is_eligible(h, required, protocol)]
    if not candidates:
        reason = "No available compute hosts found"
        if protocol:
            reason += f" for protocol {protocol.value}"
        if required:
            reason += f" with capabilities {','.join(required)}"
        log.warning(
            "SELECT NONE: protocol=%s caps=%s among %d hosts",
            protocol.value if protocol else "-", ",".join(required) or "-", len(hosts),
        )
        return NoHostAvailable(reason=reason, protocol_type=protocol.value if protocol else None)

    def rank(h):
        in_location = bool(preferred_location) and h.location == preferred_location
        return (not in_location, h.host_id)

    best = min(candidates, key=rank)
    location_match = bool(preferred_location) and best.location == preferred_location
    log.info(
        "SELECT %s | protocol=%s | location=%s%s | %d candidates",
        best.host_id, protocol.value if protocol else "-", best.location or "-",
        " (preferred)" if location_match else "", len(candidates),
    )
    return Selection(host=best, location_match=location_match)


class HostSelector:
    """Binds select_host() to a registry snapshot of online hosts."""

    def __init__(self, registry: HostRegistry):
        self.registry = registry

    def select(
        self,
        required_capabilities=(),
        protocol_type: Optional[ProtocolType] = None,
        preferred_location: Optional[str] = None,
    ) -> Union[Selection, NoHostAvailable]:
        return select_host(
            self.registry.list_online_hosts(),
            required_capabilities=required_capabilities,
            protocol_type=protocol_type,
            preferred_location=preferred_location,
        )

"""Tests for host selection: eligibility predicate, tie-break, empty results."""

import pytest

from db import Store
from registry import Host, HostRegistry, ProtocolType
from selector import HostSelector, NoHostAvailable, Selection, is_eligible, select_host


def _host(host_id, status="online", compat=(), primary="misc", caps=(), location=None):
    return Host(
        host_id=host_id,
        name=host_id,
        endpoint=f"http://{host_id}",
        status=status,
        server_type=primary,
        compatible_server_types=list(compat),
        capabilities=list(caps),
        location=location,
    )


class TestEligibility:
    def test_offline_never_eligible(self):
        for status in ("offline", "busy", "maintenance"):
            assert not is_eligible(_host("h", status=status))

    def test_protocol_via_compatible_set(self):
        assert is_eligible(_host("h", compat=["mcp"]), protocol_type=ProtocolType.MCP)
        assert not is_eligible(_host("h", compat=["mcp"]), protocol_type=ProtocolType.A2A)

    def test_protocol_via_primary_type(self):
        assert is_eligible(_host("h", primary="a2a"), protocol_type=ProtocolType.A2A)

    def test_no_protocol_accepts_any_online_host(self):
        assert is_eligible(_host("h", compat=["a2a"]))

    def test_capabilities_subset(self):
        h = _host("h", caps=["gpu", "cuda"])
        assert is_eligible(h, required_capabilities=["gpu"])
        assert is_eligible(h, required_capabilities=[])
        assert not is_eligible(h, required_capabilities=["gpu", "tpu"])


class TestSelectHost:
    def test_returns_only_eligible(self):
        hosts = [
            _host("a", status="offline", compat=["mcp"]),
            _host("b", compat=["a2a"]),
            _host("c", compat=["mcp"]),
        ]
        sel = select_host(hosts, protocol_type="mcp")
        assert isinstance(sel, Selection)
        assert sel.host.host_id == "c"

    def test_lowest_id_wins_ties(self):
        hosts = [_host("z", compat=["mcp"]), _host("m", compat=["mcp"]), _host("q", compat=["mcp"])]
        assert select_host(hosts, protocol_type="mcp").host.host_id == "m"

    def test_preferred_location_ranks_first(self):
        hosts = [_host("a", location="us-east"), _host("b", location="eu-west")]
        sel = select_host(hosts, preferred_location="eu-west")
        assert sel.host.host_id == "b"
        assert sel.location_match is True

    def test_preferred_location_is_soft(self):
        hosts = [_host("a", location="us-east")]
        sel = select_host(hosts, preferred_location="mars")
        assert sel.host.host_id == "a"
        assert sel.location_match is False

    def test_empty_result_is_a_value(self):
        sel = select_host([_host("a", compat=["mcp"])], protocol_type="a2a")
        assert isinstance(sel, NoHostAvailable)
        assert sel.protocol_type == "a2a"
        assert sel.reason.startswith("No available compute hosts found")

    def test_no_hosts_at_all(self):
        assert isinstance(select_host([]), NoHostAvailable)

    def test_missing_capability(self):
        sel = select_host([_host("a", caps=["cpu"])], required_capabilities=["gpu"])
        assert isinstance(sel, NoHostAvailable)
        assert "gpu" in sel.reason


class TestHostSelector:
    def test_reads_online_hosts_from_registry(self, tmp_path):
        registry = HostRegistry(Store(db_path=str(tmp_path / "sel.db")))
        registry.register_host(host_id="a", name="a", endpoint="http://a", compatible_server_types=["mcp"])
        registry.register_host(host_id="b", name="b", endpoint="http://b", compatible_server_types=["mcp"])
        registry.set_status("a", "offline")

        sel = HostSelector(registry).select(protocol_type=ProtocolType.MCP)
        assert sel.host.host_id == "b"

        registry.set_status("b", "maintenance")
        assert isinstance(HostSelector(registry).select(protocol_type=ProtocolType.MCP), NoHostAvailable)

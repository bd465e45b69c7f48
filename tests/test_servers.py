"""Tests for the server catalog."""

import pytest

from db import Store
from detection import StaticDetector
from servers import ServerCatalog


class _CountingDetector(StaticDetector):
    def __init__(self, protocol):
        super().__init__(protocol)
        self.calls = []

    def detect(self, endpoint):
        self.calls.append(endpoint)
        return super().detect(endpoint)


@pytest.fixture
def store(tmp_path):
    return Store(db_path=str(tmp_path / "servers.db"))


class TestRegisterServer:
    def test_declared_type_skips_detection(self, store):
        detector = _CountingDetector("a2a")
        s = ServerCatalog(store, detector).register_server("search", "http://svc", server_type="mcp")
        assert s.server_type == "mcp"
        assert detector.calls == []

    def test_missing_type_is_detected(self, store):
        detector = _CountingDetector("a2a")
        s = ServerCatalog(store, detector).register_server("agent", "http://agent")
        assert s.server_type == "a2a"
        assert detector.calls == ["http://agent"]

    def test_persisted(self, store):
        catalog = ServerCatalog(store, StaticDetector())
        s = catalog.register_server(
            "tool", "https://tool", server_type="misc", owner_id="u1",
            is_public=True, description="d", code="print(1)", app_url="https://app",
        )
        got = catalog.get_server(s.server_id)
        assert got == s
        assert got.is_public is True

    def test_validation(self, store):
        catalog = ServerCatalog(store, StaticDetector())
        with pytest.raises(ValueError):
            catalog.register_server("", "http://x")
        with pytest.raises(ValueError):
            catalog.register_server("x", "not-a-url")
        with pytest.raises(ValueError):
            catalog.register_server("x", "http://x", server_type="corba")


class TestListServers:
    def test_filters(self, store):
        catalog = ServerCatalog(store, StaticDetector())
        catalog.register_server("a", "http://a", server_type="mcp", owner_id="u1", is_public=True)
        catalog.register_server("b", "http://b", server_type="a2a", owner_id="u1")
        catalog.register_server("c", "http://c", server_type="mcp", owner_id="u2")

        assert len(catalog.list_servers()) == 3
        assert {s.name for s in catalog.list_servers(server_type="mcp")} == {"a", "c"}
        assert {s.name for s in catalog.list_servers(owner_id="u1")} == {"a", "b"}
        assert [s.name for s in catalog.list_servers(public_only=True)] == ["a"]

    def test_get_missing(self, store):
        assert ServerCatalog(store, StaticDetector()).get_server("nope") is None

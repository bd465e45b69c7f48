# Meridian Server Catalog
# Named logical servers that requesters address by name. A server carries a
# protocol tag; which physical host serves it is decided per dispatch and is
# never stored here.
#
# code / app_url are opaque attachments. Nothing in Meridian executes them.

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Optional

from db import Store
from detection import InfoEndpointDetector, ProtocolDetector
from registry import ProtocolType, parse_protocol

log = logging.getLogger("meridian")


@dataclass
class ServerDefinition:
    server_id: str
    name: str
    endpoint: str
    server_type: str = ProtocolType.MISC.value
    owner_id: str = ""
    is_public: bool = False
    description: Optional[str] = None
    code: Optional[str] = None
    app_url: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self):
        return asdict(self)


def _server_from_row(row) -> ServerDefinition:
    return ServerDefinition(
        server_id=row["server_id"],
        owner_id=row["owner_id"],
        name=row["name"],
        server_type=row["server_type"],
        endpoint=row["endpoint"],
        is_public=bool(row["is_public"]),
        description=row["description"],
        code=row["code"],
        app_url=row["app_url"],
        created_at=row["created_at"],
    )


class ServerCatalog:
    def __init__(self, store: Optional[Store] = None, detector: Optional[ProtocolDetector] = None):
        self.store = store or Store()
        self.detector = detector or InfoEndpointDetector()

    def register_server(
        self,
        name: str,
        endpoint: str,
        server_type=None,
        owner_id: str = "",
        is_public: bool = False,
        description: Optional[str] = None,
        code: Optional[str] = None,
        app_url: Optional[str] = None,
    ) -> ServerDefinition:
        """Add a server. With no declared server_type the detector decides."""
        name = (name or "").strip()
        endpoint = (endpoint or "").strip()
        if not name:
            raise ValueError("Server name is required")
        if not endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Server endpoint must be an http(s) URL, got {endpoint!r}")

        protocol = parse_protocol(server_type)
        detected = protocol is None
        if detected:
            protocol = self.detector.detect(endpoint)

        server = ServerDefinition(
            server_id=str(uuid.uuid4()),
            owner_id=owner_id or "",
            name=name,
            endpoint=endpoint,
            server_type=protocol.value,
            is_public=bool(is_public),
            description=description,
            code=code,
            app_url=app_url,
        )

        ph = self.store.ph
        with self.store.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO servers(server_id, owner_id, name, server_type, endpoint,
                                    is_public, description, code, app_url, created_at)
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                """,
                (
                    server.server_id, server.owner_id, server.name, server.server_type,
                    server.endpoint, server.is_public, server.description, server.code,
                    server.app_url, server.created_at,
                ),
            )

        log.info(
            "SERVER REGISTERED %s | %s | type=%s%s",
            server.server_id, name, server.server_type, " (detected)" if detected else "",
        )
        return server

    def get_server(self, server_id: str) -> Optional[ServerDefinition]:
        ph = self.store.ph
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM servers WHERE server_id = {ph}", (server_id,)
            ).fetchone()
        return _server_from_row(row) if row else None

    def list_servers(self, server_type=None, owner_id=None, public_only=False):
        """Servers newest first, filtered by type, owner, and visibility."""
        ph = self.store.ph
        clauses, params = [], []
        protocol = parse_protocol(server_type)
        if protocol:
            clauses.append(f"server_type = {ph}")
            params.append(protocol.value)
        if owner_id:
            clauses.append(f"owner_id = {ph}")
            params.append(owner_id)
        if public_only:
            clauses.append(f"is_public = {ph}")
            params.append(True)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.store.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM servers {where} ORDER BY created_at DESC, server_id ASC",
                params,
            ).fetchall()
        return [_server_from_row(r) for r in rows]


_server_catalog: Optional[ServerCatalog] = None


def get_server_catalog() -> ServerCatalog:
    global _server_catalog
    if _server_catalog is None:
        _server_catalog = ServerCatalog()
    return _server_catalog

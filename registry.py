# Meridian Host Registry
# Source of truth for which compute hosts exist, which protocols they speak,
# and how much work they have done.
#
# Host lifecycle: registered (online) → operator toggles status / profit share.
# Hosts are never deleted. Counters are only moved by update_statistics(),
# a single UPDATE ... SET x = x + ? inside a write transaction. Never
# read-modify-write a host row in Python.

import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import Store
from money import CREDIT_QUANTUM, ZERO, as_number, from_units, to_decimal, to_units

log = logging.getLogger("meridian")

DEFAULT_PROFIT_SHARE = Decimal(os.environ.get("MERIDIAN_DEFAULT_PROFIT_SHARE", "70"))


# ── Enums ─────────────────────────────────────────────────────────────

class HostStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    MAINTENANCE = "maintenance"


class ProtocolType(str, Enum):
    """Calling convention a server or host speaks."""
    MCP = "mcp"     # Model Context Protocol
    A2A = "a2a"     # Agent-to-Agent
    MISC = "misc"


def parse_protocol(value) -> Optional[ProtocolType]:
    """Normalize a protocol tag. Empty means "no protocol requested"."""
    if value is None or value == "":
        return None
    if isinstance(value, ProtocolType):
        return value
    try:
        return ProtocolType(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown protocol type {value!r}, must be one of "
            f"{[p.value for p in ProtocolType]}"
        )


def parse_host_status(value) -> HostStatus:
    if isinstance(value, HostStatus):
        return value
    try:
        return HostStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Invalid host status {value!r}, must be one of "
            f"{[s.value for s in HostStatus]}"
        )


def validate_profit_share(value) -> Decimal:
    share = to_decimal(value)
    if share < 0 or share > 100:
        raise ValueError(f"Profit share must be between 0 and 100, got {share}")
    # Same scale as the NUMERIC(7, 4) column
    if share != share.quantize(CREDIT_QUANTUM):
        raise ValueError(
            f"Profit share {share} has more than 4 decimal places"
        )
    return share


class HostNotFound(LookupError):
    pass


# ── Host ──────────────────────────────────────────────────────────────

@dataclass
class Host:
    """A registered compute provider."""
    host_id: str
    name: str
    endpoint: str
    owner_id: str = ""
    status: str = HostStatus.ONLINE.value
    location: Optional[str] = None
    server_type: str = ProtocolType.MISC.value          # Declared primary protocol
    compatible_server_types: list = field(default_factory=list)
    capabilities: list = field(default_factory=list)
    profit_share_percentage: Decimal = DEFAULT_PROFIT_SHARE
    total_executions: int = 0
    successful_executions: int = 0
    total_earnings: Decimal = ZERO
    registered_at: float = field(default_factory=time.time)
    last_seen_at: Optional[float] = None

    def speaks(self, protocol: ProtocolType) -> bool:
        return (
            protocol.value in self.compatible_server_types
            or protocol.value == self.server_type
        )

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions

    def to_dict(self) -> dict:
        d = asdict(self)
        d["profit_share_percentage"] = as_number(self.profit_share_percentage)
        d["total_earnings"] = as_number(self.total_earnings)
        d["success_rate"] = round(self.success_rate, 4)
        return d


def _decode_list(store, value):
    decoded = store.decode_json(value)
    return decoded if isinstance(decoded, list) else []


def _host_from_row(store, row) -> Host:
    return Host(
        host_id=row["host_id"],
        owner_id=row["owner_id"],
        name=row["name"],
        endpoint=row["endpoint"],
        status=row["status"],
        location=row["location"],
        server_type=row["server_type"],
        compatible_server_types=_decode_list(store, row["compatible_server_types"]),
        capabilities=_decode_list(store, row["capabilities"]),
        profit_share_percentage=Decimal(str(row["profit_share_percentage"])),
        total_executions=int(row["total_executions"]),
        successful_executions=int(row["successful_executions"]),
        total_earnings=from_units(row["total_earnings_units"]),
        registered_at=row["registered_at"],
        last_seen_at=row["last_seen_at"],
    )


# ── Registry ──────────────────────────────────────────────────────────

class HostRegistry:
    """Host existence, capability, and statistics."""

    def __init__(self, store: Optional[Store] = None):
        self.store = store or Store()

    def register_host(
        self,
        name: str,
        endpoint: str,
        owner_id: str = "",
        host_id: Optional[str] = None,
        location: Optional[str] = None,
        server_type: str = ProtocolType.MISC.value,
        compatible_server_types: Optional[list] = None,
        capabilities: Optional[list] = None,
        profit_share_percentage=None,
    ) -> Host:
        """Register a host, or update its description if the id exists.

        New hosts start online with zeroed counters. Re-registering keeps
        status and counters untouched.
        """
        name = (name or "").strip()
        endpoint = (endpoint or "").strip()
        if not name:
            raise ValueError("Host name is required")
        if not endpoint.startswith(("http://", "https://")):
            raise ValueError(f"Host endpoint must be an http(s) URL, got {endpoint!r}")

        primary = parse_protocol(server_type) or ProtocolType.MISC
        compatible = sorted({parse_protocol(p).value for p in (compatible_server_types or []) if p})
        caps = sorted({str(c).strip() for c in (capabilities or []) if str(c).strip()})
        share = validate_profit_share(
            DEFAULT_PROFIT_SHARE if profit_share_percentage is None else profit_share_percentage
        )
        host_id = host_id or str(uuid.uuid4())
        location = (location or "").strip() or None

        ph = self.store.ph
        with self.store.transaction() as conn:
            existing = conn.execute(
                f"SELECT 1 FROM hosts WHERE host_id = {ph}", (host_id,)
            ).fetchone()
            conn.execute(
                f"""
                INSERT INTO hosts(host_id, owner_id, name, endpoint, status, location,
                                  server_type, compatible_server_types, capabilities,
                                  profit_share_percentage, registered_at)
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                ON CONFLICT(host_id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    name = excluded.name,
                    endpoint = excluded.endpoint,
                    location = excluded.location,
                    server_type = excluded.server_type,
                    compatible_server_types = excluded.compatible_server_types,
                    capabilities = excluded.capabilities,
                    profit_share_percentage = excluded.profit_share_percentage
                """,
                (
                    host_id, owner_id or "", name, endpoint, HostStatus.ONLINE.value,
                    location, primary.value,
                    self.store.encode_json(compatible), self.store.encode_json(caps),
                    str(share), time.time(),
                ),
            )

        if existing:
            log.info("HOST UPDATED %s | %s | %s", host_id, name, endpoint)
        else:
            log.info(
                "HOST REGISTERED %s | %s | %s | type=%s | compat=%s | share=%s%%",
                host_id, name, endpoint, primary.value, ",".join(compatible) or "-", share,
            )
        return self.get_host(host_id)

    def get_host(self, host_id: str) -> Optional[Host]:
        ph = self.store.ph
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM hosts WHERE host_id = {ph}", (host_id,)
            ).fetchone()
        if not row:
            return None
        return _host_from_row(self.store, row)

    def list_hosts(self, status=None) -> list[Host]:
        """All hosts ordered by id, optionally filtered by status."""
        ph = self.store.ph
        with self.store.connection() as conn:
            if status:
                rows = conn.execute(
                    f"SELECT * FROM hosts WHERE status = {ph} ORDER BY host_id ASC",
                    (parse_host_status(status).value,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM hosts ORDER BY host_id ASC").fetchall()
        return [_host_from_row(self.store, r) for r in rows]

    def list_online_hosts(self) -> list[Host]:
        return self.list_hosts(status=HostStatus.ONLINE)

    def set_status(self, host_id: str, status) -> Host:
        new_status = parse_host_status(status)
        self._update_fields(host_id, status=new_status.value)
        log.info("HOST STATUS %s -> %s", host_id, new_status.value)
        return self.get_host(host_id)

    def set_profit_share(self, host_id: str, profit_share_percentage) -> Host:
        share = validate_profit_share(profit_share_percentage)
        self._update_fields(host_id, profit_share_percentage=str(share))
        log.info("HOST SHARE %s -> %s%%", host_id, share)
        return self.get_host(host_id)

    def _update_fields(self, host_id, **updates):
        """Patch operator-owned columns. Counters are not accepted here."""
        ph = self.store.ph
        assignments = ", ".join(f"{col} = {ph}" for col in updates)
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"UPDATE hosts SET {assignments} WHERE host_id = {ph}",
                (*updates.values(), host_id),
            )
            if cur.rowcount == 0:
                raise HostNotFound(f"Host {host_id} not found")

    def update_statistics(
        self,
        host_id: str,
        executed: bool = True,
        succeeded: bool = False,
        earnings_delta=ZERO,
        conn=None,
    ) -> None:
        """Atomically bump a host's counters and refresh last_seen_at.

        Pass conn to join a caller's transaction (settlement does); without
        it the update runs in its own.
        """
        if succeeded and not executed:
            raise ValueError("A host cannot succeed at an execution it did not run")
        delta_units = to_units(earnings_delta)
        if delta_units < 0:
            raise ValueError(f"Earnings delta must be non-negative, got {earnings_delta}")

        if conn is None:
            with self.store.transaction() as conn:
                return self.update_statistics(
                    host_id, executed, succeeded, earnings_delta, conn=conn
                )

        ph = self.store.ph
        cur = conn.execute(
            f"""
            UPDATE hosts SET
                total_executions = total_executions + {ph},
                successful_executions = successful_executions + {ph},
                total_earnings_units = total_earnings_units + {ph},
                last_seen_at = {ph}
            WHERE host_id = {ph}
            """,
            (int(executed), int(succeeded), delta_units, time.time(), host_id),
        )
        if cur.rowcount == 0:
            raise HostNotFound(f"Host {host_id} not found")
        log.debug(
            "HOST STATS %s | executed=%s succeeded=%s earnings+=%s",
            host_id, executed, succeeded, earnings_delta,
        )

# Meridian Execution Ledger
# One row per dispatch attempt, driven through a strict lifecycle.
#
# Execution lifecycle:  pending → running → completed/failed
#
# cancelled is reserved for a future cancel path and is unreachable today.
# Every transition is a conditional UPDATE ... WHERE status = <expected>, so
# two writers racing on the same execution cannot both win.

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from db import Store
from money import ZERO, as_number, from_units, to_decimal, to_units
from registry import ProtocolType, parse_protocol

log = logging.getLogger("meridian")


# ── Execution States ──────────────────────────────────────────────────

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"         # Remote call in flight
    COMPLETED = "completed"     # Terminal: host answered 2xx with JSON
    FAILED = "failed"           # Terminal: any invocation failure
    CANCELLED = "cancelled"     # Terminal: reserved


TERMINAL_STATES = frozenset({
    ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED,
})

# Valid state transitions, anything not here is rejected
VALID_TRANSITIONS = {
    ExecutionStatus.PENDING:   {ExecutionStatus.RUNNING},
    ExecutionStatus.RUNNING:   {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED:    set(),
    ExecutionStatus.CANCELLED: set(),
}


class InvalidTransition(RuntimeError):
    def __init__(self, execution_id, current, target):
        self.execution_id = execution_id
        self.current = current
        self.target = target
        super().__init__(f"Execution {execution_id}: illegal transition {current} -> {target}")


class DoubleFinalizeAttempt(InvalidTransition):
    """finalize() called on an execution that already reached a terminal state."""


class ExecutionNotFound(LookupError):
    pass


# ── Records ───────────────────────────────────────────────────────────

@dataclass
class ExecutionOutcome:
    """What came back from the host, plus the split when it succeeded."""
    ok: bool
    execution_time_ms: int
    result: Any = None
    error_message: Optional[str] = None
    host_earnings: Optional[Decimal] = None
    platform_earnings: Optional[Decimal] = None

    @classmethod
    def success(cls, result, execution_time_ms, host_earnings, platform_earnings):
        return cls(
            ok=True,
            execution_time_ms=int(execution_time_ms),
            result=result,
            host_earnings=to_decimal(host_earnings),
            platform_earnings=to_decimal(platform_earnings),
        )

    @classmethod
    def failure(cls, error_message, execution_time_ms):
        return cls(
            ok=False,
            execution_time_ms=int(execution_time_ms),
            error_message=error_message or "Execution failed",
        )


@dataclass
class Execution:
    execution_id: str
    requester_id: str
    host_id: Optional[str]
    server_name: str
    function_name: str
    cost: Decimal
    server_type: str = ProtocolType.MISC.value
    parameters: Any = None
    status: str = ExecutionStatus.PENDING.value
    host_earnings: Optional[Decimal] = None
    platform_earnings: Optional[Decimal] = None
    result: Any = None
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    settled_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return ExecutionStatus(self.status) in TERMINAL_STATES

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("cost", "host_earnings", "platform_earnings"):
            d[key] = as_number(getattr(self, key))
        return d


def _execution_from_row(store, row) -> Execution:
    return Execution(
        execution_id=row["execution_id"],
        requester_id=row["requester_id"],
        host_id=row["host_id"],
        server_name=row["server_name"],
        server_type=row["server_type"],
        function_name=row["function_name"],
        parameters=store.decode_json(row["parameters"]),
        status=row["status"],
        cost=from_units(row["cost_units"]),
        host_earnings=from_units(row["host_earnings_units"]),
        platform_earnings=from_units(row["platform_earnings_units"]),
        result=store.decode_json(row["result"]),
        error_message=row["error_message"],
        execution_time_ms=row["execution_time_ms"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        settled_at=row["settled_at"],
    )


# ── Ledger ────────────────────────────────────────────────────────────

class ExecutionLedger:
    def __init__(self, store: Optional[Store] = None):
        self.store = store or Store()

    def create(
        self,
        requester_id: str,
        host_id: str,
        server_name: str,
        protocol_type,
        function_name: str,
        parameters=None,
        cost=ZERO,
    ) -> Execution:
        """Persist a new pending execution."""
        for label, value in (
            ("requester_id", requester_id),
            ("server_name", server_name),
            ("function_name", function_name),
        ):
            if not value or not str(value).strip():
                raise ValueError(f"{label} is required")
        cost = to_decimal(cost)
        if cost < 0:
            raise ValueError(f"Cost must be non-negative, got {cost}")
        cost_units = to_units(cost)
        try:
            json.dumps(parameters)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Parameters must be JSON-serializable: {e}")

        protocol = parse_protocol(protocol_type) or ProtocolType.MISC
        ex = Execution(
            execution_id=str(uuid.uuid4()),
            requester_id=requester_id,
            host_id=host_id,
            server_name=server_name,
            server_type=protocol.value,
            function_name=function_name,
            parameters=parameters,
            cost=from_units(cost_units),
        )

        ph = self.store.ph
        with self.store.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO executions(execution_id, requester_id, host_id, server_name,
                                       server_type, function_name, parameters, status,
                                       cost_units, created_at)
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                """,
                (
                    ex.execution_id, requester_id, host_id, server_name, ex.server_type,
                    function_name, self.store.encode_json(parameters), ex.status,
                    cost_units, ex.created_at,
                ),
            )

        log.info(
            "EXECUTION CREATED %s | requester=%s | host=%s | %s.%s | cost=%s",
            ex.execution_id, requester_id, host_id, server_name, function_name, ex.cost,
        )
        return ex

    def mark_running(self, execution_id: str) -> Execution:
        self._transition(
            execution_id,
            ExecutionStatus.PENDING,
            ExecutionStatus.RUNNING,
            {"started_at": time.time()},
        )
        log.info("EXECUTION RUNNING %s", execution_id)
        return self.get(execution_id)

    def finalize(self, execution_id: str, outcome: ExecutionOutcome) -> Execution:
        """Move a running execution to completed or failed.

        Completed executions record the result and the earnings split, which
        must add up to the cost exactly. Failed ones record the error and
        leave both earnings NULL.
        """
        now = time.time()
        if outcome.ok:
            current = self.get(execution_id)
            if current is None:
                raise ExecutionNotFound(f"Execution {execution_id} not found")
            host_units = to_units(outcome.host_earnings)
            platform_units = to_units(outcome.platform_earnings)
            if host_units < 0 or platform_units < 0:
                raise ValueError("Earnings must be non-negative")
            if host_units + platform_units != to_units(current.cost):
                raise ValueError(
                    f"Earnings {outcome.host_earnings} + {outcome.platform_earnings} "
                    f"do not sum to cost {current.cost}"
                )
            target = ExecutionStatus.COMPLETED
            updates = {
                "result": self.store.encode_json(outcome.result),
                "host_earnings_units": host_units,
                "platform_earnings_units": platform_units,
                "execution_time_ms": outcome.execution_time_ms,
                "completed_at": now,
            }
        else:
            target = ExecutionStatus.FAILED
            updates = {
                "error_message": outcome.error_message,
                "execution_time_ms": outcome.execution_time_ms,
                "completed_at": now,
            }

        self._transition(execution_id, ExecutionStatus.RUNNING, target, updates)
        log.info(
            "EXECUTION %s %s | %dms%s",
            target.value.upper(), execution_id, outcome.execution_time_ms,
            "" if outcome.ok else f" | error={outcome.error_message}",
        )
        return self.get(execution_id)

    def _transition(self, execution_id, expected, target, updates):
        if target not in VALID_TRANSITIONS[expected]:
            raise InvalidTransition(execution_id, expected.value, target.value)

        ph = self.store.ph
        columns = {"status": target.value, **updates}
        assignments = ", ".join(f"{col} = {ph}" for col in columns)
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"UPDATE executions SET {assignments} "
                f"WHERE execution_id = {ph} AND status = {ph}",
                (*columns.values(), execution_id, expected.value),
            )
            if cur.rowcount == 1:
                return
            row = conn.execute(
                f"SELECT status FROM executions WHERE execution_id = {ph}",
                (execution_id,),
            ).fetchone()

        if row is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        current = ExecutionStatus(row["status"])
        log.warning(
            "EXECUTION TRANSITION REJECTED %s | %s -> %s (expected %s)",
            execution_id, current.value, target.value, expected.value,
        )
        if target in TERMINAL_STATES and current in TERMINAL_STATES:
            raise DoubleFinalizeAttempt(execution_id, current.value, target.value)
        raise InvalidTransition(execution_id, current.value, target.value)

    def get(self, execution_id: str) -> Optional[Execution]:
        ph = self.store.ph
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM executions WHERE execution_id = {ph}", (execution_id,)
            ).fetchone()
        return _execution_from_row(self.store, row) if row else None

    def list_executions(self, requester_id=None, host_id=None, status=None, limit=50):
        """Newest first."""
        ph = self.store.ph
        clauses, params = [], []
        if requester_id:
            clauses.append(f"requester_id = {ph}")
            params.append(requester_id)
        if host_id:
            clauses.append(f"host_id = {ph}")
            params.append(host_id)
        if status:
            clauses.append(f"status = {ph}")
            params.append(ExecutionStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 1000)))
        with self.store.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM executions {where} "
                f"ORDER BY created_at DESC, execution_id ASC LIMIT {ph}",
                params,
            ).fetchall()
        return [_execution_from_row(self.store, r) for r in rows]

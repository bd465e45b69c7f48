# Meridian Dispatcher
# Routes one function call on a named server to one concrete host, then
# records and settles the outcome.
#
#   select host → create execution → running → invoke host → finalize → settle
#
# No eligible host means ServiceUnavailable and no execution row. A failed
# remote call is a normal outcome: the execution is finalized as failed and
# still settled, so the host's total_executions moves either way.
#
# Steps are separate transactions. A persistence failure part way through
# propagates and leaves the execution in whatever state it last reached.

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

from db import Store
from invoker import RemoteInvoker
from ledger import ExecutionLedger, ExecutionOutcome
from money import as_number, to_decimal, to_units
from registry import HostRegistry, parse_protocol
from selector import HostSelector, NoHostAvailable
from settlement import SettlementEngine, split_earnings

LOG_FILE = os.environ.get(
    "MERIDIAN_LOG_FILE", os.path.join(os.path.dirname(__file__), "meridian.log")
)

DEFAULT_COST_CREDITS = Decimal("10")


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the "meridian" logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("meridian")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = setup_logging()


# ── Results ───────────────────────────────────────────────────────────

@dataclass
class DispatchResult:
    success: bool
    execution_id: str
    host_id: str
    execution_time_ms: int
    result: Any = None
    error: Optional[str] = None
    host_earnings: Optional[Decimal] = None
    platform_earnings: Optional[Decimal] = None
    payment_id: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "success": self.success,
            "execution_id": self.execution_id,
            "host_id": self.host_id,
            "execution_time_ms": self.execution_time_ms,
            "host_earnings": as_number(self.host_earnings),
            "platform_earnings": as_number(self.platform_earnings),
            "payment_id": self.payment_id,
        }
        if self.success:
            d["result"] = self.result
        else:
            d["error"] = self.error
        return d


@dataclass
class ServiceUnavailable:
    reason: str
    protocol_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": False, "error": self.reason, "server_type": self.protocol_type}


# ── Dispatcher ────────────────────────────────────────────────────────


class Dispatcher:
    def __init__(
        self,
        store: Optional[Store] = None,
        registry: Optional[HostRegistry] = None,
        ledger: Optional[ExecutionLedger] = None,
        invoker: Optional[RemoteInvoker] = None,
        settlement: Optional[SettlementEngine] = None,
    ):
        self.store = store or Store()
        self.registry = registry or HostRegistry(self.store)
        self.selector = HostSelector(self.registry)
        self.ledger = ledger or ExecutionLedger(self.store)
        self.invoker = invoker or RemoteInvoker()
        self.settlement = settlement or SettlementEngine(self.store, self.registry)

    def dispatch(
        self,
        requester_id: str,
        server_name: str,
        function_name: str,
        parameters=None,
        required_capabilities=(),
        preferred_location: Optional[str] = None,
        protocol_type=None,
        cost=DEFAULT_COST_CREDITS,
    ) -> Union[DispatchResult, ServiceUnavailable]:
        cost = to_decimal(cost)
        if cost < 0:
            raise ValueError(f"Cost must be non-negative, got {cost}")
        to_units(cost)
        protocol = parse_protocol(protocol_type)

        selection = self.selector.select(
            required_capabilities=required_capabilities,
            protocol_type=protocol,
            preferred_location=preferred_location,
        )
        if isinstance(selection, NoHostAvailable):
            log.warning(
                "DISPATCH UNAVAILABLE requester=%s %s.%s | %s",
                requester_id, server_name, function_name, selection.reason,
            )
            return ServiceUnavailable(reason=selection.reason, protocol_type=selection.protocol_type)

        host = selection.host
        execution = self.ledger.create(
            requester_id=requester_id,
            host_id=host.host_id,
            server_name=server_name,
            protocol_type=protocol,
            function_name=function_name,
            parameters=parameters,
            cost=cost,
        )
        self.ledger.mark_running(execution.execution_id)

        invocation = self.invoker.invoke(
            host, server_name, protocol, function_name, parameters,
        )

        if invocation.ok:
            host_earnings, platform_earnings = split_earnings(
                execution.cost, host.profit_share_percentage
            )
            outcome = ExecutionOutcome.success(
                invocation.result, invocation.elapsed_ms, host_earnings, platform_earnings,
            )
        else:
            outcome = ExecutionOutcome.failure(invocation.error, invocation.elapsed_ms)

        finalized = self.ledger.finalize(execution.execution_id, outcome)
        payment = self.settlement.settle(execution.execution_id)

        log.info(
            "DISPATCH %s requester=%s host=%s %s.%s | %s | %dms | host+%s platform+%s",
            execution.execution_id, requester_id, host.host_id, server_name, function_name,
            finalized.status, outcome.execution_time_ms,
            finalized.host_earnings, finalized.platform_earnings,
        )
        return DispatchResult(
            success=invocation.ok,
            execution_id=execution.execution_id,
            host_id=host.host_id,
            execution_time_ms=outcome.execution_time_ms,
            result=finalized.result if invocation.ok else None,
            error=None if invocation.ok else finalized.error_message,
            host_earnings=finalized.host_earnings,
            platform_earnings=finalized.platform_earnings,
            payment_id=payment.payment_id if payment else None,
        )


# ── Module-level API ──────────────────────────────────────────────────

_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher()
    return _dispatcher


def dispatch(*args, **kwargs):
    return get_dispatcher().dispatch(*args, **kwargs)

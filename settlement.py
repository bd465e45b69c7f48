# Meridian Settlement Engine
# Turns a finalized execution into host statistics and a payment record.
#
#   - split_earnings(): host share rounded DOWN to the credit quantum,
#     platform takes the remainder, so host + platform == cost exactly
#   - settle(): one transaction marks the execution settled, bumps the
#     host's counters, and (completed executions only) writes a pending
#     Payment for the host's earnings
#
# Payment lifecycle: pending → paid

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Optional

from db import Store
from ledger import ExecutionNotFound, ExecutionStatus, InvalidTransition
from money import CREDIT_QUANTUM, ZERO, as_number, from_units, to_decimal, to_units
from registry import HostRegistry, validate_profit_share

log = logging.getLogger("meridian")


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class AlreadySettled(RuntimeError):
    pass


class PaymentNotFound(LookupError):
    pass


def split_earnings(cost, profit_share_percentage) -> tuple[Decimal, Decimal]:
    """Split cost into (host_earnings, platform_earnings).

    >>> split_earnings(10, 70)
    (Decimal('7.0000'), Decimal('3.0000'))
    >>> split_earnings(Decimal("0.0001"), 70)
    (Decimal('0.0000'), Decimal('0.0001'))
    """
    cost = to_decimal(cost)
    if cost < 0:
        raise ValueError(f"Cost must be non-negative, got {cost}")
    to_units(cost)  # rejects sub-quantum costs
    pct = validate_profit_share(profit_share_percentage)
    host = (cost * pct / 100).quantize(CREDIT_QUANTUM, rounding=ROUND_DOWN)
    platform = cost.quantize(CREDIT_QUANTUM) - host
    return host, platform


@dataclass
class Payment:
    payment_id: str
    host_id: str
    execution_id: str
    amount: Decimal
    status: str = PaymentStatus.PENDING.value
    created_at: float = field(default_factory=time.time)
    paid_at: Optional[float] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = as_number(self.amount)
        return d


def _payment_from_row(row) -> Payment:
    return Payment(
        payment_id=row["payment_id"],
        host_id=row["host_id"],
        execution_id=row["execution_id"],
        amount=from_units(row["amount_units"]),
        status=row["status"],
        created_at=row["created_at"],
        paid_at=row["paid_at"],
    )


class SettlementEngine:
    def __init__(self, store: Optional[Store] = None, registry: Optional[HostRegistry] = None):
        self.store = store or Store()
        self.registry = registry or HostRegistry(self.store)

    def settle(self, execution_id: str) -> Optional[Payment]:
        """Settle a finalized execution exactly once.

        Returns the Payment for completed executions, None for failed ones.
        """
        ph = self.store.ph
        now = time.time()
        payment = None
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE executions SET settled_at = {ph}
                WHERE execution_id = {ph} AND settled_at IS NULL
                  AND status IN ({ph}, {ph})
                """,
                (now, execution_id, ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value),
            )
            row = conn.execute(
                f"SELECT host_id, status, host_earnings_units, settled_at "
                f"FROM executions WHERE execution_id = {ph}",
                (execution_id,),
            ).fetchone()
            if row is None:
                raise ExecutionNotFound(f"Execution {execution_id} not found")
            if cur.rowcount == 0:
                if row["settled_at"] is not None:
                    raise AlreadySettled(f"Execution {execution_id} is already settled")
                raise InvalidTransition(execution_id, row["status"], "settled")

            host_id = row["host_id"]
            completed = row["status"] == ExecutionStatus.COMPLETED.value
            earnings = from_units(row["host_earnings_units"]) if completed else ZERO

            self.registry.update_statistics(
                host_id, executed=True, succeeded=completed, earnings_delta=earnings, conn=conn,
            )

            if completed:
                payment = Payment(
                    payment_id=f"PAY-{int(now)}-{os.urandom(4).hex()}",
                    host_id=host_id,
                    execution_id=execution_id,
                    amount=earnings,
                    created_at=now,
                )
                conn.execute(
                    f"""
                    INSERT INTO payments(payment_id, host_id, execution_id, amount_units,
                                         status, created_at)
                    VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph})
                    """,
                    (
                        payment.payment_id, host_id, execution_id, to_units(earnings),
                        payment.status, now,
                    ),
                )

        log.info(
            "SETTLED %s host=%s status=%s earnings=%s%s",
            execution_id, host_id, row["status"], earnings,
            f" payment={payment.payment_id}" if payment else "",
        )
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ph = self.store.ph
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM payments WHERE payment_id = {ph}", (payment_id,)
            ).fetchone()
        return _payment_from_row(row) if row else None

    def get_payment_for_execution(self, execution_id: str) -> Optional[Payment]:
        ph = self.store.ph
        with self.store.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM payments WHERE execution_id = {ph}", (execution_id,)
            ).fetchone()
        return _payment_from_row(row) if row else None

    def list_payments(self, host_id=None, status=None) -> list[Payment]:
        ph = self.store.ph
        clauses, params = [], []
        if host_id:
            clauses.append(f"host_id = {ph}")
            params.append(host_id)
        if status:
            clauses.append(f"status = {ph}")
            params.append(PaymentStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.store.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM payments {where} ORDER BY created_at DESC, payment_id ASC",
                params,
            ).fetchall()
        return [_payment_from_row(r) for r in rows]

    def mark_paid(self, payment_id: str) -> Payment:
        ph = self.store.ph
        with self.store.transaction() as conn:
            cur = conn.execute(
                f"UPDATE payments SET status = {ph}, paid_at = {ph} "
                f"WHERE payment_id = {ph} AND status = {ph}",
                (PaymentStatus.PAID.value, time.time(), payment_id, PaymentStatus.PENDING.value),
            )
            if cur.rowcount == 0:
                row = conn.execute(
                    f"SELECT status FROM payments WHERE payment_id = {ph}", (payment_id,)
                ).fetchone()
                if row is None:
                    raise PaymentNotFound(f"Payment {payment_id} not found")
                raise AlreadySettled(f"Payment {payment_id} is already {row['status']}")
        log.info("PAYMENT PAID %s", payment_id)
        return self.get_payment(payment_id)

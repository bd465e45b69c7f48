"""Tests for the execution ledger state machine."""

from decimal import Decimal

import pytest

from db import PersistenceFailure, Store
from ledger import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DoubleFinalizeAttempt,
    ExecutionLedger,
    ExecutionNotFound,
    ExecutionOutcome,
    ExecutionStatus,
    InvalidTransition,
)
from registry import HostRegistry


@pytest.fixture
def store(tmp_path):
    s = Store(db_path=str(tmp_path / "ledger.db"))
    HostRegistry(s).register_host(host_id="host-a", name="a", endpoint="http://a")
    return s


@pytest.fixture
def ledger(store):
    return ExecutionLedger(store)


def _create(ledger, **kw):
    args = dict(
        requester_id="user-1",
        host_id="host-a",
        server_name="X",
        protocol_type="mcp",
        function_name="run",
        parameters={"q": [1, 2, 3]},
        cost=10,
    )
    args.update(kw)
    return ledger.create(**args)


class TestTransitionTable:
    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert VALID_TRANSITIONS[state] == set()

    def test_cancelled_is_unreachable(self):
        for targets in VALID_TRANSITIONS.values():
            assert ExecutionStatus.CANCELLED not in targets


class TestCreate:
    def test_pending_and_persisted(self, ledger):
        ex = _create(ledger)
        stored = ledger.get(ex.execution_id)
        assert stored.status == "pending"
        assert stored.cost == Decimal("10")
        assert stored.parameters == {"q": [1, 2, 3]}
        assert stored.server_type == "mcp"
        assert stored.started_at is None
        assert stored.completed_at is None

    def test_no_protocol_stored_as_misc(self, ledger):
        assert _create(ledger, protocol_type=None).server_type == "misc"

    def test_rejects_negative_cost(self, ledger):
        with pytest.raises(ValueError):
            _create(ledger, cost=-1)

    def test_rejects_missing_function(self, ledger):
        with pytest.raises(ValueError, match="function_name"):
            _create(ledger, function_name="  ")

    def test_rejects_unserializable_parameters(self, ledger):
        with pytest.raises(ValueError, match="JSON"):
            _create(ledger, parameters={"when": object()})

    def test_unknown_host_is_a_persistence_failure(self, ledger):
        with pytest.raises(PersistenceFailure):
            _create(ledger, host_id="ghost")


class TestLifecycle:
    def test_success_path(self, ledger):
        ex = _create(ledger)
        running = ledger.mark_running(ex.execution_id)
        assert running.status == "running"
        assert running.started_at is not None
        assert running.completed_at is None

        done = ledger.finalize(
            ex.execution_id, ExecutionOutcome.success({"result": "ok"}, 42, "7", "3"),
        )
        assert done.status == "completed"
        assert done.result == {"result": "ok"}
        assert done.execution_time_ms == 42
        assert done.host_earnings + done.platform_earnings == done.cost
        assert done.completed_at is not None
        assert done.error_message is None

    def test_failure_path(self, ledger):
        ex = _create(ledger)
        ledger.mark_running(ex.execution_id)
        done = ledger.finalize(ex.execution_id, ExecutionOutcome.failure("Host returned 500: boom", 12))
        assert done.status == "failed"
        assert done.error_message == "Host returned 500: boom"
        assert done.execution_time_ms == 12
        assert done.host_earnings is None
        assert done.platform_earnings is None
        assert done.completed_at is not None

    def test_earnings_must_sum_to_cost(self, ledger):
        ex = _create(ledger)
        ledger.mark_running(ex.execution_id)
        with pytest.raises(ValueError, match="sum to cost"):
            ledger.finalize(ex.execution_id, ExecutionOutcome.success(None, 1, "7", "2"))
        assert ledger.get(ex.execution_id).status == "running"

    def test_double_finalize_rejected(self, ledger):
        ex = _create(ledger)
        ledger.mark_running(ex.execution_id)
        ledger.finalize(ex.execution_id, ExecutionOutcome.success("ok", 5, "7", "3"))

        with pytest.raises(DoubleFinalizeAttempt):
            ledger.finalize(ex.execution_id, ExecutionOutcome.failure("late", 9))
        with pytest.raises(DoubleFinalizeAttempt):
            ledger.finalize(ex.execution_id, ExecutionOutcome.success("again", 9, "7", "3"))

        stored = ledger.get(ex.execution_id)
        assert stored.status == "completed"
        assert stored.result == "ok"

    def test_finalize_from_pending_is_invalid(self, ledger):
        ex = _create(ledger)
        with pytest.raises(InvalidTransition) as info:
            ledger.finalize(ex.execution_id, ExecutionOutcome.failure("x", 0))
        assert not isinstance(info.value, DoubleFinalizeAttempt)
        assert ledger.get(ex.execution_id).status == "pending"

    def test_mark_running_twice_is_invalid(self, ledger):
        ex = _create(ledger)
        ledger.mark_running(ex.execution_id)
        with pytest.raises(InvalidTransition):
            ledger.mark_running(ex.execution_id)

    def test_leaving_terminal_state_is_invalid(self, ledger):
        ex = _create(ledger)
        ledger.mark_running(ex.execution_id)
        ledger.finalize(ex.execution_id, ExecutionOutcome.failure("x", 0))
        with pytest.raises(InvalidTransition):
            ledger.mark_running(ex.execution_id)

    def test_unknown_execution(self, ledger):
        with pytest.raises(ExecutionNotFound):
            ledger.mark_running("nope")
        with pytest.raises(ExecutionNotFound):
            ledger.finalize("nope", ExecutionOutcome.failure("x", 0))


class TestListing:
    def test_filters(self, store, ledger):
        HostRegistry(store).register_host(host_id="host-b", name="b", endpoint="http://b")
        e1 = _create(ledger, requester_id="alice")
        _create(ledger, requester_id="bob", host_id="host-b")
        ledger.mark_running(e1.execution_id)

        assert [e.execution_id for e in ledger.list_executions(requester_id="alice")] == [e1.execution_id]
        assert len(ledger.list_executions(host_id="host-b")) == 1
        assert [e.status for e in ledger.list_executions(status="running")] == ["running"]
        assert len(ledger.list_executions()) == 2
        assert len(ledger.list_executions(limit=1)) == 1

    def test_bad_status_filter(self, ledger):
        with pytest.raises(ValueError):
            ledger.list_executions(status="exploded")

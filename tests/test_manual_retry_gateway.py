import pytest

from app.settlements.errors import (
    InvalidInput,
    InvalidWorkerAction,
    NotRetryable,
    RecordNotFound,
    RetryBudgetExhausted,
    SupervisorUnavailable,
)
from app.settlements.gateway import ManualRetryGateway
from app.settlements.model import RecordStatus, SettlementKind
from tests.factories import ALLOCATION_INPUTS, DISBURSEMENT_INPUTS, minutes_ago

A = SettlementKind.ALLOCATION
D = SettlementKind.DISBURSEMENT


def test_retry_exhausted_record_is_rejected(engine, seed, store):
    seed(A, "TX-EXHAUSTED", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS, attempts=3, max_attempts=3)

    with pytest.raises(RetryBudgetExhausted) as exc:
        engine.gateway.retry_one("ALLOCATION", "TX-EXHAUSTED")

    assert "3 times (max: 3)" in exc.value.message
    assert store.get(A, "TX-EXHAUSTED").status == RecordStatus.FAILED


def test_retry_then_forced_failure_uses_budget(engine, seed, store, disbursement_client):
    seed(D, "JOB-1", RecordStatus.FAILED, inputs=DISBURSEMENT_INPUTS, attempts=1, max_attempts=3)

    rec = engine.gateway.retry_one("DISBURSEMENT", "JOB-1")
    assert rec.status == RecordStatus.PENDING
    assert rec.attempt_count == 1
    assert rec.last_error is None

    disbursement_client.status = "FAILED"
    outcome = engine.invoker.invoke(store.get(D, "JOB-1"), force=True)

    assert outcome.status == "FAILED"
    after = store.get(D, "JOB-1")
    assert after.status == RecordStatus.FAILED
    assert after.attempt_count == 2


@pytest.mark.parametrize("status", [RecordStatus.PENDING, RecordStatus.IN_PROGRESS, RecordStatus.COMPLETED])
def test_retry_requires_failed_status(engine, seed, status):
    extra = {"settlement_result": {"success": True}} if status == RecordStatus.COMPLETED else {}
    seed(A, "R", status, inputs=ALLOCATION_INPUTS, **extra)

    with pytest.raises(NotRetryable) as exc:
        engine.gateway.retry_one("ALLOCATION", "R")

    assert f"Record status is {status.value}" in exc.value.message


@pytest.mark.parametrize(
    "kind, ref, message",
    [
        (None, "X", "Missing kind"),
        ("", "X", "Missing kind"),
        ("REFUND", "X", "Invalid kind: REFUND"),
        ("ALLOCATION", None, "Missing id"),
        ("ALLOCATION", "  ", "Missing id"),
    ],
)
def test_retry_validates_input(engine, kind, ref, message):
    with pytest.raises(InvalidInput) as exc:
        engine.gateway.retry_one(kind, ref)
    assert exc.value.message == message


def test_retry_unknown_record(engine):
    with pytest.raises(RecordNotFound):
        engine.gateway.retry_one("ALLOCATION", "nope")


def test_retry_all_only_requeues_records_with_budget(engine, seed, store):
    seed(A, "A1", RecordStatus.FAILED, attempts=1)
    seed(A, "A2", RecordStatus.FAILED, attempts=3)
    seed(D, "D1", RecordStatus.FAILED, attempts=0)
    seed(D, "D2", RecordStatus.PENDING)

    assert engine.gateway.retry_all("ALLOCATION") == 1
    assert store.get(A, "A1").status == RecordStatus.PENDING
    assert store.get(A, "A2").status == RecordStatus.FAILED
    assert store.get(D, "D1").status == RecordStatus.FAILED

    assert engine.gateway.retry_all() == 1
    assert store.get(D, "D1").status == RecordStatus.PENDING


def test_retry_all_rejects_unknown_kind(engine):
    with pytest.raises(InvalidInput):
        engine.gateway.retry_all("REFUND")


def test_stats_counts_by_kind_and_stuck(engine, seed):
    seed(A, "P", RecordStatus.PENDING)
    seed(A, "F", RecordStatus.FAILED, attempts=1)
    seed(A, "X", RecordStatus.FAILED, attempts=3)
    seed(D, "S", RecordStatus.IN_PROGRESS, last_attempt_at=minutes_ago(10))
    seed(D, "R", RecordStatus.IN_PROGRESS, last_attempt_at=minutes_ago(1))

    stats = engine.gateway.stats()

    assert stats["byKind"]["ALLOCATION"]["PENDING"] == 1
    assert stats["byKind"]["ALLOCATION"]["FAILED"] == 2
    assert stats["byKind"]["DISBURSEMENT"]["IN_PROGRESS"] == 2
    assert stats["totals"]["FAILED"] == 2
    assert stats["totals"]["IN_PROGRESS"] == 2
    assert stats["stuck"] == 1
    assert stats["retryable"] == 1


def test_get_status(engine, seed):
    seed(D, "JOB-9", RecordStatus.AWAITING_TX_HASH)
    assert engine.gateway.get_status("disbursement", "JOB-9").status == RecordStatus.AWAITING_TX_HASH


def test_worker_control_validates_action(engine, supervisor):
    with pytest.raises(InvalidWorkerAction):
        engine.gateway.worker_control("reload")
    engine.gateway.worker_control("restart")
    assert supervisor.actions == ["restart"]


def test_worker_ops_without_supervisor(store):
    gateway = ManualRetryGateway(store)
    with pytest.raises(SupervisorUnavailable):
        gateway.worker_health()

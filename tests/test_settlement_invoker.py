from __future__ import annotations

from app.providers.base import SettlementResult
from app.providers.mock import MockSettlementClient
from app.settlements.invoker import (
    REASON_ALREADY_SETTLED,
    REASON_BUDGET_EXHAUSTED,
    REASON_CLAIM_LOST,
    REASON_NOT_ELIGIBLE,
    SettlementInvoker,
)
from app.settlements.model import AllocationInputs, RecordStatus, SettlementKind
from services.metrics import MetricsRegistry
from tests.factories import ALLOCATION_INPUTS, DISBURSEMENT_INPUTS, minutes_ago

A = SettlementKind.ALLOCATION
D = SettlementKind.DISBURSEMENT


def test_pending_record_is_settled(engine, seed, store, allocation_client):
    rec = seed(A, "TX-1", inputs=ALLOCATION_INPUTS)

    outcome = engine.invoker.invoke(rec)

    assert outcome.status == "SUCCESS"
    assert allocation_client.call_count == 1
    ref, inputs = allocation_client.calls[0]
    assert ref == "TX-1"
    assert isinstance(inputs, AllocationInputs)
    done = store.get(A, "TX-1")
    assert done.status == RecordStatus.COMPLETED
    assert done.settlement_result["success"] is True


def test_already_settled_is_skipped_even_when_forced(engine, seed, store, allocation_client):
    rec = seed(A, "TX-2", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS, settlement_result={"success": True})

    outcome = engine.invoker.invoke(rec, force=True)

    assert outcome.status == "SKIPPED"
    assert outcome.reason == REASON_ALREADY_SETTLED
    assert allocation_client.call_count == 0
    assert store.get(A, "TX-2").status == RecordStatus.FAILED


def test_failed_record_not_eligible_without_force(engine, seed, allocation_client):
    rec = seed(A, "TX-3", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS, attempts=1)
    outcome = engine.invoker.invoke(rec)
    assert outcome.status == "SKIPPED"
    assert outcome.reason == REASON_NOT_ELIGIBLE
    assert allocation_client.call_count == 0


def test_forced_retry_of_failed_record(engine, seed, store, allocation_client):
    rec = seed(A, "TX-4", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS, attempts=1)
    outcome = engine.invoker.invoke(rec, force=True)
    assert outcome.status == "SUCCESS"
    assert store.get(A, "TX-4").status == RecordStatus.COMPLETED


def test_failure_increments_attempt(engine, seed, store, allocation_client):
    allocation_client.status = "FAILED"
    allocation_client.error = "HTTP 502: bad gateway"
    rec = seed(A, "TX-5", inputs=ALLOCATION_INPUTS)

    outcome = engine.invoker.invoke(rec)

    assert outcome.status == "FAILED"
    failed = store.get(A, "TX-5")
    assert failed.status == RecordStatus.FAILED
    assert failed.attempt_count == 1
    assert failed.last_error == "HTTP 502: bad gateway"
    assert failed.settlement_result["success"] is False


def test_client_exception_is_failed_not_raised(engine, seed, store, allocation_client):
    allocation_client.raises = ConnectionError("connection refused")
    rec = seed(A, "TX-6", inputs=ALLOCATION_INPUTS)

    outcome = engine.invoker.invoke(rec)

    assert outcome.status == "FAILED"
    failed = store.get(A, "TX-6")
    assert failed.attempt_count == 1
    assert "connection refused" in failed.last_error


def test_malformed_response_keeps_raw_text(seed, store):
    class Malformed:
        def settle(self, reference, inputs, raw_payload):
            return SettlementResult(status="FAILED", http_status=200, error="Malformed response: <html>oops", raw_text="<html>oops")

    invoker = SettlementInvoker(store, {A: Malformed()})
    rec = seed(A, "TX-7", inputs=ALLOCATION_INPUTS)

    outcome = invoker.invoke(rec)

    assert outcome.status == "FAILED"
    assert "<html>oops" in store.get(A, "TX-7").last_error


def test_lost_claim_is_skipped(engine, seed, store, allocation_client):
    rec = seed(A, "TX-8", inputs=ALLOCATION_INPUTS)
    assert store.claim(A, "TX-8")

    outcome = engine.invoker.invoke(rec)

    assert outcome.status == "SKIPPED"
    assert outcome.reason == REASON_CLAIM_LOST
    assert allocation_client.call_count == 0


def test_exhausted_budget_fails_without_consuming_attempt(engine, seed, store, allocation_client):
    rec = seed(A, "TX-9", RecordStatus.FAILED, inputs=ALLOCATION_INPUTS, attempts=3, max_attempts=3)

    outcome = engine.invoker.invoke(rec, force=True)

    assert outcome.status == "FAILED"
    assert outcome.reason == REASON_BUDGET_EXHAUSTED
    assert allocation_client.call_count == 0
    after = store.get(A, "TX-9")
    assert after.status == RecordStatus.FAILED
    assert after.attempt_count == 3


def test_incomplete_inputs_are_skipped_before_claim(engine, seed, store, allocation_client):
    rec = seed(A, "TX-10", inputs={"asset": "USDC"})
    outcome = engine.invoker.invoke(rec)
    assert outcome.status == "SKIPPED"
    assert set(outcome.missing) == {"user_address", "amount_usd", "tx_hash"}
    assert store.get(A, "TX-10").status == RecordStatus.PENDING


def test_upstream_skip_does_not_consume_attempt(engine, seed, store, allocation_client):
    allocation_client.status = "SKIPPED"
    rec = seed(A, "TX-11", inputs=ALLOCATION_INPUTS)
    outcome = engine.invoker.invoke(rec)
    assert outcome.status == "SKIPPED"
    after = store.get(A, "TX-11")
    assert after.status == RecordStatus.FAILED
    assert after.attempt_count == 0


def test_disbursement_dispatches_to_its_own_client(engine, seed, allocation_client, disbursement_client):
    rec = seed(D, "JOB-1", inputs=DISBURSEMENT_INPUTS)
    outcome = engine.invoker.invoke(rec)
    assert outcome.status == "SUCCESS"
    assert disbursement_client.call_count == 1
    assert allocation_client.call_count == 0


def test_attempts_never_exceed_max_across_retries(seed, store):
    client = MockSettlementClient(status="FAILED")
    invoker = SettlementInvoker(store, {A: client})
    seed(A, "TX-12", inputs=ALLOCATION_INPUTS, max_attempts=2)

    for _ in range(5):
        invoker.invoke(store.get(A, "TX-12"), force=True)

    after = store.get(A, "TX-12")
    assert after.attempt_count == 2
    assert client.call_count == 2


def test_metrics_are_counted(seed, store):
    metrics = MetricsRegistry()
    invoker = SettlementInvoker(store, {A: MockSettlementClient()}, metrics=metrics)
    invoker.invoke(seed(A, "TX-13", inputs=ALLOCATION_INPUTS))
    assert metrics.get("settlement_attempts_total", {"kind": "ALLOCATION", "result": "success"}) == 1


def test_success_after_stale_reset_is_still_recorded(seed, store):
    class SlowClient:
        def settle(self, reference, inputs, raw_payload):
            # reaper resets the claim while the call is in flight
            store.reset_stale(A, reference, stale_before=minutes_ago(-1))
            return SettlementResult(status="SUCCESS", http_status=200, response={"ok": True})

    invoker = SettlementInvoker(store, {A: SlowClient()})
    outcome = invoker.invoke(seed(A, "TX-14", inputs=ALLOCATION_INPUTS))

    assert outcome.status == "SUCCESS"
    after = store.get(A, "TX-14")
    assert after.status == RecordStatus.COMPLETED
    assert after.settled

# app/settlements/invoker.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional

from app.providers.base import SettlementClient, SettlementResult
from app.settlements.model import FORCE_CLAIMABLE, ReconciliationRecord, RecordStatus, SettlementKind
from app.settlements.recovery import resolve
from app.settlements.store import SettlementStore
from services.metrics import MetricsRegistry

logger = logging.getLogger("reconciler.invoker")

OutcomeStatus = Literal["SUCCESS", "SKIPPED", "FAILED"]

REASON_ALREADY_SETTLED = "already settled"
REASON_NOT_ELIGIBLE = "not eligible"
REASON_CLAIM_LOST = "claim not acquired"
REASON_BUDGET_EXHAUSTED = "retry budget exhausted"
REASON_NO_CLIENT = "no settlement client for kind"


@dataclass(frozen=True)
class InvokeOutcome:
    status: OutcomeStatus
    reason: Optional[str] = None
    missing: tuple[str, ...] = ()
    result: Optional[dict[str, Any]] = field(default=None, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"

    @classmethod
    def skipped(cls, reason: str, **kw: Any) -> "InvokeOutcome":
        return cls(status="SKIPPED", reason=reason, **kw)

    @classmethod
    def failed(cls, reason: str, **kw: Any) -> "InvokeOutcome":
        return cls(status="FAILED", reason=reason, **kw)


class SettlementInvoker:
    """
    Idempotent wrapper around the external settlement call.

    Ordering per call:
      1. already-settled marker -> SKIPPED, no external call (force does not bypass this)
      2. eligibility: PENDING only, unless forced (FAILED / AWAITING_* also claimable)
      3. atomic claim -> IN_PROGRESS; losing the claim -> SKIPPED
      4. re-check the claimed record (settled marker, retry budget)
      5. call the kind's client with the record id as idempotency reference
      6. persist COMPLETED, or FAILED with attempt_count + 1
    """

    def __init__(
        self,
        store: SettlementStore,
        clients: Mapping[SettlementKind, SettlementClient],
        *,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.clients = dict(clients)
        self.metrics = metrics

    def _count(self, kind: SettlementKind, outcome: InvokeOutcome) -> InvokeOutcome:
        if self.metrics is not None:
            self.metrics.increment_settlement_attempt(kind.value, outcome.status.lower())
        return outcome

    def invoke(self, record: ReconciliationRecord, force: bool = False) -> InvokeOutcome:
        kind, ref = record.kind, record.id

        if record.settled:
            return self._count(kind, InvokeOutcome.skipped(REASON_ALREADY_SETTLED))

        if not force and record.status != RecordStatus.PENDING:
            return self._count(kind, InvokeOutcome.skipped(REASON_NOT_ELIGIBLE))

        client = self.clients.get(kind)
        if client is None:
            return self._count(kind, InvokeOutcome.skipped(REASON_NO_CLIENT))

        resolution = resolve(kind, record.required_inputs, record.raw_payload)
        if not resolution.complete:
            return self._count(
                kind,
                InvokeOutcome.skipped("missing inputs: " + ", ".join(resolution.missing), missing=resolution.missing),
            )

        from_statuses = FORCE_CLAIMABLE if force else (RecordStatus.PENDING,)
        if not self.store.claim(kind, ref, from_statuses):
            return self._count(kind, InvokeOutcome.skipped(REASON_CLAIM_LOST))

        claimed = self.store.get(kind, ref)
        if claimed is None:
            return self._count(kind, InvokeOutcome.skipped(REASON_CLAIM_LOST))

        if claimed.settled:
            # a concurrent path settled it between our read and our claim
            self.store.complete(kind, ref, dict(claimed.settlement_result or {}))
            return self._count(kind, InvokeOutcome.skipped(REASON_ALREADY_SETTLED))

        if not claimed.budget_left:
            self.store.fail(kind, ref, REASON_BUDGET_EXHAUSTED, increment_attempt=False)
            return self._count(kind, InvokeOutcome.failed(REASON_BUDGET_EXHAUSTED))

        resolution = resolve(kind, claimed.required_inputs, claimed.raw_payload)
        if not resolution.complete:
            reason = "missing inputs: " + ", ".join(resolution.missing)
            self.store.fail(kind, ref, reason, increment_attempt=False)
            return self._count(kind, InvokeOutcome.failed(reason, missing=resolution.missing))
        if resolution.patch:
            self.store.patch_inputs(kind, ref, resolution.patch)

        try:
            result = client.settle(ref, resolution.typed_inputs(), dict(claimed.raw_payload))
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning("settlement_call_raised kind=%s ref=%s error=%s", kind.value, ref, reason)
            self.store.fail(kind, ref, reason, increment_attempt=True)
            return self._count(kind, InvokeOutcome.failed(reason))

        return self._count(kind, self._apply_result(claimed, result))

    def _apply_result(self, record: ReconciliationRecord, result: SettlementResult) -> InvokeOutcome:
        kind, ref = record.kind, record.id
        payload = result.to_result_payload()

        if result.ok:
            self._persist_success(kind, ref, payload)
            logger.info("settlement_completed kind=%s ref=%s", kind.value, ref)
            return InvokeOutcome(status="SUCCESS", result=payload)

        if result.skipped:
            reason = f"skipped: {result.error or 'upstream skip'}"
            self.store.fail(kind, ref, reason, increment_attempt=False, result=payload)
            return InvokeOutcome.skipped(reason, result=payload)

        reason = result.error or result.raw_text or "settlement failed"
        self.store.fail(kind, ref, reason, increment_attempt=True, result=payload)
        logger.warning(
            "settlement_failed kind=%s ref=%s http_status=%s error=%s",
            kind.value,
            ref,
            result.http_status,
            reason[:300],
        )
        return InvokeOutcome.failed(reason, result=payload)

    def _persist_success(self, kind: SettlementKind, ref: str, payload: dict[str, Any]) -> None:
        if self.store.complete(kind, ref, payload):
            return
        # Claim was lost mid-call (stale reset). The side effect happened, so record it.
        logger.error("settlement_completed_after_claim_lost kind=%s ref=%s", kind.value, ref)
        if self.store.claim(kind, ref, FORCE_CLAIMABLE) and self.store.complete(kind, ref, payload):
            return
        logger.error("settlement_completion_not_persisted kind=%s ref=%s", kind.value, ref)

# app/settlements/sweep.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from app.settlements.invoker import REASON_ALREADY_SETTLED, SettlementInvoker
from app.settlements.model import (
    ReconciliationRecord,
    RecordStatus,
    SettlementKind,
)
from app.settlements.reaper import StaleClaimReaper
from app.settlements.recovery import resolve
from app.settlements.store import SettlementStore
from services.metrics import MetricsRegistry

logger = logging.getLogger("reconciler.sweep")

SWEEP_STATUSES = (
    RecordStatus.AWAITING_TX_HASH,
    RecordStatus.AWAITING_AMOUNT,
    RecordStatus.FAILED,
)

# counter keys (response field names)
ALLOCATED = "allocatedOrSettled"
AWAITING_TX = "awaitingTxHash"
AWAITING_AMOUNT = "awaitingAmount"
AWAITING_OTHER = "awaitingOther"
FAILED = "failed"
SKIPPED = "skipped"
STALE_RESET = "staleReset"


@dataclass(frozen=True)
class RecordOutcome:
    counters: tuple[str, ...]
    trace: dict[str, Any]


@dataclass
class SweepSummary:
    processed: int = 0
    allocated_or_settled: int = 0
    awaiting_tx_hash: int = 0
    awaiting_amount: int = 0
    awaiting_other: int = 0
    failed: int = 0
    skipped: int = 0
    stale_reset: int = 0
    debug: list[dict[str, Any]] = field(default_factory=list)

    _FIELDS = {
        ALLOCATED: "allocated_or_settled",
        AWAITING_TX: "awaiting_tx_hash",
        AWAITING_AMOUNT: "awaiting_amount",
        AWAITING_OTHER: "awaiting_other",
        FAILED: "failed",
        SKIPPED: "skipped",
        STALE_RESET: "stale_reset",
    }

    def add(self, outcome: RecordOutcome, *, keep_trace: bool) -> None:
        self.processed += 1
        for key in outcome.counters:
            attr = self._FIELDS[key]
            setattr(self, attr, getattr(self, attr) + 1)
        if keep_trace:
            self.debug.append(outcome.trace)

    def to_response(self, *, debug: bool = False) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "processed": self.processed,
            ALLOCATED: self.allocated_or_settled,
            AWAITING_TX: self.awaiting_tx_hash,
            AWAITING_AMOUNT: self.awaiting_amount,
            FAILED: self.failed,
            SKIPPED: self.skipped,
            AWAITING_OTHER: self.awaiting_other,
            STALE_RESET: self.stale_reset,
        }
        if debug:
            body["debug"] = list(self.debug)
        return body


class ReconciliationSweep:
    """
    One bounded pass over stuck or incomplete records:
    reaper -> field recovery -> forced invoke, per record.

    A record's failure never aborts the batch. Fan-out across records is safe
    because claim is an atomic compare-and-set in the store.
    """

    def __init__(
        self,
        store: SettlementStore,
        invoker: SettlementInvoker,
        reaper: StaleClaimReaper,
        *,
        max_workers: int = 1,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.invoker = invoker
        self.reaper = reaper
        self.max_workers = max(1, int(max_workers))
        self.metrics = metrics

    def candidates(
        self,
        *,
        kinds: Iterable[SettlementKind],
        limit: int,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[ReconciliationRecord]:
        return self.store.find_candidates(
            kinds=tuple(kinds),
            statuses=SWEEP_STATUSES,
            stale_before=self.reaper.cutoff(now),
            limit=limit,
            reference=reference,
        )

    def run(
        self,
        *,
        kinds: Iterable[SettlementKind] = tuple(SettlementKind),
        limit: int = 20,
        reference: Optional[str] = None,
        debug: bool = False,
        now: Optional[datetime] = None,
    ) -> SweepSummary:
        now = now or datetime.now(timezone.utc)
        records = self.candidates(kinds=kinds, limit=limit, reference=reference, now=now)
        summary = SweepSummary()
        if not records:
            self._count_run("empty")
            return summary

        if self.max_workers > 1 and len(records) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(records))) as pool:
                outcomes = list(pool.map(lambda r: self._process_safely(r, now), records))
        else:
            outcomes = [self._process_safely(r, now) for r in records]

        for outcome in outcomes:
            summary.add(outcome, keep_trace=debug)

        logger.info(
            "sweep_done processed=%s allocated_or_settled=%s awaiting_tx_hash=%s awaiting_amount=%s "
            "awaiting_other=%s failed=%s skipped=%s stale_reset=%s",
            summary.processed,
            summary.allocated_or_settled,
            summary.awaiting_tx_hash,
            summary.awaiting_amount,
            summary.awaiting_other,
            summary.failed,
            summary.skipped,
            summary.stale_reset,
        )
        self._count_run("ok")
        return summary

    def _count_run(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_sweep_run(outcome)

    def _process_safely(self, record: ReconciliationRecord, now: datetime) -> RecordOutcome:
        try:
            return self.process_record(record, now)
        except Exception as exc:
            logger.exception("sweep_record_error kind=%s ref=%s", record.kind.value, record.id)
            return RecordOutcome(
                counters=(FAILED,),
                trace=_trace(record, "error", {"error": f"{type(exc).__name__}: {exc}"}),
            )

    def process_record(self, record: ReconciliationRecord, now: Optional[datetime] = None) -> RecordOutcome:
        counters: list[str] = []

        if self.reaper.reap(record, now):
            counters.append(STALE_RESET)
            record = self.store.get(record.kind, record.id) or record

        if record.settled:
            # Counted as skipped, not allocatedOrSettled: nothing was settled in this pass.
            self.store.touch(record.kind, record.id)
            return RecordOutcome(tuple(counters + [SKIPPED]), _trace(record, REASON_ALREADY_SETTLED))

        resolution = resolve(record.kind, record.required_inputs, record.raw_payload)
        if resolution.patch:
            self.store.patch_inputs(record.kind, record.id, resolution.patch)
            record = self.store.get(record.kind, record.id) or record

        if not resolution.complete:
            awaiting = resolution.awaiting_status()
            # Both calls bump updated_at so a record that cannot move rotates to the
            # back of the oldest-first selection.
            if awaiting is not None:
                self.store.mark_awaiting(record.kind, record.id, awaiting)
            else:
                self.store.touch(record.kind, record.id)
            if "tx_hash" in resolution.missing:
                counters.append(AWAITING_TX)
            if "amount_usd" in resolution.missing:
                counters.append(AWAITING_AMOUNT)
            if awaiting is None:
                counters.append(AWAITING_OTHER)
            return RecordOutcome(
                tuple(counters),
                _trace(record, "missing_required_fields", {"missing": list(resolution.missing)}),
            )

        outcome = self.invoker.invoke(record, force=True)
        if outcome.status == "SUCCESS":
            reason = "settled_with_recovered_fields" if resolution.patch else "settled"
            counters.append(ALLOCATED)
        elif outcome.status == "SKIPPED":
            reason = outcome.reason or "skipped"
            counters.append(SKIPPED)
        else:
            reason = outcome.reason or "settlement_failed"
            counters.append(FAILED)

        details = {"recovered": sorted(resolution.patch)} if resolution.patch else None
        return RecordOutcome(tuple(counters), _trace(record, reason, details))


def _trace(record: ReconciliationRecord, reason: str, details: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "reference": record.id,
        "kind": record.kind.value,
        "status": record.status.value,
        "reason": reason,
    }
    if details:
        entry["details"] = details
    return entry

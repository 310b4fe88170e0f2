# app/settlements/reaper.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from app.settlements.model import STALE_CLAIM_REASON, ReconciliationRecord, RecordStatus, SettlementKind
from app.settlements.store import SettlementStore
from services.metrics import MetricsRegistry

logger = logging.getLogger("reconciler.reaper")

DEFAULT_STALE_MINUTES = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StaleClaimReaper:
    """
    Resets IN_PROGRESS records whose claim is older than the threshold back to FAILED.
    The reset does not consume an attempt; it only makes the record claimable again.
    """

    def __init__(
        self,
        store: SettlementStore,
        *,
        stale_minutes: int = DEFAULT_STALE_MINUTES,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.stale_minutes = stale_minutes
        self.metrics = metrics

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or _utcnow()) - timedelta(minutes=self.stale_minutes)

    def is_stale(self, record: ReconciliationRecord, now: Optional[datetime] = None) -> bool:
        if record.status != RecordStatus.IN_PROGRESS:
            return False
        ts = record.claim_timestamp
        return ts is None or ts <= self.cutoff(now)

    def reap(self, record: ReconciliationRecord, now: Optional[datetime] = None) -> bool:
        if not self.is_stale(record, now):
            return False
        reset = self.store.reset_stale(record.kind, record.id, stale_before=self.cutoff(now), reason=STALE_CLAIM_REASON)
        if reset:
            logger.warning(
                "stale_claim_reset kind=%s ref=%s claimed_at=%s",
                record.kind.value,
                record.id,
                record.claim_timestamp.isoformat() if record.claim_timestamp else None,
            )
            if self.metrics is not None:
                self.metrics.increment_stale_reset(record.kind.value)
        return reset

    def sweep_stale(
        self,
        kinds: Iterable[SettlementKind] = tuple(SettlementKind),
        *,
        limit: int = 100,
        now: Optional[datetime] = None,
    ) -> int:
        """Reset every stale claim found (worker housekeeping). Returns the number reset."""
        candidates = self.store.find_candidates(
            kinds=kinds,
            statuses=(),
            stale_before=self.cutoff(now),
            limit=limit,
        )
        return sum(1 for rec in candidates if self.reap(rec, now))

# app/settlements/gateway.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.settlements.errors import (
    InvalidInput,
    InvalidWorkerAction,
    NotRetryable,
    RecordNotFound,
    RetryBudgetExhausted,
    SupervisorUnavailable,
)
from app.settlements.model import ReconciliationRecord, RecordStatus, SettlementKind, parse_kind
from app.settlements.store import SettlementStore
from app.workers.supervisor import WORKER_ACTIONS, ControlResult, ProcessSupervisor, WorkerHealth
from services.metrics import MetricsRegistry

logger = logging.getLogger("reconciler.gateway")

STUCK_AFTER_MINUTES = 5


def require_kind(value: Any) -> SettlementKind:
    kind = parse_kind(value)
    if kind is None:
        if value in (None, ""):
            raise InvalidInput("Missing kind")
        raise InvalidInput(f"Invalid kind: {value}")
    return kind


def require_id(value: Any) -> str:
    ref = str(value).strip() if value is not None else ""
    if not ref:
        raise InvalidInput("Missing id")
    return ref


class ManualRetryGateway:
    """Operator actions: retry one or all failed records, inspect, control the worker."""

    def __init__(
        self,
        store: SettlementStore,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
        metrics: MetricsRegistry | None = None,
        stuck_after_minutes: int = STUCK_AFTER_MINUTES,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.metrics = metrics
        self.stuck_after_minutes = stuck_after_minutes

    def get_status(self, kind: Any, ref: Any) -> ReconciliationRecord:
        k, r = require_kind(kind), require_id(ref)
        record = self.store.get(k, r)
        if record is None:
            raise RecordNotFound("Record not found")
        return record

    def retry_one(self, kind: Any, ref: Any) -> ReconciliationRecord:
        """
        FAILED with budget left -> PENDING. attempt_count is left as is so the
        budget keeps counting across manual retries.
        """
        record = self.get_status(kind, ref)

        if record.status != RecordStatus.FAILED:
            self._count(record.kind, "rejected")
            raise NotRetryable(f"Record status is {record.status.value}, can only retry FAILED records")
        if not record.budget_left:
            self._count(record.kind, "rejected")
            raise RetryBudgetExhausted(
                f"Record has already been attempted {record.attempt_count} times (max: {record.max_attempts})"
            )

        if not self.store.requeue(record.kind, record.id):
            # lost a race with another path; report current state
            current = self.store.get(record.kind, record.id) or record
            self._count(record.kind, "rejected")
            raise NotRetryable(f"Record status is {current.status.value}, can only retry FAILED records")

        logger.info("manual_retry_queued kind=%s ref=%s attempts=%s", record.kind.value, record.id, record.attempt_count)
        self._count(record.kind, "queued")
        return self.store.get(record.kind, record.id) or record

    def retry_all(self, kind: Any = None) -> int:
        k = require_kind(kind) if kind not in (None, "") else None
        count = self.store.requeue_failed(k)
        logger.info("manual_retry_all kind=%s count=%s", k.value if k else "ALL", count)
        if self.metrics is not None and count:
            self.metrics.inc("settlement_manual_retries_total", {"kind": k.value if k else "ALL", "result": "queued"}, count)
        return count

    def stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        by_status = self.store.count_by_status()
        stuck = self.store.count_stuck(stale_before=now - timedelta(minutes=self.stuck_after_minutes))
        totals: dict[str, int] = {}
        for counts in by_status.values():
            for status, n in counts.items():
                totals[status] = totals.get(status, 0) + n
        return {
            "byKind": by_status,
            "totals": totals,
            "stuck": stuck,
            # what retry_all would requeue
            "retryable": self.store.count_retryable(),
        }

    def worker_health(self) -> WorkerHealth:
        return self._require_supervisor().health()

    def worker_control(self, action: Any) -> ControlResult:
        if action not in WORKER_ACTIONS:
            raise InvalidWorkerAction("Invalid action. Must be: start, stop, or restart")
        return self._require_supervisor().control(action)

    def _require_supervisor(self) -> ProcessSupervisor:
        if self.supervisor is None:
            raise SupervisorUnavailable("Process supervisor not configured")
        return self.supervisor

    def _count(self, kind: SettlementKind, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_manual_retry(kind.value, result)

# app/settlements/store.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Protocol

from app.settlements.model import (
    AWAITING_STATUSES,
    STALE_CLAIM_REASON,
    ReconciliationRecord,
    RecordStatus,
    SettlementKind,
)
from app.settlements.state_machine import assert_completion_invariant, can_transition

DEFAULT_MAX_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementStore(Protocol):
    """
    Durable collection of reconciliation records keyed by (kind, external reference).

    Every mutating call is a compare-and-set against the current status and returns
    whether it applied. Callers never assume a write happened.
    """

    def get(self, kind: SettlementKind, ref: str) -> Optional[ReconciliationRecord]: ...

    def upsert_by_external_reference(
        self, kind: SettlementKind, ref: str, patch: dict[str, Any]
    ) -> ReconciliationRecord: ...

    def find_candidates(
        self,
        *,
        kinds: Iterable[SettlementKind],
        statuses: Iterable[RecordStatus],
        stale_before: datetime,
        limit: int,
        reference: Optional[str] = None,
    ) -> list[ReconciliationRecord]: ...

    def find_pending(self, *, kinds: Iterable[SettlementKind], limit: int) -> list[ReconciliationRecord]: ...

    def claim(
        self,
        kind: SettlementKind,
        ref: str,
        from_statuses: Iterable[RecordStatus] = (RecordStatus.PENDING,),
    ) -> bool: ...

    def complete(self, kind: SettlementKind, ref: str, result: dict[str, Any]) -> bool: ...

    def fail(
        self,
        kind: SettlementKind,
        ref: str,
        reason: str,
        *,
        increment_attempt: bool = True,
        result: Optional[dict[str, Any]] = None,
    ) -> bool: ...

    def reset_stale(
        self, kind: SettlementKind, ref: str, *, stale_before: datetime, reason: str = STALE_CLAIM_REASON
    ) -> bool: ...

    def patch_inputs(self, kind: SettlementKind, ref: str, values: dict[str, Any]) -> bool: ...

    def mark_awaiting(self, kind: SettlementKind, ref: str, status: RecordStatus) -> bool: ...

    def touch(self, kind: SettlementKind, ref: str) -> bool: ...

    def requeue(self, kind: SettlementKind, ref: str) -> bool: ...

    def requeue_failed(self, kind: Optional[SettlementKind] = None) -> int: ...

    def count_by_status(self) -> dict[str, dict[str, int]]: ...

    def count_stuck(self, *, stale_before: datetime) -> int: ...

    def count_retryable(self, kind: Optional[SettlementKind] = None) -> int: ...

    def ping(self) -> None: ...


def _is_stale(record: ReconciliationRecord, stale_before: datetime) -> bool:
    ts = record.claim_timestamp
    return ts is None or ts <= stale_before


def _merge(base: dict[str, Any], patch: Optional[dict[str, Any]]) -> dict[str, Any]:
    out = dict(base or {})
    for k, v in (patch or {}).items():
        if v is None:
            continue
        out[k] = v
    return out


class InMemorySettlementStore:
    """
    Thread-safe in-process store. Used by tests and local development (no DATABASE_URL).
    A single lock makes every compare-and-set atomic.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = _utcnow,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._clock = clock
        self._default_max_attempts = default_max_attempts
        self._lock = threading.Lock()
        self._records: dict[tuple[SettlementKind, str], ReconciliationRecord] = {}

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def put(self, record: ReconciliationRecord) -> ReconciliationRecord:
        """Insert/replace a record verbatim (seeding helper)."""
        now = self._clock()
        rec = record.with_changes(
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        with self._lock:
            self._records[(rec.kind, rec.id)] = rec
        return rec

    def _swap(self, key, expected: ReconciliationRecord, **changes: Any) -> ReconciliationRecord:
        updated = expected.with_changes(updated_at=self._clock(), **changes)
        self._records[key] = updated
        return updated

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get(self, kind: SettlementKind, ref: str) -> Optional[ReconciliationRecord]:
        with self._lock:
            return self._records.get((kind, ref))

    def find_candidates(
        self,
        *,
        kinds: Iterable[SettlementKind],
        statuses: Iterable[RecordStatus],
        stale_before: datetime,
        limit: int,
        reference: Optional[str] = None,
    ) -> list[ReconciliationRecord]:
        kind_set = set(kinds)
        status_set = set(statuses)
        with self._lock:
            rows = [r for r in self._records.values() if r.kind in kind_set]

        if reference is not None:
            picked = [r for r in rows if r.id == reference]
        else:
            picked = []
            for r in rows:
                if r.status == RecordStatus.IN_PROGRESS:
                    if _is_stale(r, stale_before):
                        picked.append(r)
                elif r.status in status_set:
                    if r.status == RecordStatus.FAILED and not r.budget_left:
                        continue
                    picked.append(r)

        picked.sort(key=lambda r: r.updated_at or datetime.min.replace(tzinfo=timezone.utc))
        return picked[: max(0, int(limit))]

    def find_pending(self, *, kinds: Iterable[SettlementKind], limit: int) -> list[ReconciliationRecord]:
        kind_set = set(kinds)
        with self._lock:
            rows = [
                r
                for r in self._records.values()
                if r.kind in kind_set and r.status == RecordStatus.PENDING
            ]
        rows.sort(key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return rows[: max(0, int(limit))]

    def count_by_status(self) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {k.value: {s.value: 0 for s in RecordStatus} for k in SettlementKind}
        with self._lock:
            for r in self._records.values():
                out[r.kind.value][r.status.value] += 1
        return out

    def count_stuck(self, *, stale_before: datetime) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records.values()
                if r.status == RecordStatus.IN_PROGRESS and _is_stale(r, stale_before)
            )

    def count_retryable(self, kind: Optional[SettlementKind] = None) -> int:
        with self._lock:
            return sum(
                1
                for r in self._records.values()
                if (kind is None or r.kind == kind) and r.status == RecordStatus.FAILED and r.budget_left
            )

    def ping(self) -> None:
        return None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def upsert_by_external_reference(
        self, kind: SettlementKind, ref: str, patch: dict[str, Any]
    ) -> ReconciliationRecord:
        key = (kind, ref)
        now = self._clock()
        with self._lock:
            existing = self._records.get(key)
            if existing is None:
                rec = ReconciliationRecord(
                    id=ref,
                    kind=kind,
                    status=RecordStatus(patch.get("status") or RecordStatus.PENDING),
                    required_inputs=_merge({}, patch.get("required_inputs")),
                    raw_payload=_merge({}, patch.get("raw_payload")),
                    max_attempts=int(patch.get("max_attempts") or self._default_max_attempts),
                    created_at=now,
                    updated_at=now,
                )
                self._records[key] = rec
                return rec

            changes: dict[str, Any] = {
                "required_inputs": _merge(existing.required_inputs, patch.get("required_inputs")),
                "raw_payload": _merge(existing.raw_payload, patch.get("raw_payload")),
            }
            new_status = patch.get("status")
            # upstream may only move records that are not claimed/terminal
            if new_status and existing.status not in (RecordStatus.IN_PROGRESS, RecordStatus.COMPLETED):
                changes["status"] = RecordStatus(new_status)
            if patch.get("max_attempts"):
                changes["max_attempts"] = int(patch["max_attempts"])
            return self._swap(key, existing, **changes)

    def claim(
        self,
        kind: SettlementKind,
        ref: str,
        from_statuses: Iterable[RecordStatus] = (RecordStatus.PENDING,),
    ) -> bool:
        allowed = set(from_statuses)
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status not in allowed or rec.settled:
                return False
            if not can_transition(rec.status, RecordStatus.IN_PROGRESS):
                return False
            now = self._clock()
            self._swap(key, rec, status=RecordStatus.IN_PROGRESS, started_at=now, last_attempt_at=now)
            return True

    def complete(self, kind: SettlementKind, ref: str, result: dict[str, Any]) -> bool:
        assert_completion_invariant(RecordStatus.COMPLETED, result)
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status != RecordStatus.IN_PROGRESS:
                return False
            self._swap(key, rec, status=RecordStatus.COMPLETED, settlement_result=dict(result), last_error=None)
            return True

    def fail(
        self,
        kind: SettlementKind,
        ref: str,
        reason: str,
        *,
        increment_attempt: bool = True,
        result: Optional[dict[str, Any]] = None,
    ) -> bool:
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status != RecordStatus.IN_PROGRESS:
                return False
            attempts = rec.attempt_count
            if increment_attempt:
                attempts = min(attempts + 1, rec.max_attempts)
            self._swap(
                key,
                rec,
                status=RecordStatus.FAILED,
                attempt_count=attempts,
                last_error=reason,
                last_attempt_at=self._clock(),
                settlement_result=dict(result) if result is not None else rec.settlement_result,
            )
            return True

    def reset_stale(
        self, kind: SettlementKind, ref: str, *, stale_before: datetime, reason: str = STALE_CLAIM_REASON
    ) -> bool:
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status != RecordStatus.IN_PROGRESS or not _is_stale(rec, stale_before):
                return False
            self._swap(key, rec, status=RecordStatus.FAILED, last_error=reason, last_attempt_at=self._clock())
            return True

    def patch_inputs(self, kind: SettlementKind, ref: str, values: dict[str, Any]) -> bool:
        if not values:
            return False
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status == RecordStatus.COMPLETED:
                return False
            self._swap(key, rec, required_inputs=_merge(rec.required_inputs, values))
            return True

    def mark_awaiting(self, kind: SettlementKind, ref: str, status: RecordStatus) -> bool:
        if status not in AWAITING_STATUSES:
            raise ValueError(f"not an awaiting status: {status}")
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None:
                return False
            if rec.status != status and not can_transition(rec.status, status):
                return False
            self._swap(key, rec, status=status)
            return True

    def touch(self, kind: SettlementKind, ref: str) -> bool:
        """Bump updated_at so an unchanged record moves to the back of the sweep order."""
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status in (RecordStatus.IN_PROGRESS, RecordStatus.COMPLETED):
                return False
            self._swap(key, rec)
            return True

    def requeue(self, kind: SettlementKind, ref: str) -> bool:
        key = (kind, ref)
        with self._lock:
            rec = self._records.get(key)
            if rec is None or rec.status != RecordStatus.FAILED or not rec.budget_left:
                return False
            self._swap(key, rec, status=RecordStatus.PENDING, last_error=None, started_at=None)
            return True

    def requeue_failed(self, kind: Optional[SettlementKind] = None) -> int:
        count = 0
        with self._lock:
            for key, rec in list(self._records.items()):
                if kind is not None and rec.kind != kind:
                    continue
                if rec.status == RecordStatus.FAILED and rec.budget_left:
                    self._swap(key, rec, status=RecordStatus.PENDING, last_error=None, started_at=None)
                    count += 1
        return count

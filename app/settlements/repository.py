# app/settlements/repository.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from psycopg2.extras import Json, RealDictCursor

from db import get_conn
from app.settlements.model import (
    AWAITING_STATUSES,
    STALE_CLAIM_REASON,
    ReconciliationRecord,
    RecordStatus,
    SettlementKind,
)
from app.settlements.state_machine import ALLOWED, assert_completion_invariant

DEFAULT_MAX_ATTEMPTS = 3

_COLUMNS = """
  kind,
  ref,
  status,
  required_inputs,
  raw_payload,
  attempt_count,
  max_attempts,
  started_at,
  last_attempt_at,
  last_error,
  settlement_result,
  created_at,
  updated_at
"""

# same predicate as app.settlements.store._is_stale
_STALE_SQL = "(COALESCE(last_attempt_at, started_at) IS NULL OR COALESCE(last_attempt_at, started_at) <= %s)"
_NOT_SETTLED_SQL = "COALESCE((settlement_result->>'success')::boolean, false) = false"


def _row_to_record(row: dict[str, Any]) -> ReconciliationRecord:
    return ReconciliationRecord(
        id=row["ref"],
        kind=SettlementKind(row["kind"]),
        status=RecordStatus(row["status"]),
        required_inputs=dict(row.get("required_inputs") or {}),
        raw_payload=dict(row.get("raw_payload") or {}),
        attempt_count=int(row.get("attempt_count") or 0),
        max_attempts=int(row.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
        started_at=row.get("started_at"),
        last_attempt_at=row.get("last_attempt_at"),
        last_error=row.get("last_error"),
        settlement_result=row.get("settlement_result"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _values(items: Iterable[Any]) -> list[str]:
    return [getattr(i, "value", i) for i in items]


def _strip_none(values: Optional[dict[str, Any]]) -> dict[str, Any]:
    return {k: v for k, v in (values or {}).items() if v is not None}


class PostgresSettlementStore:
    """
    app.settlement_records backed store.

    Every transition is a single conditional UPDATE so concurrent sweeps/workers
    serialize on the row; rowcount tells the caller whether it won.
    """

    def __init__(self, *, default_max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._default_max_attempts = default_max_attempts

    # ==========================================================
    # Reads
    # ==========================================================

    def get(self, kind: SettlementKind, ref: str) -> Optional[ReconciliationRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM app.settlement_records WHERE kind = %s AND ref = %s",
                    (kind.value, ref),
                )
                row = cur.fetchone()
        return _row_to_record(dict(row)) if row else None

    def find_candidates(
        self,
        *,
        kinds: Iterable[SettlementKind],
        statuses: Iterable[RecordStatus],
        stale_before: datetime,
        limit: int,
        reference: Optional[str] = None,
    ) -> list[ReconciliationRecord]:
        kind_values = _values(kinds)
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                if reference is not None:
                    cur.execute(
                        f"""
                        SELECT {_COLUMNS}
                        FROM app.settlement_records
                        WHERE kind = ANY(%s::text[])
                          AND ref = %s
                        ORDER BY updated_at ASC
                        LIMIT %s
                        """,
                        (kind_values, reference, limit),
                    )
                else:
                    cur.execute(
                        f"""
                        SELECT {_COLUMNS}
                        FROM app.settlement_records
                        WHERE kind = ANY(%s::text[])
                          AND (
                            (status = ANY(%s::text[]) AND status <> 'FAILED')
                            OR (status = 'FAILED' AND 'FAILED' = ANY(%s::text[]) AND attempt_count < max_attempts)
                            OR (status = 'IN_PROGRESS' AND {_STALE_SQL})
                          )
                        ORDER BY updated_at ASC
                        LIMIT %s
                        """,
                        (kind_values, _values(statuses), _values(statuses), stale_before, limit),
                    )
                rows = cur.fetchall() or []
        return [_row_to_record(dict(r)) for r in rows]

    def find_pending(self, *, kinds: Iterable[SettlementKind], limit: int) -> list[ReconciliationRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.settlement_records
                    WHERE kind = ANY(%s::text[])
                      AND status = 'PENDING'
                    ORDER BY created_at ASC
                    LIMIT %s
                    """,
                    (_values(kinds), limit),
                )
                rows = cur.fetchall() or []
        return [_row_to_record(dict(r)) for r in rows]

    def count_by_status(self) -> dict[str, dict[str, int]]:
        out: dict[str, dict[str, int]] = {k.value: {s.value: 0 for s in RecordStatus} for k in SettlementKind}
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT kind, status, COUNT(*)::int
                    FROM app.settlement_records
                    GROUP BY kind, status
                    """
                )
                for kind, status, n in cur.fetchall() or []:
                    out.setdefault(kind, {})[status] = int(n)
        return out

    def count_stuck(self, *, stale_before: datetime) -> int:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT COUNT(*)::int
                    FROM app.settlement_records
                    WHERE status = 'IN_PROGRESS' AND {_STALE_SQL}
                    """,
                    (stale_before,),
                )
                return int(cur.fetchone()[0])

    def count_retryable(self, kind: Optional[SettlementKind] = None) -> int:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(*)::int
                    FROM app.settlement_records
                    WHERE status = 'FAILED'
                      AND attempt_count < max_attempts
                      AND (%s::text IS NULL OR kind = %s::text)
                    """,
                    (kind.value if kind else None, kind.value if kind else None),
                )
                return int(cur.fetchone()[0])

    def ping(self) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()

    # ==========================================================
    # Updates
    # ==========================================================

    def upsert_by_external_reference(
        self, kind: SettlementKind, ref: str, patch: dict[str, Any]
    ) -> ReconciliationRecord:
        status = patch.get("status")
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    INSERT INTO app.settlement_records (
                      kind, ref, status, required_inputs, raw_payload, max_attempts
                    )
                    VALUES (%s, %s, COALESCE(%s, 'PENDING'), %s::jsonb, %s::jsonb, %s)
                    ON CONFLICT (kind, ref) DO UPDATE
                    SET
                      required_inputs = app.settlement_records.required_inputs || EXCLUDED.required_inputs,
                      raw_payload = app.settlement_records.raw_payload || EXCLUDED.raw_payload,
                      status = CASE
                        WHEN %s::text IS NOT NULL
                         AND app.settlement_records.status NOT IN ('IN_PROGRESS', 'COMPLETED')
                        THEN %s::text
                        ELSE app.settlement_records.status
                      END,
                      max_attempts = COALESCE(%s, app.settlement_records.max_attempts),
                      updated_at = now()
                    RETURNING {_COLUMNS}
                    """,
                    (
                        kind.value,
                        ref,
                        getattr(status, "value", status),
                        Json(_strip_none(patch.get("required_inputs"))),
                        Json(_strip_none(patch.get("raw_payload"))),
                        int(patch.get("max_attempts") or self._default_max_attempts),
                        getattr(status, "value", status),
                        getattr(status, "value", status),
                        patch.get("max_attempts"),
                    ),
                )
                row = cur.fetchone()
        return _row_to_record(dict(row))

    def claim(
        self,
        kind: SettlementKind,
        ref: str,
        from_statuses: Iterable[RecordStatus] = (RecordStatus.PENDING,),
    ) -> bool:
        allowed = [s for s in from_statuses if RecordStatus.IN_PROGRESS in ALLOWED.get(RecordStatus(s), set())]
        if not allowed:
            return False
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE app.settlement_records
                    SET status = 'IN_PROGRESS',
                        started_at = now(),
                        last_attempt_at = now(),
                        updated_at = now()
                    WHERE kind = %s
                      AND ref = %s
                      AND status = ANY(%s::text[])
                      AND {_NOT_SETTLED_SQL}
                    """,
                    (kind.value, ref, _values(allowed)),
                )
                return cur.rowcount == 1

    def complete(self, kind: SettlementKind, ref: str, result: dict[str, Any]) -> bool:
        assert_completion_invariant(RecordStatus.COMPLETED, result)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET status = 'COMPLETED',
                        settlement_result = %s::jsonb,
                        last_error = NULL,
                        updated_at = now()
                    WHERE kind = %s AND ref = %s AND status = 'IN_PROGRESS'
                    """,
                    (Json(result), kind.value, ref),
                )
                return cur.rowcount == 1

    def fail(
        self,
        kind: SettlementKind,
        ref: str,
        reason: str,
        *,
        increment_attempt: bool = True,
        result: Optional[dict[str, Any]] = None,
    ) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET status = 'FAILED',
                        attempt_count = CASE
                          WHEN %s THEN LEAST(attempt_count + 1, max_attempts)
                          ELSE attempt_count
                        END,
                        last_error = %s,
                        last_attempt_at = now(),
                        settlement_result = COALESCE(%s::jsonb, settlement_result),
                        updated_at = now()
                    WHERE kind = %s AND ref = %s AND status = 'IN_PROGRESS'
                    """,
                    (
                        bool(increment_attempt),
                        reason,
                        Json(result) if result is not None else None,
                        kind.value,
                        ref,
                    ),
                )
                return cur.rowcount == 1

    def reset_stale(
        self, kind: SettlementKind, ref: str, *, stale_before: datetime, reason: str = STALE_CLAIM_REASON
    ) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE app.settlement_records
                    SET status = 'FAILED',
                        last_error = %s,
                        last_attempt_at = now(),
                        updated_at = now()
                    WHERE kind = %s
                      AND ref = %s
                      AND status = 'IN_PROGRESS'
                      AND {_STALE_SQL}
                    """,
                    (reason, kind.value, ref, stale_before),
                )
                return cur.rowcount == 1

    def patch_inputs(self, kind: SettlementKind, ref: str, values: dict[str, Any]) -> bool:
        clean = _strip_none(values)
        if not clean:
            return False
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET required_inputs = required_inputs || %s::jsonb,
                        updated_at = now()
                    WHERE kind = %s AND ref = %s AND status <> 'COMPLETED'
                    """,
                    (Json(clean), kind.value, ref),
                )
                return cur.rowcount == 1

    def mark_awaiting(self, kind: SettlementKind, ref: str, status: RecordStatus) -> bool:
        if status not in AWAITING_STATUSES:
            raise ValueError(f"not an awaiting status: {status}")
        sources = [s.value for s, targets in ALLOWED.items() if status in targets] + [status.value]
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET status = %s, updated_at = now()
                    WHERE kind = %s AND ref = %s AND status = ANY(%s::text[])
                    """,
                    (status.value, kind.value, ref, sources),
                )
                return cur.rowcount == 1

    def touch(self, kind: SettlementKind, ref: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET updated_at = now()
                    WHERE kind = %s AND ref = %s
                      AND status NOT IN ('IN_PROGRESS', 'COMPLETED')
                    """,
                    (kind.value, ref),
                )
                return cur.rowcount == 1

    def requeue(self, kind: SettlementKind, ref: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.settlement_records
                    SET status = 'PENDING',
                        last_error = NULL,
                        started_at = NULL,
                        updated_at = now()
                    WHERE kind = %s AND ref = %s
                      AND status = 'FAILED'
                      AND attempt_count < max_attempts
                    """,
                    (kind.value, ref),
                )
                return cur.rowcount == 1

    def requeue_failed(self, kind: Optional[SettlementKind] = None) -> int:
        kind_filter = ""
        params: list[Any] = []
        if kind is not None:
            kind_filter = "AND kind = %s"
            params.append(kind.value)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE app.settlement_records
                    SET status = 'PENDING',
                        last_error = NULL,
                        started_at = NULL,
                        updated_at = now()
                    WHERE status = 'FAILED'
                      AND attempt_count < max_attempts
                      {kind_filter}
                    """,
                    tuple(params),
                )
                return int(cur.rowcount or 0)

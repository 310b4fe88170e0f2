# services/errors.py
from __future__ import annotations

from fastapi import HTTPException

from app.settlements.errors import SettlementError

SETTLEMENT_ERROR_HTTP_MAP: dict[str, tuple[int, str | None]] = {
    # None => pass the error's own message through
    "INVALID_INPUT": (400, None),
    "RECORD_NOT_FOUND": (404, None),
    "NOT_RETRYABLE": (400, None),
    "RETRY_BUDGET_EXHAUSTED": (400, None),
    "INVALID_WORKER_ACTION": (400, None),
    "SUPERVISOR_UNAVAILABLE": (503, None),
    "WORKER_NOT_FOUND": (503, None),
    "STORE_UNAVAILABLE": (500, "Store unavailable"),
}


def http_status_for(exc: SettlementError) -> int:
    status, _ = SETTLEMENT_ERROR_HTTP_MAP.get(exc.code, (500, None))
    return status


def raise_http_from_settlement_error(exc: Exception) -> None:
    """
    Convert known settlement errors into HTTP responses; otherwise fail closed.
    """
    if isinstance(exc, SettlementError) and exc.code in SETTLEMENT_ERROR_HTTP_MAP:
        status, message = SETTLEMENT_ERROR_HTTP_MAP[exc.code]
        raise HTTPException(status_code=status, detail=message or exc.message)

    raise HTTPException(status_code=500, detail="Internal server error")

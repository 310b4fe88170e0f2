# routes/settlements.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.settlements.engine import Engine
from app.settlements.errors import SettlementError
from deps.engine import get_engine
from deps.operator import require_operator
from schemas import RecordResponse, RetryAllResponse, RetryRequest, RetryResponse, StatsResponse
from services.errors import raise_http_from_settlement_error

router = APIRouter(
    prefix="/v1/admin/settlements",
    tags=["admin", "settlements"],
    dependencies=[Depends(require_operator)],
)


@router.post("/retry", response_model=RetryResponse)
def retry_settlement(
    body: RetryRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    payload = body or RetryRequest()
    try:
        record = engine.gateway.retry_one(payload.kind, payload.id)
    except SettlementError as exc:
        raise_http_from_settlement_error(exc)

    return RetryResponse(
        message="Record queued for retry",
        id=record.id,
        kind=record.kind.value,
        attemptCount=record.attempt_count,
    )


@router.put("/retry-all", response_model=RetryAllResponse)
def retry_all_settlements(
    kind: str | None = Query(default=None),
    engine: Engine = Depends(get_engine),
):
    try:
        count = engine.gateway.retry_all(kind)
    except SettlementError as exc:
        raise_http_from_settlement_error(exc)

    return RetryAllResponse(message=f"{count} records queued for retry", count=count)


@router.get("/stats", response_model=StatsResponse)
def settlement_stats(engine: Engine = Depends(get_engine)):
    return StatsResponse(**engine.gateway.stats())


@router.get("/{kind}/{ref}", response_model=RecordResponse)
def settlement_status(kind: str, ref: str, engine: Engine = Depends(get_engine)):
    try:
        record = engine.gateway.get_status(kind, ref)
    except SettlementError as exc:
        raise_http_from_settlement_error(exc)

    return RecordResponse(record=record.to_dict())

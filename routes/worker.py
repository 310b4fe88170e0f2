# routes/worker.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.settlements.engine import Engine
from app.settlements.errors import SettlementError, WorkerNotFound
from deps.engine import get_engine
from deps.operator import require_operator
from schemas import WorkerControlRequest, WorkerControlResponse
from services.errors import http_status_for, raise_http_from_settlement_error

router = APIRouter(
    prefix="/v1/admin/worker",
    tags=["admin", "worker"],
    dependencies=[Depends(require_operator)],
)


@router.get("/health")
def worker_health(engine: Engine = Depends(get_engine)):
    try:
        health = engine.gateway.worker_health()
    except SettlementError as exc:
        return JSONResponse(
            status_code=http_status_for(exc),
            content={
                "status": "error",
                "message": exc.message,
                "worker": "not_found" if isinstance(exc, WorkerNotFound) else "not_running",
            },
        )

    return {
        "status": "healthy" if health.healthy else "unhealthy",
        "worker": health.to_dict(),
    }


@router.post("/health", response_model=WorkerControlResponse)
def worker_control(
    body: WorkerControlRequest | None = None,
    engine: Engine = Depends(get_engine),
):
    payload = body or WorkerControlRequest()
    try:
        result = engine.gateway.worker_control(payload.action)
    except SettlementError as exc:
        raise_http_from_settlement_error(exc)

    return WorkerControlResponse(action=result.action, output=result.output, error=result.error)

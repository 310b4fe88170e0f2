# routes/sweep.py
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse

from app.settlements.engine import Engine
from app.settlements.model import SettlementKind, parse_kind
from deps.engine import get_engine
from services.observability import get_request_id
from settings import settings

router = APIRouter(prefix="/v1/cron", tags=["cron"])

logger = logging.getLogger("reconciler.cron")


def _positive_int(raw: str | None, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _token_ok(candidate: str | None, expected: str) -> bool:
    return bool(candidate) and hmac.compare_digest(candidate.encode(), expected.encode())


@router.get("/settlement-sweep")
def settlement_sweep(
    engine: Engine = Depends(get_engine),
    limit: str | None = Query(default=None),
    debug: str | None = Query(default=None),
    stale_minutes: str | None = Query(default=None, alias="staleMinutes"),
    reference: str | None = Query(default=None),
    tx: str | None = Query(default=None),
    kind: str | None = Query(default=None),
    token: str | None = Query(default=None),
    x_cron_token: str | None = Header(default=None, alias="x-cron-token"),
):
    secret = (settings.SWEEP_SECRET or "").strip()
    if secret and not (_token_ok(x_cron_token, secret) or _token_ok(token, secret)):
        return JSONResponse(status_code=403, content={"success": False, "error": "Forbidden"})

    kinds: tuple[SettlementKind, ...] = tuple(SettlementKind)
    if kind:
        parsed = parse_kind(kind)
        if parsed is None:
            return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid kind: {kind}"})
        kinds = (parsed,)

    safe_limit = _positive_int(limit, settings.SWEEP_DEFAULT_LIMIT)
    safe_stale = _positive_int(stale_minutes, settings.STALE_CLAIM_MINUTES)
    debug_enabled = (debug or "").strip().lower() in {"true", "1"}

    try:
        summary = engine.sweep_with(safe_stale).run(
            kinds=kinds,
            limit=safe_limit,
            reference=(reference or tx or None),
            debug=debug_enabled,
        )
    except Exception as exc:
        logger.exception("settlement_sweep_failed request_id=%s", get_request_id())
        engine.metrics.increment_sweep_run("error")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": f"Failed to run settlement sweep: {type(exc).__name__}"},
        )

    return summary.to_response(debug=debug_enabled)

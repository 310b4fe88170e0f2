from __future__ import annotations

import os

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.settlements.engine import Engine
from deps.engine import get_engine

router = APIRouter(tags=["health"])


def _check_store(engine: Engine) -> tuple[bool, str | None]:
    try:
        engine.store.ping()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def _resolve_git_sha() -> str | None:
    return (
        (os.getenv("FLY_IMAGE_REF") or "").strip()
        or (os.getenv("GIT_SHA") or "").strip()
        or None
    )


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
    }


@router.get("/readyz")
def readyz(engine: Engine = Depends(get_engine)):
    store_ok, store_error = _check_store(engine)
    body = {
        "ready": store_ok,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "store": type(engine.store).__name__,
        "store_ok": store_ok,
        "store_error": store_error,
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)

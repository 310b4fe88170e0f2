#main.py
import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.settlements.engine import Engine, build_engine
from middleware import RequestContextMiddleware
from rate_limit import InMemoryRateLimiter
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.settlements import router as settlements_router
from routes.sweep import router as sweep_router
from routes.worker import router as worker_router
from settings import validate_env_settings

logger = logging.getLogger("reconciler.app")

DEFAULT_PORT = 8001


def _resolve_port() -> int:
    raw = os.getenv("PORT", "").strip()
    try:
        port = int(raw)
    except ValueError:
        return DEFAULT_PORT
    return port if 0 < port < 65536 else DEFAULT_PORT


def create_app(
    engine: Engine | None = None,
    *,
    rate_limiter: InMemoryRateLimiter | None = None,
    **engine_kwargs,
) -> FastAPI:
    """
    engine_kwargs (store, clients, supervisor, metrics, ...) go to build_engine
    when no engine is passed.
    """
    validate_env_settings()

    app = FastAPI(title="Settlement Reconciler", version="1.0.0")
    app.state.engine = engine or build_engine(**engine_kwargs)
    app.state.metrics = app.state.engine.metrics
    app.state.rate_limiter = rate_limiter or InMemoryRateLimiter()

    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(sweep_router)
    app.include_router(settlements_router)
    app.include_router(worker_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_error request_id=%s path=%s",
            getattr(request.state, "request_id", None),
            request.url.path,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=_resolve_port())

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.settlements.engine import Engine
from deps.engine import get_engine

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(engine: Engine = Depends(get_engine)):
    body = engine.metrics.render_prometheus()
    return Response(content=body, media_type="text/plain; version=0.0.4")

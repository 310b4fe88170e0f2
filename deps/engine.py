# deps/engine.py
from fastapi import Request

from app.settlements.engine import Engine


def get_engine(request: Request) -> Engine:
    return request.app.state.engine

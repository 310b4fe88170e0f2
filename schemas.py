# schemas.py
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

WorkerAction = Literal["start", "stop", "restart"]


# -------- MANUAL RETRY --------
class RetryRequest(BaseModel):
    # kind/id validated by the gateway so missing values map to 400, not 422
    model_config = ConfigDict(extra="ignore")
    kind: Optional[str] = None
    id: Optional[str] = None


class RetryResponse(BaseModel):
    success: bool = True
    message: str
    id: str
    kind: str
    attemptCount: int


class RetryAllResponse(BaseModel):
    success: bool = True
    message: str
    count: int


# -------- WORKER --------
class WorkerControlRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    action: Optional[str] = None


class WorkerControlResponse(BaseModel):
    success: bool = True
    action: str
    output: str = ""
    error: Optional[str] = None


# -------- STATS --------
class StatsResponse(BaseModel):
    success: bool = True
    byKind: dict[str, dict[str, int]]
    totals: dict[str, int]
    stuck: int = Field(ge=0)
    retryable: int = Field(ge=0)


class RecordResponse(BaseModel):
    success: bool = True
    record: dict[str, Any]

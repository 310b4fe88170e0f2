# app/settlements/errors.py
from __future__ import annotations


class SettlementError(Exception):
    """Domain error carrying a stable code; routes map codes to HTTP (services/errors.py)."""

    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidInput(SettlementError):
    code = "INVALID_INPUT"


class RecordNotFound(SettlementError):
    code = "RECORD_NOT_FOUND"


class NotRetryable(SettlementError):
    code = "NOT_RETRYABLE"


class RetryBudgetExhausted(SettlementError):
    code = "RETRY_BUDGET_EXHAUSTED"


class SupervisorUnavailable(SettlementError):
    code = "SUPERVISOR_UNAVAILABLE"


class WorkerNotFound(SettlementError):
    code = "WORKER_NOT_FOUND"


class InvalidWorkerAction(SettlementError):
    code = "INVALID_WORKER_ACTION"


class StoreUnavailable(SettlementError):
    code = "STORE_UNAVAILABLE"

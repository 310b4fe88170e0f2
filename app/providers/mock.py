# app/providers/mock.py
from __future__ import annotations

import threading
from typing import Any, Optional

from app.providers.base import SettlementResult, SettlementStatus
from app.settlements.model import SettlementInputs


class MockSettlementClient:
    """
    Test/dev client. Records every call so tests can assert on call counts.

    `status` drives the outcome; `raises` makes settle() raise instead.
    """

    def __init__(
        self,
        *,
        status: SettlementStatus = "SUCCESS",
        error: Optional[str] = None,
        raises: Optional[Exception] = None,
        response: Optional[dict[str, Any]] = None,
    ):
        self.status = status
        self.error = error
        self.raises = raises
        self.response = response
        self.calls: list[tuple[str, SettlementInputs]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def settle(self, reference: str, inputs: SettlementInputs, raw_payload: dict[str, Any]) -> SettlementResult:
        with self._lock:
            self.calls.append((reference, inputs))
        if self.raises is not None:
            raise self.raises
        if self.status == "SUCCESS":
            return SettlementResult(
                status="SUCCESS",
                http_status=200,
                response=self.response or {"success": True, "reference": reference, "mock": True},
            )
        return SettlementResult(
            status=self.status,
            http_status=504 if self.status == "FAILED" else 200,
            error=self.error or ("Gateway timeout" if self.status == "FAILED" else "skipped"),
            response=self.response,
        )

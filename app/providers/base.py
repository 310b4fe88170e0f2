
# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Literal

from app.settlements.model import SettlementInputs

SettlementStatus = Literal["SUCCESS", "SKIPPED", "FAILED"]


@dataclass(frozen=True)
class SettlementResult:
    status: SettlementStatus
    response: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    http_status: Optional[int] = None
    # raw body kept for non-JSON / malformed responses
    raw_text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS"

    @property
    def skipped(self) -> bool:
        return self.status == "SKIPPED"

    def to_result_payload(self) -> dict[str, Any]:
        """Shape persisted as settlement_result."""
        payload: dict[str, Any] = {"success": self.ok}
        if self.response is not None:
            payload["response"] = self.response
        if self.http_status is not None:
            payload["httpStatus"] = self.http_status
        if self.error:
            payload["error"] = self.error
        return payload


class SettlementClient(Protocol):
    def settle(self, reference: str, inputs: SettlementInputs, raw_payload: dict[str, Any]) -> SettlementResult: ...



from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SettlementKind(str, Enum):
    ALLOCATION = "ALLOCATION"
    DISBURSEMENT = "DISBURSEMENT"


class RecordStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    # ALLOCATION only: blocked on upstream data
    AWAITING_TX_HASH = "AWAITING_TX_HASH"
    AWAITING_AMOUNT = "AWAITING_AMOUNT"


AWAITING_STATUSES = frozenset({RecordStatus.AWAITING_TX_HASH, RecordStatus.AWAITING_AMOUNT})
FORCE_CLAIMABLE = frozenset({RecordStatus.PENDING, RecordStatus.FAILED}) | AWAITING_STATUSES

STALE_CLAIM_REASON = "stale claim reset"

# canonical field names per kind
ALLOCATION_FIELDS = ("asset", "user_address", "amount_usd", "tx_hash")
ALLOCATION_OPTIONAL_FIELDS = ("goal_id",)
DISBURSEMENT_FIELDS = ("recipient", "amount", "channel")

REQUIRED_FIELDS: dict[SettlementKind, tuple[str, ...]] = {
    SettlementKind.ALLOCATION: ALLOCATION_FIELDS,
    SettlementKind.DISBURSEMENT: DISBURSEMENT_FIELDS,
}


def parse_kind(value: Any) -> Optional[SettlementKind]:
    raw = (str(value) if value is not None else "").strip().upper()
    if not raw:
        return None
    try:
        return SettlementKind(raw)
    except ValueError:
        return None


def is_settled(result: Optional[dict[str, Any]]) -> bool:
    """The already-settled marker: a persisted result with success=true."""
    return isinstance(result, dict) and result.get("success") is True


@dataclass(frozen=True)
class ReconciliationRecord:
    id: str
    kind: SettlementKind
    status: RecordStatus
    required_inputs: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)
    attempt_count: int = 0
    max_attempts: int = 3
    started_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    settlement_result: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def budget_left(self) -> bool:
        return self.attempt_count < self.max_attempts

    @property
    def settled(self) -> bool:
        return is_settled(self.settlement_result)

    @property
    def claim_timestamp(self) -> Optional[datetime]:
        return self.last_attempt_at or self.started_at

    def with_changes(self, **changes: Any) -> "ReconciliationRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        def _ts(v: Optional[datetime]) -> Optional[str]:
            return v.isoformat() if v else None

        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "requiredInputs": dict(self.required_inputs),
            "attemptCount": self.attempt_count,
            "maxAttempts": self.max_attempts,
            "startedAt": _ts(self.started_at),
            "lastAttemptAt": _ts(self.last_attempt_at),
            "lastError": self.last_error,
            "settlementResult": self.settlement_result,
            "createdAt": _ts(self.created_at),
            "updatedAt": _ts(self.updated_at),
        }


@dataclass(frozen=True)
class AllocationInputs:
    asset: str
    user_address: str
    amount_usd: str
    tx_hash: str
    goal_id: Optional[str] = None


@dataclass(frozen=True)
class DisbursementInputs:
    recipient: str
    amount: str
    channel: str


SettlementInputs = AllocationInputs | DisbursementInputs


def build_inputs(kind: SettlementKind, values: dict[str, Any]) -> SettlementInputs:
    """
    Build the kind-specific input struct. Caller guarantees required fields are present
    (see app.settlements.recovery.resolve).
    """
    if kind == SettlementKind.ALLOCATION:
        goal_id = values.get("goal_id")
        return AllocationInputs(
            asset=str(values["asset"]).strip(),
            user_address=str(values["user_address"]).strip(),
            amount_usd=str(values["amount_usd"]).strip(),
            tx_hash=str(values["tx_hash"]).strip(),
            goal_id=str(goal_id).strip() if goal_id not in (None, "") else None,
        )
    return DisbursementInputs(
        recipient=str(values["recipient"]).strip(),
        amount=str(values["amount"]).strip(),
        channel=str(values["channel"]).strip(),
    )

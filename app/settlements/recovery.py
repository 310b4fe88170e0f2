# app/settlements/recovery.py
"""
Field recovery for incomplete settlement records.

Upstream events often land before every required input is known: the fiat rail
confirms a deposit before the on-chain tx hash is reported, or the amount only
shows up on a later status poll. The resolver looks for each missing field in a
fixed, ordered list of places inside the last-known raw payload. First
non-empty match wins.

`resolve` is pure: it never mutates the record, the inputs or the payload. The
caller persists `Resolution.patch` so the canonical field survives for the next
attempt.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, NamedTuple, Optional

from app.settlements.model import (
    ALLOCATION_OPTIONAL_FIELDS,
    REQUIRED_FIELDS,
    RecordStatus,
    SettlementInputs,
    SettlementKind,
    build_inputs,
)

Source = Literal["root", "status", "webhook", "initiate", "transfer"]

# keys under the payload root that hold nested sources, not values
_NESTED_KEYS = ("provider", "transfer")


def _as_dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class RawPayload:
    root: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    webhook: dict[str, Any] = field(default_factory=dict)
    initiate: dict[str, Any] = field(default_factory=dict)
    transfer: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RawPayload":
        raw = _as_dict(raw)
        provider = _as_dict(raw.get("provider"))
        return cls(
            root={k: v for k, v in raw.items() if k not in _NESTED_KEYS},
            status=_as_dict(provider.get("lastStatusPayload")),
            webhook=_as_dict(provider.get("lastWebhookPayload")),
            initiate=_as_dict(provider.get("initiateResponse")),
            transfer=_as_dict(raw.get("transfer")),
        )

    def lookup(self, source: Source, path: tuple[str, ...]) -> Any:
        node: Any = getattr(self, source)
        for key in path:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
        return node


class Accessor(NamedTuple):
    source: Source
    path: tuple[str, ...]


def _a(source: Source, *path: str) -> Accessor:
    return Accessor(source, tuple(path))


# Ordered by trust: explicit top-level values, then the latest status poll,
# then the webhook, then the initiate response.
ACCESSORS: dict[SettlementKind, dict[str, tuple[Accessor, ...]]] = {
    SettlementKind.ALLOCATION: {
        "tx_hash": (
            _a("root", "txHash"),
            _a("root", "tx_hash"),
            _a("status", "data", "transaction_hash"),
            _a("webhook", "data", "transaction_hash"),
        ),
        "amount_usd": (
            _a("root", "amountInUsd"),
            _a("root", "amount_usd"),
            _a("status", "data", "amount_in_usd"),
            _a("webhook", "data", "amount_in_usd"),
        ),
        "user_address": (
            _a("root", "userAddress"),
            _a("root", "user_address"),
            _a("initiate", "data", "user_address"),
            _a("initiate", "user_address"),
        ),
        "asset": (
            _a("root", "asset"),
            _a("initiate", "data", "asset"),
            _a("status", "data", "asset"),
        ),
        "goal_id": (
            _a("root", "targetGoalId"),
            _a("root", "goal_id"),
        ),
    },
    SettlementKind.DISBURSEMENT: {
        "recipient": (
            _a("root", "recipient"),
            _a("root", "phoneNumber"),
            _a("transfer", "recipient"),
            _a("webhook", "data", "recipient"),
            _a("webhook", "data", "phone_number"),
        ),
        "amount": (
            _a("root", "amount"),
            _a("root", "amountKES"),
            _a("transfer", "amount"),
            _a("webhook", "data", "amount"),
        ),
        "channel": (
            _a("root", "mobileNetwork"),
            _a("root", "channel"),
            _a("transfer", "mobile_network"),
            _a("webhook", "data", "mobile_network"),
        ),
    },
}


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list, tuple)):
        return False
    return True


def _normalize(value: Any) -> str:
    return str(value).strip()


@dataclass(frozen=True)
class Resolution:
    kind: SettlementKind
    inputs: dict[str, Any]
    patch: dict[str, Any]
    missing: tuple[str, ...]

    @property
    def complete(self) -> bool:
        return not self.missing

    def typed_inputs(self) -> SettlementInputs:
        if not self.complete:
            raise ValueError(f"inputs incomplete: missing {', '.join(self.missing)}")
        return build_inputs(self.kind, self.inputs)

    def awaiting_status(self) -> Optional[RecordStatus]:
        """AWAITING_* for allocation gaps on tx hash or amount, else None."""
        if self.kind != SettlementKind.ALLOCATION:
            return None
        if "tx_hash" in self.missing:
            return RecordStatus.AWAITING_TX_HASH
        if "amount_usd" in self.missing:
            return RecordStatus.AWAITING_AMOUNT
        return None


def resolve(
    kind: SettlementKind,
    required_inputs: Optional[Mapping[str, Any]],
    raw_payload: Optional[Mapping[str, Any] | RawPayload],
) -> Resolution:
    payload = raw_payload if isinstance(raw_payload, RawPayload) else RawPayload.from_dict(raw_payload)
    current = dict(required_inputs or {})
    accessors = ACCESSORS[kind]

    wanted = REQUIRED_FIELDS[kind]
    if kind == SettlementKind.ALLOCATION:
        wanted = wanted + ALLOCATION_OPTIONAL_FIELDS

    inputs: dict[str, Any] = {}
    patch: dict[str, Any] = {}
    for name in wanted:
        value = current.get(name)
        if _present(value):
            inputs[name] = _normalize(value)
            continue
        for acc in accessors.get(name, ()):
            found = payload.lookup(acc.source, acc.path)
            if _present(found):
                inputs[name] = patch[name] = _normalize(found)
                break

    missing = tuple(name for name in REQUIRED_FIELDS[kind] if name not in inputs)
    return Resolution(kind=kind, inputs=inputs, patch=patch, missing=missing)

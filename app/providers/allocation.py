# app/providers/allocation.py
from __future__ import annotations

import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from app.providers.base import SettlementResult
from app.providers.http import HttpClient
from app.settlements.model import AllocationInputs, SettlementInputs
from settings import settings

logger = logging.getLogger("reconciler.allocation")

SUPPORTED_ASSETS = ("USDC", "cUSD", "USDT", "cKES")

ASSET_DECIMALS = {
    "USDC": 6,
    "USDT": 6,
    "CUSD": 18,
    "CKES": 6,
}
DEFAULT_DECIMALS = 18


def normalize_asset(asset: str) -> Optional[str]:
    wanted = (asset or "").strip().lower()
    for supported in SUPPORTED_ASSETS:
        if supported.lower() == wanted:
            return supported
    return None


def to_base_units(asset: str, amount: str) -> str:
    """
    Decimal amount -> integer base units for the asset's token decimals.
    Excess precision is truncated. Raises ValueError on non-numeric or non-positive input.
    """
    decimals = ASSET_DECIMALS.get((asset or "").upper(), DEFAULT_DECIMALS)
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Invalid amount: {amount!r}")
    units = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return str(int(units))


def _provider_payload(reference: str, raw_payload: dict[str, Any]) -> dict[str, Any]:
    provider = raw_payload.get("provider") if isinstance(raw_payload, dict) else None
    provider = provider if isinstance(provider, dict) else {}
    for key in ("lastWebhookPayload", "lastStatusPayload", "initiateResponse"):
        value = provider.get(key)
        if isinstance(value, dict) and value:
            return value
    return {"data": {"transaction_code": reference}}


class AllocationClient:
    """
    Credits a confirmed deposit to the user's on-chain position:
    POST {ALLOCATE_API_URL}?action=allocate
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        http: HttpClient | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.ALLOCATE_API_URL or "").strip()
        self.http = http or HttpClient(timeout_s=timeout_s or settings.SETTLEMENT_HTTP_TIMEOUT_S)

    def build_request(self, reference: str, inputs: AllocationInputs, raw_payload: dict[str, Any]) -> dict[str, Any]:
        asset = normalize_asset(inputs.asset)
        if asset is None:
            raise ValueError(f"Unsupported asset for allocation: {inputs.asset}")
        body: dict[str, Any] = {
            "asset": asset,
            "userAddress": inputs.user_address,
            "amount": to_base_units(asset, inputs.amount_usd),
            "txHash": inputs.tx_hash,
            "providerPayload": _provider_payload(reference, raw_payload),
            "idempotencyKey": reference,
        }
        if inputs.goal_id:
            body["targetGoalId"] = inputs.goal_id
        return body

    def settle(self, reference: str, inputs: SettlementInputs, raw_payload: dict[str, Any]) -> SettlementResult:
        if not isinstance(inputs, AllocationInputs):
            return SettlementResult(status="FAILED", error="Allocation client requires allocation inputs")
        if not self.base_url:
            return SettlementResult(status="FAILED", error="ALLOCATE_API_URL not configured")

        try:
            body = self.build_request(reference, inputs, raw_payload or {})
        except ValueError as exc:
            return SettlementResult(status="FAILED", error=str(exc))

        try:
            resp = self.http.post(
                self.base_url,
                headers={"Content-Type": "application/json"},
                json_body=body,
                params={"action": "allocate"},
            )
        except httpx.HTTPError as exc:
            logger.warning("allocation_http_error ref=%s error=%s", reference, exc)
            return SettlementResult(status="FAILED", error=f"{type(exc).__name__}: {exc}")

        return classify_response(resp.status_code, resp.json, resp.text)


def classify_response(status_code: int, payload: Any, text: str) -> SettlementResult:
    """
    2xx with a JSON object is success unless the body says otherwise.
    Anything else is a failure with the raw body preserved.
    """
    raw = (text or "")[:2000]
    if not (200 <= status_code < 300):
        return SettlementResult(
            status="FAILED",
            http_status=status_code,
            error=f"HTTP {status_code}: {raw}",
            raw_text=raw,
            response=payload if isinstance(payload, dict) else None,
        )
    if not isinstance(payload, dict):
        return SettlementResult(
            status="FAILED",
            http_status=status_code,
            error=f"Malformed response: {raw}",
            raw_text=raw,
        )
    if payload.get("skipped") is True:
        return SettlementResult(
            status="SKIPPED",
            http_status=status_code,
            response=payload,
            error=str(payload.get("reason") or "skipped upstream"),
        )
    if payload.get("success") is False:
        return SettlementResult(
            status="FAILED",
            http_status=status_code,
            response=payload,
            error=str(payload.get("error") or payload.get("message") or "settlement rejected"),
            raw_text=raw,
        )
    return SettlementResult(status="SUCCESS", http_status=status_code, response=payload)

# app/providers/disbursement.py
from __future__ import annotations

import logging
from typing import Any

import requests

from app.providers.allocation import classify_response
from app.providers.base import SettlementResult
from app.settlements.model import DisbursementInputs, SettlementInputs
from services.redaction import redact_dict
from settings import settings

logger = logging.getLogger("reconciler.disbursement")

PAYOUT_TYPE = "MOBILE"


def _missing_config(*values: str) -> list[str]:
    names = ("DISBURSE_API_URL", "DISBURSE_API_KEY")
    return [name for name, value in zip(names, values) if not (value or "").strip()]


class DisbursementClient:
    """
    Pays fiat out to a mobile-money account. The record id goes out as
    transaction_code so the payout rail can dedupe repeats.
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        *,
        callback_url: str | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.url = (url if url is not None else settings.DISBURSE_API_URL or "").strip()
        self.api_key = (api_key if api_key is not None else settings.DISBURSE_API_KEY or "").strip()
        self.callback_url = (
            callback_url if callback_url is not None else settings.DISBURSE_CALLBACK_URL or ""
        ).strip()
        self.timeout_s = timeout_s or settings.SETTLEMENT_HTTP_TIMEOUT_S

    def build_request(self, reference: str, inputs: DisbursementInputs) -> dict[str, Any]:
        body: dict[str, Any] = {
            "transaction_code": reference,
            "shortcode": inputs.recipient,
            "amount": inputs.amount,
            "mobile_network": inputs.channel,
            "type": PAYOUT_TYPE,
        }
        if self.callback_url:
            body["callback_url"] = self.callback_url
        return body

    def settle(self, reference: str, inputs: SettlementInputs, raw_payload: dict[str, Any]) -> SettlementResult:
        if not isinstance(inputs, DisbursementInputs):
            return SettlementResult(status="FAILED", error="Disbursement client requires disbursement inputs")
        missing = _missing_config(self.url, self.api_key)
        if missing:
            return SettlementResult(
                status="FAILED",
                error=f"Disbursement config missing: {', '.join(missing)}",
                response={"missing": missing},
            )

        body = self.build_request(reference, inputs)
        logger.info("disbursement_request ref=%s body=%s", reference, redact_dict(body))
        try:
            resp = requests.post(
                self.url,
                json=body,
                headers={"Content-Type": "application/json", "x-api-key": self.api_key},
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("disbursement_http_error ref=%s error=%s", reference, exc)
            return SettlementResult(status="FAILED", error=f"{type(exc).__name__}: {exc}")

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        return classify_response(resp.status_code, payload, resp.text)

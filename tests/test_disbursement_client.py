from __future__ import annotations

import logging

import requests

from app.providers.disbursement import DisbursementClient
from app.settlements.model import DisbursementInputs

INPUTS = DisbursementInputs(recipient="0712345678", amount="1500", channel="SAFARICOM")


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_disbursement_request_shape(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        return FakeResponse(200, {"status": "queued"})

    monkeypatch.setattr("app.providers.disbursement.requests.post", fake_post)

    client = DisbursementClient("https://payouts.test/v1/payouts", "k-123", callback_url="https://cb.test", timeout_s=9)
    result = client.settle("JOB-1", INPUTS, {})

    assert result.ok
    assert calls[0]["url"] == "https://payouts.test/v1/payouts"
    assert calls[0]["json"] == {
        "transaction_code": "JOB-1",
        "shortcode": "0712345678",
        "amount": "1500",
        "mobile_network": "SAFARICOM",
        "type": "MOBILE",
        "callback_url": "https://cb.test",
    }
    assert calls[0]["headers"]["x-api-key"] == "k-123"
    assert calls[0]["timeout"] == 9


def test_disbursement_missing_config_fails_without_call(monkeypatch):
    def fake_post(*args, **kwargs):
        raise AssertionError("should not be called")

    monkeypatch.setattr("app.providers.disbursement.requests.post", fake_post)

    result = DisbursementClient("", "").settle("JOB-1", INPUTS, {})

    assert result.status == "FAILED"
    assert result.error == "Disbursement config missing: DISBURSE_API_URL, DISBURSE_API_KEY"


def test_disbursement_non_2xx_keeps_body(monkeypatch):
    monkeypatch.setattr(
        "app.providers.disbursement.requests.post",
        lambda *a, **k: FakeResponse(503, None, "upstream unavailable"),
    )

    result = DisbursementClient("https://payouts.test", "k").settle("JOB-2", INPUTS, {})

    assert result.status == "FAILED"
    assert result.http_status == 503
    assert result.raw_text == "upstream unavailable"


def test_disbursement_network_error(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.ConnectionError("reset by peer")

    monkeypatch.setattr("app.providers.disbursement.requests.post", fake_post)

    result = DisbursementClient("https://payouts.test", "k").settle("JOB-3", INPUTS, {})

    assert result.status == "FAILED"
    assert "ConnectionError" in result.error


def test_disbursement_log_masks_recipient(monkeypatch, caplog):
    monkeypatch.setattr(
        "app.providers.disbursement.requests.post",
        lambda *a, **k: FakeResponse(200, {"ok": True}),
    )
    caplog.set_level(logging.INFO, logger="reconciler.disbursement")

    DisbursementClient("https://payouts.test", "k").settle("JOB-4", INPUTS, {})

    assert "0712345678" not in caplog.text
    assert "0712****78" in caplog.text

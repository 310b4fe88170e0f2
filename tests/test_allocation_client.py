from __future__ import annotations

import json

import httpx
import pytest

from app.providers.allocation import AllocationClient, classify_response, normalize_asset, to_base_units
from app.providers.http import HttpClient
from app.settlements.model import AllocationInputs, DisbursementInputs

INPUTS = AllocationInputs(
    asset="usdc",
    user_address="0x" + "ab" * 20,
    amount_usd="12.345678901",
    tx_hash="0x" + "11" * 32,
)


def _client(handler) -> AllocationClient:
    return AllocationClient("https://allocator.test/api", http=HttpClient(transport=httpx.MockTransport(handler)))


def test_to_base_units_truncates_to_token_decimals():
    assert to_base_units("USDC", "12.345678901") == "12345678"
    assert to_base_units("cUSD", "1") == "1" + "0" * 18
    assert to_base_units("UNKNOWN", "0.5") == "5" + "0" * 17


@pytest.mark.parametrize("amount", ["0", "-1", "abc", "NaN"])
def test_to_base_units_rejects_bad_amounts(amount):
    with pytest.raises(ValueError):
        to_base_units("USDC", amount)


def test_normalize_asset():
    assert normalize_asset("cusd") == "cUSD"
    assert normalize_asset("DAI") is None


def test_settle_posts_allocation_request():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "allocationId": "al_1"})

    result = _client(handler).settle("TX-1", INPUTS, {})

    assert result.ok
    assert result.response == {"success": True, "allocationId": "al_1"}
    req = seen[0]
    assert req.url.params["action"] == "allocate"
    body = json.loads(req.content)
    assert body["asset"] == "USDC"
    assert body["amount"] == "12345678"
    assert body["txHash"] == INPUTS.tx_hash
    assert body["idempotencyKey"] == "TX-1"
    assert body["providerPayload"] == {"data": {"transaction_code": "TX-1"}}
    assert "targetGoalId" not in body


def test_settle_forwards_webhook_payload_and_goal():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": 1})

    inputs = AllocationInputs(
        asset="USDC", user_address="0xabc", amount_usd="1", tx_hash="0x1", goal_id="goal-9"
    )
    webhook = {"event": "deposit", "data": {"transaction_hash": "0x1"}}
    _client(handler).settle("TX-2", inputs, {"provider": {"lastWebhookPayload": webhook}})

    assert seen[0]["providerPayload"] == webhook
    assert seen[0]["targetGoalId"] == "goal-9"


def test_settle_unsupported_asset_fails_without_call():
    def handler(request):
        raise AssertionError("should not be called")

    inputs = AllocationInputs(asset="DAI", user_address="0xabc", amount_usd="1", tx_hash="0x1")
    result = _client(handler).settle("TX-3", inputs, {})

    assert result.status == "FAILED"
    assert "Unsupported asset" in result.error


def test_settle_http_error_is_failed():
    result = _client(lambda r: httpx.Response(502, text="bad gateway")).settle("TX-4", INPUTS, {})
    assert result.status == "FAILED"
    assert result.http_status == 502
    assert result.error == "HTTP 502: bad gateway"


def test_settle_transport_error_is_failed():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = _client(handler).settle("TX-5", INPUTS, {})
    assert result.status == "FAILED"
    assert "ConnectError" in result.error


def test_settle_without_url_fails():
    client = AllocationClient("", http=HttpClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    result = client.settle("TX-6", INPUTS, {})
    assert result.status == "FAILED"
    assert "not configured" in result.error


def test_settle_rejects_wrong_inputs_type():
    result = _client(lambda r: httpx.Response(200, json={})).settle(
        "TX-7", DisbursementInputs(recipient="0712", amount="1", channel="MPESA"), {}
    )
    assert result.status == "FAILED"


def test_classify_response():
    assert classify_response(200, {"skipped": True, "reason": "dup"}, "").status == "SKIPPED"
    rejected = classify_response(200, {"success": False, "error": "insufficient"}, "")
    assert rejected.status == "FAILED"
    assert rejected.error == "insufficient"
    assert classify_response(200, None, "<html>").error == "Malformed response: <html>"
    assert classify_response(201, {"id": 1}, "").status == "SUCCESS"


def test_result_payload_shape():
    failed = classify_response(500, None, "oops")
    assert failed.to_result_payload() == {"success": False, "httpStatus": 500, "error": "HTTP 500: oops"}

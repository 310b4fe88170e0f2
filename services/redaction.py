from __future__ import annotations

import re
from typing import Any


_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])([A-Za-z0-9._%+-]*)(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
# E.164 and local mobile-money shortcodes (e.g. 0712345678, 254712345678)
_PHONE_RE = re.compile(r"\+?\b\d{9,15}\b")
_WALLET_RE = re.compile(r"\b0x[a-fA-F0-9]{40}\b")

_SENSITIVE_KEY_MARKERS = (
    "token",
    "authorization",
    "secret",
    "signature",
    "password",
    "api_key",
    "apikey",
    "x-api-key",
)

# values that are phone numbers even when the text pattern does not match
_PHONE_KEYS = {"shortcode", "phone", "phonenumber", "phone_number", "recipient", "msisdn"}


def _mask_email(match: re.Match) -> str:
    first = match.group(1)
    domain = match.group(3)
    return f"{first}***{domain}"


def _mask_phone(value: str) -> str:
    if len(value) <= 6:
        return "***"
    return f"{value[:4]}****{value[-2:]}"


def _mask_wallet(match: re.Match) -> str:
    value = match.group(0)
    return f"{value[:6]}...{value[-4:]}"


def redact_text(value: str) -> str:
    masked = _EMAIL_RE.sub(_mask_email, value)
    masked = _WALLET_RE.sub(_mask_wallet, masked)
    masked = _PHONE_RE.sub(lambda m: _mask_phone(m.group(0)), masked)

    for marker in ("access_token", "refresh_token", "bearer"):
        if marker in masked.lower():
            return "[REDACTED]"

    return masked


def _is_sensitive_key(key: str) -> bool:
    key_l = (key or "").lower()
    return any(marker in key_l for marker in _SENSITIVE_KEY_MARKERS)


def redact_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in payload.items():
        if _is_sensitive_key(k):
            out[k] = "[REDACTED]"
        elif str(k).lower() in _PHONE_KEYS and isinstance(v, (str, int)):
            out[k] = _mask_phone(str(v))
        else:
            out[k] = redact_value(v)
    return out

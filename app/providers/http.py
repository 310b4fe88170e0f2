# app/providers/http.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from services.redaction import redact_dict

logger = logging.getLogger("reconciler.http")

_SECRET_HEADERS = {"authorization", "x-api-key"}


@dataclass
class HttpResponse:
    status_code: int
    json: Optional[Any]
    text: str


class HttpClient:
    def __init__(
        self,
        timeout_s: float = 20.0,
        follow_redirects: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        # transport is injectable so tests can use httpx.MockTransport
        self._client = httpx.Client(timeout=timeout_s, follow_redirects=follow_redirects, transport=transport)

    def post(
        self,
        url: str,
        *,
        headers: dict[str, str],
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        debug: bool = False,
    ) -> HttpResponse:
        r = self._client.post(url, headers=headers, json=json_body, params=params)
        if debug:
            self._debug_dump("POST", url, headers, json_body, r)
        return self._wrap(r)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _wrap(r: httpx.Response) -> HttpResponse:
        try:
            payload = r.json()
        except ValueError:
            payload = None
        return HttpResponse(status_code=r.status_code, json=payload, text=r.text)

    @staticmethod
    def _debug_dump(method: str, url: str, headers: dict[str, str], json_body: Any, r: httpx.Response) -> None:
        safe_headers = {k: ("REDACTED" if k.lower() in _SECRET_HEADERS else v) for k, v in (headers or {}).items()}
        logger.debug(
            "http_debug method=%s url=%s headers=%s json=%s status=%s text=%s",
            method,
            url,
            safe_headers,
            redact_dict(json_body) if isinstance(json_body, dict) else json_body,
            r.status_code,
            r.text[:300],
        )

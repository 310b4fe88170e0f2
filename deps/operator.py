# deps/operator.py
import hmac

from fastapi import Header, HTTPException, Request, status

import rate_limit
from settings import settings


def require_operator(
    request: Request,
    x_operator_key: str | None = Header(default=None, alias="X-Operator-Key"),
) -> None:
    expected = (settings.OPERATOR_API_KEY or "").strip()
    # unset key => open (dev/test); validate_env_settings refuses that on staging/prod
    if expected and not hmac.compare_digest((x_operator_key or "").encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="OPERATOR_REQUIRED",
        )

    if rate_limit.rate_limit_enabled():
        client = request.client.host if request.client else "unknown"
        rate_limit.rate_limit_or_429(
            key=f"operator:{client}",
            limit=rate_limit.operator_limit_per_min(),
            window_seconds=60,
            limiter=getattr(request.app.state, "rate_limiter", None),
        )

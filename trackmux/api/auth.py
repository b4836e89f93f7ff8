"""Shared-secret checks for inbound HTTP traffic."""

import hashlib
import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

API_SECRET_HEADER = "x-api-secret"
SIGNATURE_HEADER = "x-provider-signature"


def sign_body(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA512 of a request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a provider signature over the raw body in constant time."""
    if not signature or not secret:
        return False
    expected = sign_body(raw_body, secret)
    provided = signature.strip().lower().encode("utf-8")
    return hmac.compare_digest(expected.encode("utf-8"), provided)


async def require_api_secret(
    request: Request,
    x_api_secret: Optional[str] = Header(default=None, alias=API_SECRET_HEADER),
) -> None:
    """Reject /trackings requests without the configured API secret.

    No check is made when the deployment has no secret configured.
    """
    configured = request.app.state.config.api.api_secret
    if not configured:
        return
    provided = str(x_api_secret or "").strip()
    if not provided or not hmac.compare_digest(
        provided.encode("utf-8"), configured.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "unauthorized",
                "reason": "invalid_or_missing_api_secret",
            },
        )

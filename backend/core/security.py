"""
ServiceOps Security Utilities

JWT handling for staff endpoints and HMAC verification for inbound webhooks.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta

from jose import JWTError, jwt

from core.config import get_settings


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    runtime_settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, runtime_settings.jwt_secret, algorithm=runtime_settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a locally issued JWT. Returns None when invalid or expired."""
    runtime_settings = get_settings()
    try:
        return jwt.decode(
            token,
            runtime_settings.jwt_secret,
            algorithms=[runtime_settings.jwt_algorithm],
        )
    except JWTError:
        return None


def compute_webhook_hmac(secret: str, raw_body: bytes) -> str:
    """Base64 HMAC-SHA256 digest, the format Shopify sends in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_hmac(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """
    Constant-time signature check over the raw request body.

    Fails closed: an unset secret or a missing header never verifies.
    """
    if not secret or not signature:
        return False
    expected = compute_webhook_hmac(secret, raw_body)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore"))

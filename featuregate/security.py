"""Session token and subscription webhook signature helpers."""

from __future__ import annotations

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="


def generate_access_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def sign_payload(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature: str | None, secret: str | None) -> bool:
    """Validate a subscription event signature.

    Accepts the digest with or without the `sha256=` prefix. With no secret
    configured, validation is skipped.
    """
    if not secret:
        return True
    if not signature:
        return False
    provided = signature.strip()
    if not provided.startswith(SIGNATURE_PREFIX):
        provided = f"{SIGNATURE_PREFIX}{provided}"
    return hmac.compare_digest(provided, sign_payload(payload, secret))

"""
Webhook signature validation (HMAC-SHA256 over the raw body)
"""
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

from outreach_sync.config import get_settings

settings = get_settings()

SIGNATURE_HEADERS = {
    "smartlead": "x-smartlead-signature",
    "replyio": "x-replyio-signature",
}


@dataclass
class SignatureCheck:
    valid: bool
    warning: Optional[str] = None
    error: Optional[str] = None


def webhook_secret(source_type: str) -> Optional[str]:
    return getattr(settings, f"{source_type}_webhook_secret", None)


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> SignatureCheck:
    """
    Constant-time check of a hex HMAC-SHA256 signature.

    An unset secret accepts the request with a warning so that local and
    staging setups work without one.
    """
    if not secret:
        return SignatureCheck(valid=True, warning="webhook secret not configured, signature not verified")
    if not signature:
        return SignatureCheck(valid=False, error="missing signature header")

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    if not secrets.compare_digest(provided.lower(), sign(body, secret)):
        return SignatureCheck(valid=False, error="signature mismatch")
    return SignatureCheck(valid=True)

"""Provider callback authentication.

Runs before anything is written to the database. An empty configured secret
disables verification (local development); a warning is logged on every call
so the condition cannot go unnoticed in production.
"""
import hashlib
import hmac
import logging
from typing import Optional

from services.errors import AuthenticationError

logger = logging.getLogger(__name__)


def verify_hotmart_hottok(token: Optional[str], secret: Optional[str]) -> None:
    """Hotmart sends the shared `hottok` in the X-Hotmart-Hottok header or the body."""
    if not secret:
        logger.warning("HOTMART_HOTTOK not configured - skipping hottok verification")
        return
    if not token:
        raise AuthenticationError("Missing hottok")
    if not hmac.compare_digest(str(token).encode(), secret.encode()):
        raise AuthenticationError("Invalid hottok")


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_doppus_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """X-Doppus-Signature is the hex HMAC-SHA256 of the raw request body."""
    if not secret:
        logger.warning("DOPPUS_SECRET_KEY not configured - skipping signature verification")
        return
    if not signature:
        raise AuthenticationError("Missing X-Doppus-Signature header")
    provided = signature.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid X-Doppus-Signature")

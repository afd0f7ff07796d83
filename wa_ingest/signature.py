"""
Webhook signature verification.

The provider signs the raw request body with HMAC-SHA256 using the app
secret and sends ``sha256=<hex>`` in the X-Hub-Signature-256 header.
Verification must run on the bytes exactly as received, before JSON parsing.
"""

import hashlib
import hmac
import logging

from wa_ingest.config import Settings
from wa_ingest.errors import AuthenticityFailure

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of body under secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    Args:
        body: Raw request body bytes
        signature_header: Header value, with or without the ``sha256=`` prefix
        secret: Shared app secret

    Returns:
        True if the signature matches, False otherwise (including when the
        header or the secret is empty).
    """
    if not signature_header or not secret:
        return False

    signature = signature_header
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected_signature = compute_signature(body, secret)

    # compare_digest needs str operands of ASCII characters
    try:
        return hmac.compare_digest(expected_signature, signature)
    except TypeError:
        return False


def check_request_signature(body: bytes, signature_header: str | None, settings: Settings) -> None:
    """
    Apply the webhook authenticity policy.

    Without a configured secret the check is bypassed with a warning, except
    in production where the request is rejected.

    Raises:
        AuthenticityFailure: if the request must be rejected.
    """
    secret = settings.WHATSAPP_APP_SECRET
    if not secret:
        if settings.is_production:
            logger.error("WHATSAPP_APP_SECRET not set in production, rejecting webhook")
            raise AuthenticityFailure("app secret not configured")
        logger.warning("WHATSAPP_APP_SECRET not set, skipping webhook signature check")
        return

    if not signature_header:
        logger.warning("Missing X-Hub-Signature-256 header")
        raise AuthenticityFailure("missing signature header")

    if not verify_signature(body, signature_header, secret):
        logger.warning(f"Invalid webhook signature (body length {len(body)} bytes)")
        raise AuthenticityFailure("signature mismatch")

    logger.debug("Webhook signature verified")

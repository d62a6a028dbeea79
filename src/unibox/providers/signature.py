"""Webhook signature verification (HMAC-SHA256 over the raw body)."""

import hashlib
import hmac

from .errors import SignatureInvalid


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the body. Used by tests and the webhook sender script."""
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(payload_bytes: bytes, signature_header: str | None, secret: str) -> None:
    """Verify a webhook signature header against the shared secret.

    Accepts a bare hex digest or the `sha256=<hex>` form.

    Raises:
        SignatureInvalid: If the header is missing or does not match.
    """
    if not signature_header:
        raise SignatureInvalid("missing signature header")

    expected_sig = signature_header.strip()
    if expected_sig.startswith("sha256="):
        expected_sig = expected_sig[7:]

    computed_sig = compute_signature(payload_bytes, secret)

    # Header values may carry non-ASCII; compare_digest only takes ASCII str
    if not hmac.compare_digest(computed_sig.encode("ascii"), expected_sig.lower().encode("utf-8")):
        raise SignatureInvalid("signature mismatch")

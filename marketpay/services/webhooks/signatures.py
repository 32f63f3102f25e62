"""Webhook signature checks. Nothing about a delivery is trusted before these pass."""

import base64
import hashlib
import hmac

import stripe

from marketpay.common.errors import SignatureVerificationFailure, ValidationError


def square_signature(body: bytes, notification_url: str, signature_key: str) -> str:
    """Square signs base64(HMAC-SHA256(key, notification_url + body))."""

    digest = hmac.new(signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256)
    return base64.b64encode(digest.digest()).decode("ascii")


def verify_square_signature(body: bytes, signature: str | None, notification_url: str, signature_key: str) -> None:
    if not signature or not signature_key:
        raise SignatureVerificationFailure("Signature verification failed.")
    expected = square_signature(body, notification_url, signature_key)
    # Headers arrive latin-1 decoded and may hold non-ASCII; compare as bytes.
    if not hmac.compare_digest(expected.encode("ascii"), signature.encode("latin-1", "replace")):
        raise SignatureVerificationFailure("Signature verification failed.")


def verify_stripe_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Check the `Stripe-Signature` header (HMAC over `timestamp.body`, with replay tolerance)."""

    if not signature:
        raise SignatureVerificationFailure("Missing stripe-signature header.")
    try:
        stripe.Webhook.construct_event(body, signature, secret)
    except stripe.SignatureVerificationError as exc:
        raise SignatureVerificationFailure(str(exc) or "Signature verification failed.") from exc
    except ValueError as exc:
        # Raised only after the signature matched.
        raise ValidationError("Invalid JSON body.") from exc

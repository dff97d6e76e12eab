# licensing/services/stripe_webhook.py
import hashlib
import hmac
import logging
import time

import requests

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerificationError(Exception):
    pass


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("Invalid timestamp in Stripe-Signature header")
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp is None:
        raise SignatureVerificationError("No timestamp in Stripe-Signature header")
    if not signatures:
        raise SignatureVerificationError("No v1 signature in Stripe-Signature header")
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: int | None = None,
) -> None:
    """
    Check a webhook body against its ``Stripe-Signature`` header.

    Header format is ``t=<unix>,v1=<hex hmac>[,v1=...]``; the HMAC-SHA256 is
    over ``"<t>." + raw body``. Raises SignatureVerificationError on any
    mismatch or when the timestamp is outside ``tolerance``.
    """
    if not header:
        raise SignatureVerificationError("Missing Stripe-Signature header")
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")

    timestamp, signatures = _parse_signature_header(header)
    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError("No signature matches the expected signature for the payload")

    now = int(time.time()) if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise SignatureVerificationError("Timestamp outside the tolerance zone")


def build_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


class StripeClient:
    """Minimal read-only client for the two lookups checkout handling needs."""

    def __init__(self, secret_key: str | None, base_url: str = STRIPE_API_BASE, timeout: int = 8):
        self.secret_key = secret_key
        self.base_url = base_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    def _get(self, path: str, params: dict | None = None) -> dict:
        r = requests.get(
            f"{self.base_url}{path}",
            auth=(self.secret_key, ""),
            params=params,
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()

    def list_line_items(self, session_id: str) -> list[dict]:
        return self._get(f"/checkout/sessions/{session_id}/line_items", {"limit": 1}).get("data", [])

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self._get(f"/subscriptions/{subscription_id}")

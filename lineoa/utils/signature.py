"""Webhook signature verification (X-Line-Signature)."""
import base64
import hashlib
import hmac


def compute_signature(body: bytes, channel_secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body keyed by the channel secret."""
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature: str | None, channel_secret: str) -> bool:
    """
    Verify a webhook signature.

    `body` must be the exact bytes received; re-serialized JSON will not match.
    """
    if not signature or not channel_secret:
        return False
    expected = compute_signature(body, channel_secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("utf-8"))

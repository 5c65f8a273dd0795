from __future__ import annotations

import hashlib
import hmac


SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    # Compute HMAC SHA256 over the exact transmitted bytes as lowercase hex.
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, signature: str | None, secret: str) -> bool:
    # Receivers recompute over the raw body; compare in constant time.
    if not signature or not secret:
        return False
    raw = body.encode("utf-8") if isinstance(body, str) else body
    expected = compute_signature(secret, raw)
    return hmac.compare_digest(expected, signature.strip().lower())

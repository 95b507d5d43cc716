# backend/auth.py
import base64
import hashlib
import hmac
import json
import logging
import math
import secrets
import time

from settings import ConfigurationError, SigningConfig, REQUEST_MAX_AGE_MS

NONCE_BYTES = 16


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_nonce() -> str:
    return base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")


def canonical_json(value) -> str:
    # compact, insertion-ordered, non-ASCII kept as-is: same bytes as JSON.stringify
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canonical_payload(timestamp: int, nonce: str, api_key: str, data=None) -> str:
    """Serialize a SignedPayload. Field order is part of the wire contract."""
    return canonical_json({
        "timestamp": timestamp,
        "nonce": nonce,
        "apiKey": api_key,
        "data": data,
    })


def verify_timestamp(timestamp, max_age_ms: int = REQUEST_MAX_AGE_MS, now: int | None = None) -> bool:
    """
    True iff 0 <= now - timestamp <= max_age_ms.
    Any future skew is rejected, as is anything that is not a finite number.
    """
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        return False
    if not math.isfinite(timestamp):
        return False
    age = (now_ms() if now is None else now) - timestamp
    if age < 0:
        return False
    return age <= max_age_ms


class Signer:
    """HMAC-SHA256 over a canonical payload string, keyed by the server-held secret."""

    def __init__(self, config: SigningConfig):
        self.config = config

    def sign(self, payload: str) -> str:
        key = self.config.check_secret().encode("utf-8")
        digest = hmac.new(key, payload.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, payload: str, signature: str) -> bool:
        try:
            expected = self.sign(payload).encode("ascii")
            actual = signature.encode("utf-8")
        except ConfigurationError:
            raise
        except (AttributeError, TypeError, UnicodeError) as e:
            logging.warning(f"[hmac] verification error: {type(e).__name__}")
            return False
        if len(expected) != len(actual):
            return False
        return hmac.compare_digest(expected, actual)

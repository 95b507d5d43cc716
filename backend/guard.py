# backend/guard.py
import hmac
import json
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass
from functools import wraps

from flask import current_app, jsonify, request

from auth import Signer, canonical_payload, now_ms, verify_timestamp
from settings import SigningConfig

REQUIRED_HEADERS = ("x-timestamp", "x-nonce", "x-signature", "x-api-key")

_NO_BODY = object()
_TIMESTAMP_RE = re.compile(r"-?[0-9]{1,20}")

STATUS_ERRORS = {400: "Bad Request", 403: "Forbidden"}


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: str | None = None
    status: int = 200


OK = VerificationResult(True)


def _bad_request(reason):
    return VerificationResult(False, reason, 400)


def _forbidden(reason):
    return VerificationResult(False, reason, 403)


class NonceStore:
    """
    Seen-nonce cache for replay protection.
    Nonces expire window_ms after they were first seen; cleanup walks an ordered expiry queue.
    """

    def __init__(self, window_ms: int, clock=now_ms):
        self._seen: dict[str, int] = {}
        self._expiry: deque[tuple[int, str]] = deque()
        self._lock = threading.Lock()
        self._window_ms = window_ms
        self._clock = clock

    def _cleanup(self, now: int) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            _, nonce = self._expiry.popleft()
            self._seen.pop(nonce, None)

    def check_and_store(self, nonce: str) -> bool:
        """False if the nonce was already seen inside the window."""
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            if nonce in self._seen:
                return False
            self._seen[nonce] = now
            self._expiry.append((now + self._window_ms, nonce))
        return True

    def __len__(self):
        with self._lock:
            return len(self._seen)


class RequestVerifier:
    """Checks the four signing headers (and optionally the JSON body) of a protected call."""

    def __init__(self, config: SigningConfig, signer: Signer | None = None, clock=now_ms):
        self.config = config.validate()
        self.signer = signer or Signer(config)
        self.clock = clock
        self.nonces = NonceStore(config.request_max_age_ms, clock) if config.replay_protection else None

    def verify(self, headers, body=_NO_BODY) -> VerificationResult:
        """
        headers: any mapping with case-insensitive .get (werkzeug Headers, requests CaseInsensitiveDict).
        body: parsed JSON body for the body-aware variant; omit it for the no-body variant.
        """
        missing = [h for h in REQUIRED_HEADERS if not headers.get(h)]
        if missing:
            return _bad_request(f"Missing required headers: {', '.join(missing)}")

        timestamp = headers.get("x-timestamp")
        nonce = headers.get("x-nonce")
        signature = headers.get("x-signature")
        api_key = headers.get("x-api-key")

        if not hmac.compare_digest(api_key.encode("utf-8"), self.config.api_key.encode("utf-8")):
            return _forbidden("Invalid API key")

        if not _TIMESTAMP_RE.fullmatch(timestamp.strip()):
            return _bad_request("Invalid timestamp format")
        timestamp_num = int(timestamp)

        if not verify_timestamp(timestamp_num, self.config.request_max_age_ms, now=self.clock()):
            window_min = self.config.request_max_age_ms / 60000
            return _forbidden(f"Request timestamp expired or invalid (must be within {window_min:g} minutes)")

        data = None if body is _NO_BODY else body
        payload = canonical_payload(timestamp_num, nonce, api_key, data)
        if not self.signer.verify(payload, signature):
            return _forbidden("Invalid signature")

        if self.nonces is not None and not self.nonces.check_and_store(nonce):
            return _forbidden("Replayed nonce")

        return OK


def _reject_constant(name):
    raise ValueError(f"non-standard JSON constant {name}")


def parse_json_body(raw: str):
    """Strict JSON: NaN/Infinity are refused so the body can be re-serialized canonically."""
    return json.loads(raw, parse_constant=_reject_constant)


def _rejection(result: VerificationResult):
    logging.info(f"[guard] {request.method} {request.path} rejected ({result.status}): {result.reason}")
    return jsonify({
        "error": STATUS_ERRORS.get(result.status, "Forbidden"),
        "message": result.reason or "Invalid API request signature",
    }), result.status


def _verifier() -> RequestVerifier:
    return current_app.extensions["request_verifier"]


def require_signature(fn):
    """Gate a view on the signing headers; the signature covers data=null."""
    @wraps(fn)
    def wrapper(*a, **k):
        result = _verifier().verify(request.headers)
        if not result.valid:
            return _rejection(result)
        return fn(*a, **k)
    return wrapper


def require_signature_with_body(fn):
    """
    Like require_signature, but the signature covers the parsed JSON body, passed to the view as `body`.
    The body is parsed before the headers are checked, so an unparseable body is reported as
    "Invalid JSON body" even when signing headers are missing too.
    """
    @wraps(fn)
    def wrapper(*a, **k):
        try:
            body = parse_json_body(request.get_data(as_text=True))
        except (ValueError, RecursionError):
            return _rejection(_bad_request("Invalid JSON body"))
        result = _verifier().verify(request.headers, body)
        if not result.valid:
            return _rejection(result)
        return fn(*a, body=body, **k)
    return wrapper

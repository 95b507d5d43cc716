# backend/signed_client.py
import json
import logging

import requests
from requests.structures import CaseInsensitiveDict

from auth import canonical_json, canonical_payload, generate_nonce, now_ms

SIGN_PATH = "/api/auth/sign"


class SigningError(RuntimeError):
    """The signing endpoint refused or failed; the protected call is not attempted."""


class SignedClient:
    """
    Client side of the signing flow.
    The secret never leaves the server: every outbound call first asks the
    signing endpoint for a signature over {timestamp, nonce, apiKey, data}.
    """

    def __init__(self, base_url: str, api_key: str, session=None,
                 sign_path: str = SIGN_PATH, timeout: float = 10, clock=now_ms):
        if not api_key:
            raise ValueError("api_key is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.sign_path = sign_path
        self.timeout = timeout
        self.clock = clock

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _server_signature(self, payload: str) -> str:
        r = self.session.request(
            "POST", self._url(self.sign_path),
            json={"payload": payload},
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        if not r.ok:
            logging.warning(f"[sign] signing endpoint returned {r.status_code}")
            raise SigningError(f"Failed to get signature from server ({r.status_code})")
        signature = (r.json() or {}).get("signature")
        if not signature:
            raise SigningError("Signing endpoint returned no signature")
        return signature

    def create_signed_headers(self, data=None) -> dict:
        timestamp = self.clock()
        nonce = generate_nonce()
        payload = canonical_payload(timestamp, nonce, self.api_key, data)
        signature = self._server_signature(payload)
        return {
            "X-Timestamp": str(timestamp),
            "X-Nonce": nonce,
            "X-Signature": signature,
            "X-API-Key": self.api_key,
            "Content-Type": "application/json",
        }

    def request(self, method: str, path: str, body=None, json=None, headers=None, **kwargs):
        """
        signedFetch: sign, then send.
        `body` is a raw string/bytes body; if it parses as JSON it is signed as `data`.
        `json` is an object, serialized canonically so the signed and sent bytes agree.
        """
        data = None
        if json is not None:
            data = json
            body = canonical_json(json)
        elif body is not None:
            data = _parse_body(body)

        merged = CaseInsensitiveDict(self.create_signed_headers(data))
        merged.update(headers or {})

        if isinstance(body, str):
            body = body.encode("utf-8")
        kwargs.setdefault("timeout", self.timeout)
        return self.session.request(method, self._url(path), data=body, headers=merged, **kwargs)

    def get(self, path: str, **kwargs):
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs):
        return self.request("POST", path, **kwargs)


def _parse_body(body):
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(body, str):
        return None
    try:
        return json.loads(body)
    except (ValueError, RecursionError):
        return None

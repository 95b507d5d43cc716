# backend/settings.py
import os
from dataclasses import dataclass

MIN_SECRET_LENGTH = 32
SIGN_MAX_AGE_MS = 60 * 1000
REQUEST_MAX_AGE_MS = 5 * 60 * 1000


class ConfigurationError(RuntimeError):
    """Missing or weak signing configuration. Never a per-request failure."""


@dataclass(frozen=True)
class SigningConfig:
    secret: str | None
    api_key: str | None
    sign_max_age_ms: int = SIGN_MAX_AGE_MS
    request_max_age_ms: int = REQUEST_MAX_AGE_MS
    replay_protection: bool = False

    def check_secret(self) -> str:
        if not self.secret:
            raise ConfigurationError("API_SECRET is not configured")
        if len(self.secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(f"API_SECRET must be at least {MIN_SECRET_LENGTH} characters long")
        return self.secret

    def validate(self) -> "SigningConfig":
        self.check_secret()
        if not self.api_key:
            raise ConfigurationError("API_KEY is not configured")
        if self.sign_max_age_ms <= 0 or self.request_max_age_ms <= 0:
            raise ConfigurationError("freshness windows must be positive")
        return self


def _int_env(environ, name: str, default: int) -> int:
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer (ms), got {raw!r}") from None


def load_signing_config(environ=None) -> SigningConfig:
    env = os.environ if environ is None else environ
    return SigningConfig(
        secret=env.get("API_SECRET"),
        api_key=env.get("API_KEY"),
        sign_max_age_ms=_int_env(env, "SIGN_MAX_AGE_MS", SIGN_MAX_AGE_MS),
        request_max_age_ms=_int_env(env, "REQUEST_MAX_AGE_MS", REQUEST_MAX_AGE_MS),
        replay_protection=(env.get("REPLAY_PROTECTION") or "").strip().lower() in ("1", "true", "yes"),
    )

# licensing/config.py
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

DEFAULT_FOUNDERS_SALE_START = "2024-01-01T00:00:00Z"
DEFAULT_FOUNDERS_SALE_END = "2026-01-11T23:59:59Z"

DEFAULT_LEASE_TTL_SECONDS = 7 * 24 * 60 * 60
CHALLENGE_TTL_SECONDS = 10 * 60
DEFAULT_OFFLINE_ACTIVATION_TTL_SECONDS = 72 * 60 * 60
DEFAULT_OFFLINE_CODE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

# env var -> tier, merged into the static price table
PRICE_ENV_VARS = {
    "STRIPE_PRICE_ID_MAKER_ONETIME": "maker",
    "STRIPE_PRICE_MAKER_MONTHLY": "maker",
    "STRIPE_PRICE_MAKER_YEARLY": "maker",
    "STRIPE_PRICE_ID_PRO_ONETIME": "pro",
    "STRIPE_PRICE_PRO_MONTHLY": "pro",
    "STRIPE_PRICE_PRO_YEARLY": "pro",
}


def parse_iso_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class FoundersWindow:
    """Purchases made inside [start, end] (inclusive) are lifetime grants."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end is None:
            raise RuntimeError("Founders sale window end date cannot be null")
        if self.start is None:
            raise RuntimeError("Founders sale window start date cannot be null")
        if self.end < self.start:
            raise RuntimeError("Founders sale window ends before it starts")

    def contains(self, when: datetime | None) -> bool:
        if when is None:
            return False
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return self.start <= when <= self.end


@dataclass(frozen=True)
class Settings:
    jwt_private_key: str
    jwt_public_key: str
    founders_window: FoundersWindow
    jwt_issuer: str = "lightlane"
    lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS
    challenge_ttl_seconds: int = CHALLENGE_TTL_SECONDS
    offline_activation_ttl_seconds: int = DEFAULT_OFFLINE_ACTIVATION_TTL_SECONDS
    offline_code_max_age_seconds: int = DEFAULT_OFFLINE_CODE_MAX_AGE_SECONDS
    trial_days: int = 14
    extra_price_tiers: dict = field(default_factory=dict)
    stripe_webhook_secret: str | None = None
    stripe_secret_key: str | None = None
    admin_token: str | None = None
    customer_jwt_secret: str | None = None
    license_rate_limit: int = 10
    license_rate_window_seconds: int = 60


def _env_int(environ, name: str, default: int, allow_zero: bool = False) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise RuntimeError(f"{name} must be positive, got {value}")
    return value


def _founders_window(environ) -> FoundersWindow:
    start_raw = environ.get("FOUNDERS_SALE_START_ISO", DEFAULT_FOUNDERS_SALE_START)
    end_raw = environ.get("FOUNDERS_SALE_END_ISO", DEFAULT_FOUNDERS_SALE_END)
    # an explicitly blank end date would mean an open-ended lifetime grant
    if end_raw is None or end_raw.strip().lower() in ("", "null", "none"):
        raise RuntimeError("FOUNDERS_SALE_END_ISO cannot be null or empty")
    try:
        start = parse_iso_datetime(start_raw)
        end = parse_iso_datetime(end_raw)
    except ValueError:
        raise RuntimeError(f"Invalid founders sale window: {start_raw!r} .. {end_raw!r}")
    return FoundersWindow(start=start, end=end)


def load_settings(environ=None) -> Settings:
    """Read settings from the environment, failing fast on misconfiguration."""
    # imported here to keep config importable before crypto deps are needed
    from licensing.utils.crypto import load_signing_keys

    environ = os.environ if environ is None else environ

    private_key = environ.get("JWT_PRIVATE_KEY")
    if not private_key:
        raise RuntimeError("JWT_PRIVATE_KEY env var must be set")
    keys = load_signing_keys(private_key, environ.get("JWT_PUBLIC_KEY"))

    extra_price_tiers = {}
    for var, tier in PRICE_ENV_VARS.items():
        price_id = environ.get(var)
        if price_id:
            extra_price_tiers[price_id] = tier

    return Settings(
        jwt_private_key=keys.private_pem,
        jwt_public_key=keys.public_pem,
        founders_window=_founders_window(environ),
        jwt_issuer=environ.get("JWT_ISSUER", "lightlane"),
        lease_ttl_seconds=_env_int(environ, "LEASE_TOKEN_TTL_SECONDS", DEFAULT_LEASE_TTL_SECONDS),
        offline_activation_ttl_seconds=_env_int(
            environ, "OFFLINE_ACTIVATION_TTL_SECONDS", DEFAULT_OFFLINE_ACTIVATION_TTL_SECONDS
        ),
        offline_code_max_age_seconds=_env_int(
            environ, "OFFLINE_CODE_MAX_AGE_SECONDS", DEFAULT_OFFLINE_CODE_MAX_AGE_SECONDS, allow_zero=True
        ),
        trial_days=_env_int(environ, "TRIAL_DAYS", 14),
        extra_price_tiers=extra_price_tiers,
        stripe_webhook_secret=environ.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_secret_key=environ.get("STRIPE_SECRET_KEY") or None,
        admin_token=environ.get("ADMIN_TOKEN") or None,
        customer_jwt_secret=environ.get("CUSTOMER_JWT_SECRET") or None,
        license_rate_limit=_env_int(environ, "LICENSE_RATE_LIMIT", 10),
        license_rate_window_seconds=_env_int(environ, "LICENSE_RATE_WINDOW_SECONDS", 60),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()

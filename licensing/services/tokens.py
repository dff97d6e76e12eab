# licensing/services/tokens.py
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

import jwt

from licensing.config import Settings, get_settings
from licensing.errors import (
    ChallengeExpiredError,
    ChallengeInvalidError,
    LeaseExpiredError,
    LeaseInvalidError,
)
from licensing.utils.timeutil import from_unix, isoformat, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"

PURPOSE_LEASE = "lease"
PURPOSE_CHALLENGE = "offline_challenge"
PURPOSE_ACTIVATION = "activation"


@dataclass(frozen=True)
class MintedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime | None

    @property
    def expires_at_iso(self) -> str | None:
        return isoformat(self.expires_at)


class TokenService:
    """
    Mints and verifies RS256 tokens for three purposes sharing one key.

    The ``purpose`` claim is checked on every verify, so an activation token
    is never accepted as a lease or a challenge. Lifetime entitlements get no
    lease.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def _sign(self, claims: dict, ttl_seconds: int | None) -> MintedToken:
        now = int(utcnow().timestamp())
        jti = claims.get("jti") or str(uuid.uuid4())
        payload = {"iss": self.settings.jwt_issuer, "jti": jti, "iat": now, **claims}
        exp = None
        if ttl_seconds:
            exp = now + ttl_seconds
            payload["exp"] = exp
        token = jwt.encode(payload, self.settings.jwt_private_key, algorithm=ALGORITHM)
        return MintedToken(token=token, jti=jti, issued_at=from_unix(now), expires_at=from_unix(exp))

    def _decode(self, token: str, require_exp: bool = True) -> dict:
        required = ["iat", "jti", "purpose"] + (["exp"] if require_exp else [])
        return jwt.decode(
            token,
            self.settings.jwt_public_key,
            algorithms=[ALGORITHM],
            issuer=self.settings.jwt_issuer,
            options={"require": required},
        )

    # ---------------------------
    # leases

    def mint_lease(
        self,
        entitlement_id: int,
        customer_id: int | None,
        device_id: str,
        tier: str,
        is_lifetime: bool,
        ttl_seconds: int | None = None,
    ) -> MintedToken | None:
        if is_lifetime:
            return None
        return self._sign(
            {
                "sub": f"ent:{entitlement_id}:dev:{device_id}",
                "purpose": PURPOSE_LEASE,
                "entitlementId": entitlement_id,
                "customerId": customer_id,
                "deviceId": device_id,
                "tier": tier,
                "isLifetime": False,
            },
            ttl_seconds or self.settings.lease_ttl_seconds,
        )

    def verify_lease(self, token: str) -> dict:
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            raise LeaseExpiredError()
        except jwt.InvalidTokenError as exc:
            raise LeaseInvalidError(f"Invalid lease token: {exc}")
        if claims.get("purpose") != PURPOSE_LEASE:
            raise LeaseInvalidError(f"Invalid token purpose: expected 'lease', got {claims.get('purpose')!r}")
        return claims

    # ---------------------------
    # offline challenges

    def mint_challenge(self, entitlement_id: int, customer_id: int | None, device_id: str) -> MintedToken:
        nonce = str(uuid.uuid4())
        return self._sign(
            {
                "sub": f"challenge:{entitlement_id}:{device_id}",
                "jti": nonce,  # doubles as the single-use nonce
                "nonce": nonce,
                "purpose": PURPOSE_CHALLENGE,
                "entitlementId": entitlement_id,
                "customerId": customer_id,
                "deviceId": device_id,
            },
            self.settings.challenge_ttl_seconds,
        )

    def verify_challenge(self, token: str) -> dict:
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            raise ChallengeExpiredError()
        except jwt.InvalidTokenError as exc:
            raise ChallengeInvalidError(f"Invalid challenge: {exc}")
        if claims.get("purpose") != PURPOSE_CHALLENGE:
            raise ChallengeInvalidError(
                f"Invalid token purpose: expected 'offline_challenge', got {claims.get('purpose')!r}"
            )
        return claims

    # ---------------------------
    # activation

    def mint_activation(
        self,
        entitlement,
        device_id: str,
        ttl_seconds: int | None = None,
    ) -> MintedToken:
        claims = {
            "sub": f"ent:{entitlement.id}:dev:{device_id}",
            "purpose": PURPOSE_ACTIVATION,
            "entitlementId": entitlement.id,
            "customerId": entitlement.customer_id,
            "deviceId": device_id,
            "tier": entitlement.tier,
            "isLifetime": bool(entitlement.is_lifetime),
            "maxDevices": entitlement.max_devices,
        }
        if entitlement.source == "trial" and entitlement.expires_at is not None:
            claims["entitlementExpiresAt"] = isoformat(entitlement.expires_at)
        return self._sign(claims, ttl_seconds)

    def verify_activation(self, token: str) -> dict:
        try:
            claims = self._decode(token, require_exp=False)
        except jwt.InvalidTokenError as exc:
            raise LeaseInvalidError(f"Invalid activation token: {exc}")
        if claims.get("purpose") != PURPOSE_ACTIVATION:
            raise LeaseInvalidError(f"Invalid token purpose: expected 'activation', got {claims.get('purpose')!r}")
        return claims

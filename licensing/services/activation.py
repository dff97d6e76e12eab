# licensing/services/activation.py
import logging

from sqlalchemy.orm import Session

from licensing.config import Settings, get_settings
from licensing.errors import ChallengeInvalidError, ErrorCode, LicensingError
from licensing.models import Device, Entitlement
from licensing.repositories import SqlDeviceRepo, SqlEntitlementRepo, SqlReplayLedger
from licensing.services.entitlements import is_usable
from licensing.services.tokens import TokenService
from licensing.utils.timeutil import from_unix, isoformat, utcnow

logger = logging.getLogger(__name__)


def lease_payload(lease) -> dict:
    if lease is None:
        return {"leaseToken": None, "leaseExpiresAt": None, "leaseRequired": False}
    return {"leaseToken": lease.token, "leaseExpiresAt": lease.expires_at_iso, "leaseRequired": True}


class ActivationService:
    """Binds devices to usable entitlements and mints leases from current state."""

    def __init__(self, db: Session, settings: Settings | None = None, tokens: TokenService | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.tokens = tokens or TokenService(self.settings)
        self.entitlements = SqlEntitlementRepo(db)
        self.devices = SqlDeviceRepo(db)
        self.replay = SqlReplayLedger(db)

    # ---------------------------
    # lookups shared with the air-gapped flow

    def load_entitlement(self, customer_id: int, entitlement_id: int, for_update: bool = False) -> Entitlement:
        """Return the customer's usable entitlement or raise ENTITLEMENT_NOT_ACTIVE."""
        entitlement = self.entitlements.get(entitlement_id, for_update=for_update)
        if entitlement is None or entitlement.customer_id != customer_id:
            raise LicensingError(ErrorCode.ENTITLEMENT_NOT_ACTIVE, "Entitlement not found", 404)
        if not is_usable(entitlement):
            raise LicensingError(ErrorCode.ENTITLEMENT_NOT_ACTIVE, f"Entitlement is {entitlement.status}")
        return entitlement

    def load_owned_device(self, customer_id: int, device_id: str, entitlement_id: int | None = None) -> Device:
        device = self.devices.get_by_device_id(device_id)
        if device is None or device.customer_id != customer_id:
            raise LicensingError(ErrorCode.DEVICE_NOT_OWNED, "Device is not registered to this account")
        if entitlement_id is not None and device.entitlement_id != entitlement_id:
            raise LicensingError(ErrorCode.DEVICE_NOT_OWNED, "Device is not activated for this entitlement")
        return device

    def bind_device(
        self,
        customer_id: int,
        entitlement: Entitlement,
        device_id: str,
        name: str | None = None,
        platform: str | None = None,
        is_airgapped: bool = False,
    ) -> Device:
        """
        Bind ``device_id`` to ``entitlement``.

        The caller must have loaded the entitlement with ``for_update=True``
        so the device count below cannot race another activation.
        """
        device = self.devices.get_by_device_id(device_id)
        if device is not None and device.customer_id != customer_id:
            raise LicensingError(ErrorCode.DEVICE_NOT_OWNED, "Device is registered to another account")

        if device is not None and device.entitlement_id == entitlement.id:
            device.name = name or device.name
            device.platform = platform or device.platform
            device.is_airgapped = device.is_airgapped or is_airgapped
            device.last_seen_at = utcnow()
            return device

        if device is not None and device.entitlement_id is not None:
            raise LicensingError(
                ErrorCode.VALIDATION_ERROR,
                "Device is active on another entitlement; deactivate it first",
                409,
            )

        bound = self.devices.count_bound(entitlement.id)
        if bound >= entitlement.max_devices:
            raise LicensingError(
                ErrorCode.MAX_DEVICES_EXCEEDED,
                f"Entitlement allows {entitlement.max_devices} device(s); {bound} already active",
            )

        if device is None:
            device = self.devices.add(
                Device(
                    customer_id=customer_id,
                    device_id=device_id,
                    name=name,
                    platform=platform,
                    is_airgapped=is_airgapped,
                    entitlement_id=entitlement.id,
                    last_seen_at=utcnow(),
                )
            )
        else:
            device.entitlement_id = entitlement.id
            device.name = name or device.name
            device.platform = platform or device.platform
            device.is_airgapped = is_airgapped
            device.last_seen_at = utcnow()

        logger.info(
            "Device bound",
            extra={"device_id": device_id, "entitlement_id": entitlement.id, "customer_id": customer_id},
        )
        return device

    # ---------------------------
    # online flows

    def activate(
        self,
        customer_id: int,
        entitlement_id: int,
        device_id: str,
        device_name: str | None = None,
        platform: str | None = None,
    ) -> dict:
        try:
            entitlement = self.load_entitlement(customer_id, entitlement_id, for_update=True)
            self.bind_device(customer_id, entitlement, device_id, device_name, platform)
            activation = self.tokens.mint_activation(entitlement, device_id)
            lease = self.tokens.mint_lease(
                entitlement.id, customer_id, device_id, entitlement.tier, entitlement.is_lifetime
            )
            self.db.commit()
        except LicensingError:
            self.db.rollback()
            raise

        return {
            "activationToken": activation.token,
            "entitlementId": entitlement.id,
            "deviceId": device_id,
            "tier": entitlement.tier,
            "isLifetime": bool(entitlement.is_lifetime),
            "entitlementExpiresAt": isoformat(entitlement.expires_at),
            **lease_payload(lease),
        }

    def deactivate(self, customer_id: int, device_id: str) -> dict:
        device = self.load_owned_device(customer_id, device_id)
        previous = device.entitlement_id
        device.entitlement_id = None
        device.last_seen_at = utcnow()
        self.db.commit()
        logger.info(
            "Device unbound",
            extra={"device_id": device_id, "entitlement_id": previous, "customer_id": customer_id},
        )
        return {"deviceId": device_id, "entitlementId": previous, "deactivated": True}

    def refresh_lease(self, customer_id: int, entitlement_id: int, device_id: str) -> dict:
        device = self.load_owned_device(customer_id, device_id, entitlement_id)
        entitlement = self.load_entitlement(customer_id, entitlement_id)
        lease = self.tokens.mint_lease(entitlement.id, customer_id, device_id, entitlement.tier, entitlement.is_lifetime)
        device.last_seen_at = utcnow()
        self.db.commit()
        return {"entitlementId": entitlement.id, "deviceId": device_id, **lease_payload(lease)}

    def issue_challenge(self, customer_id: int, entitlement_id: int, device_id: str) -> dict:
        self.load_owned_device(customer_id, device_id, entitlement_id)
        entitlement = self.load_entitlement(customer_id, entitlement_id)
        if entitlement.is_lifetime:
            raise LicensingError(ErrorCode.LIFETIME_NOT_SUPPORTED, "Lifetime entitlements do not need a lease")
        challenge = self.tokens.mint_challenge(entitlement.id, customer_id, device_id)
        return {"challenge": challenge.token, "expiresAt": challenge.expires_at_iso}

    def redeem_challenge(self, customer_id: int, challenge_token: str) -> dict:
        """Exchange a challenge for a lease. Each challenge nonce is good for one lease."""
        claims = self.tokens.verify_challenge(challenge_token)
        if claims.get("customerId") is not None and claims["customerId"] != customer_id:
            raise ChallengeInvalidError("Challenge was issued to another account")

        entitlement_id = claims["entitlementId"]
        device_id = claims["deviceId"]
        try:
            if not self.replay.record(
                claims["jti"],
                "refresh",
                customer_id,
                entitlement_id,
                device_id,
                expires_at=from_unix(claims["exp"]),
            ):
                raise LicensingError(ErrorCode.REPLAY_REJECTED, "Challenge has already been used")
            device = self.load_owned_device(customer_id, device_id, entitlement_id)
            entitlement = self.load_entitlement(customer_id, entitlement_id)
            lease = self.tokens.mint_lease(
                entitlement.id, customer_id, device_id, entitlement.tier, entitlement.is_lifetime
            )
            device.last_seen_at = utcnow()
            self.db.commit()
        except LicensingError:
            self.db.rollback()
            raise

        return {"entitlementId": entitlement.id, "deviceId": device_id, **lease_payload(lease)}

    def verify_lease(self, token: str) -> dict:
        claims = self.tokens.verify_lease(token)
        return {
            "valid": True,
            "entitlementId": claims["entitlementId"],
            "customerId": claims.get("customerId"),
            "deviceId": claims["deviceId"],
            "tier": claims["tier"],
            "expiresAt": isoformat(from_unix(claims["exp"])),
        }

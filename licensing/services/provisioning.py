# licensing/services/provisioning.py
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from licensing.config import Settings, get_settings, parse_iso_datetime
from licensing.errors import ErrorCode, LicensingError
from licensing.models import DeviceIdentity
from licensing.repositories import SqlDeviceRepo, SqlReplayLedger
from licensing.services import offline_codes
from licensing.services.activation import ActivationService
from licensing.services.offline_codes import OfflineCodeResult
from licensing.services.tokens import TokenService
from licensing.utils.crypto import import_ed25519_public_key, public_key_hash, verify_ed25519_signature
from licensing.utils.timeutil import isoformat, utcnow

logger = logging.getLogger(__name__)

REPLAY_KIND = {
    offline_codes.LEASE_REFRESH_REQUEST: "refresh",
    offline_codes.DEACTIVATION_CODE: "deactivation",
}

# step reasons added on top of the codec's
INVALID_PUBLIC_KEY = "INVALID_PUBLIC_KEY"
UNKNOWN_DEVICE = "UNKNOWN_DEVICE"
INVALID_SIGNATURE = "INVALID_SIGNATURE"
CODE_EXPIRED = "CODE_EXPIRED"
REPLAYED = "REPLAYED"

MAX_CLOCK_SKEW = timedelta(minutes=5)


class AirGappedProvisioningService:
    """
    Code exchange for devices that never reach the server.

    Signed codes are verified with the key registered at setup, never with a
    key carried in the request, and each ``jti`` is accepted once.
    """

    def __init__(self, db: Session, settings: Settings | None = None, tokens: TokenService | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.tokens = tokens or TokenService(self.settings)
        self.devices = SqlDeviceRepo(db)
        self.replay = SqlReplayLedger(db)
        self.activation = ActivationService(db, self.settings, self.tokens)

    def parse_and_verify_offline_code(self, code, expected_type: str | None = None, now=None) -> OfflineCodeResult:
        """
        Parse any inbound offline code and, for signed codes, verify and consume it.

        Setup codes additionally have their public key checked. Signed codes
        are checked against the registered device key, rejected when older
        than the maximum code age, and their ``jti`` is recorded in the
        replay ledger. The ledger write joins the caller's transaction.
        """
        result = offline_codes.parse_offline_code(code, expected_type)
        if not result.ok:
            logger.info(
                "Offline code rejected",
                extra={"code_type": result.code_type, "reason": result.reason},
            )
            return result

        if result.code_type == offline_codes.DEVICE_SETUP:
            try:
                import_ed25519_public_key(result.data.public_key)
            except ValueError as exc:
                return OfflineCodeResult.failure(
                    result.code_type, INVALID_PUBLIC_KEY, str(exc), ErrorCode.INVALID_PUBLIC_KEY
                )
            return result

        return self._verify_signed(result, now or utcnow())

    def _verify_signed(self, result: OfflineCodeResult, now) -> OfflineCodeResult:
        data = result.data
        code_type = result.code_type

        try:
            issued_at = parse_iso_datetime(data.iat)
        except ValueError:
            return OfflineCodeResult.failure(code_type, offline_codes.INVALID_FIELDS, "Field iat is not an ISO-8601 timestamp")
        if issued_at - now > MAX_CLOCK_SKEW:
            return OfflineCodeResult.failure(code_type, offline_codes.INVALID_FIELDS, "Field iat is in the future")

        identity = self.devices.get_identity(data.device_id)
        if identity is None:
            return OfflineCodeResult.failure(code_type, UNKNOWN_DEVICE, "Device has not been set up")

        public_key = import_ed25519_public_key(identity.public_key)
        message = offline_codes.canonical_message(code_type, data.device_id, data.entitlement_id, data.jti, data.iat)
        if not verify_ed25519_signature(public_key, message, data.sig):
            logger.warning("Offline code signature mismatch", extra={"device_id": data.device_id, "code_type": code_type})
            return OfflineCodeResult.failure(
                code_type, INVALID_SIGNATURE, "Signature verification failed", ErrorCode.SIGNATURE_VERIFICATION_FAILED
            )

        max_age = self.settings.offline_code_max_age_seconds
        expires_at = None
        if max_age:
            if now - issued_at > timedelta(seconds=max_age):
                return OfflineCodeResult.failure(code_type, CODE_EXPIRED, "Code is too old; generate a new one")
            expires_at = max(issued_at, now) + timedelta(seconds=max_age)

        if not self.replay.record(
            data.jti,
            REPLAY_KIND[code_type],
            None,
            data.entitlement_id,
            data.device_id,
            expires_at=expires_at,
        ):
            return OfflineCodeResult.failure(
                code_type, REPLAYED, "Code has already been used", ErrorCode.REPLAY_REJECTED
            )
        return result

    # ---------------------------
    # flows

    def provision(self, customer_id: int, entitlement_id: int, setup_code: str) -> dict:
        result = self.parse_and_verify_offline_code(setup_code, offline_codes.DEVICE_SETUP)
        result.raise_for_error()
        setup = result.data

        try:
            identity = self.devices.get_identity(setup.device_id)
            if identity is None:
                self.devices.add_identity(
                    DeviceIdentity(
                        device_id=setup.device_id,
                        public_key=setup.public_key,
                        public_key_hash=public_key_hash(setup.public_key),
                    )
                )
            elif identity.public_key != setup.public_key:
                raise LicensingError(
                    ErrorCode.INVALID_PUBLIC_KEY, "Device is already registered with a different public key"
                )

            entitlement = self.activation.load_entitlement(customer_id, entitlement_id, for_update=True)
            self.activation.bind_device(
                customer_id,
                entitlement,
                setup.device_id,
                setup.device_name,
                setup.platform,
                is_airgapped=True,
            )

            activation = self.tokens.mint_activation(
                entitlement, setup.device_id, ttl_seconds=self.settings.offline_activation_ttl_seconds
            )
            if not self.replay.record(
                activation.jti,
                "activation",
                customer_id,
                entitlement.id,
                setup.device_id,
                expires_at=activation.expires_at,
            ):
                raise LicensingError(ErrorCode.INTERNAL_ERROR, "Activation token id collision; retry")
            lease = self.tokens.mint_lease(
                entitlement.id, customer_id, setup.device_id, entitlement.tier, entitlement.is_lifetime
            )
            self.db.commit()
        except LicensingError:
            self.db.rollback()
            raise

        entitlement_expires_at = isoformat(entitlement.expires_at) if entitlement.source == "trial" else None
        package = offline_codes.build_activation_package(
            activation.token,
            lease.token if lease else None,
            lease.expires_at_iso if lease else None,
            entitlement_expires_at,
        )
        logger.info(
            "Air-gapped device provisioned",
            extra={"device_id": setup.device_id, "entitlement_id": entitlement.id, "customer_id": customer_id},
        )
        return {
            "activationPackage": package,
            "deviceId": setup.device_id,
            "entitlementId": entitlement.id,
            "activationExpiresAt": activation.expires_at_iso,
            "leaseExpiresAt": lease.expires_at_iso if lease else None,
        }

    def refresh(self, customer_id: int, request_code: str) -> dict:
        try:
            result = self.parse_and_verify_offline_code(request_code, offline_codes.LEASE_REFRESH_REQUEST)
            result.raise_for_error()
            request = result.data

            device = self.activation.load_owned_device(customer_id, request.device_id, request.entitlement_id)
            entitlement = self.activation.entitlements.get(request.entitlement_id)
            if entitlement is not None and entitlement.customer_id == customer_id and entitlement.is_lifetime:
                raise LicensingError(
                    ErrorCode.LIFETIME_NOT_SUPPORTED, "Lifetime entitlements do not need a lease refresh"
                )
            entitlement = self.activation.load_entitlement(customer_id, request.entitlement_id)

            lease = self.tokens.mint_lease(
                entitlement.id, customer_id, request.device_id, entitlement.tier, entitlement.is_lifetime
            )
            device.last_seen_at = utcnow()
            self.db.commit()
        except LicensingError:
            self.db.rollback()
            raise

        entitlement_expires_at = isoformat(entitlement.expires_at) if entitlement.source == "trial" else None
        logger.info(
            "Air-gapped lease refreshed",
            extra={"device_id": request.device_id, "entitlement_id": entitlement.id, "jti": request.jti},
        )
        return {
            "refreshResponse": offline_codes.build_refresh_response(
                lease.token, lease.expires_at_iso, entitlement_expires_at
            ),
            "leaseExpiresAt": lease.expires_at_iso,
            "entitlementExpiresAt": entitlement_expires_at,
        }

    def deactivate(self, customer_id: int, deactivation_code: str) -> dict:
        try:
            result = self.parse_and_verify_offline_code(deactivation_code, offline_codes.DEACTIVATION_CODE)
            result.raise_for_error()
            request = result.data

            device = self.activation.load_owned_device(customer_id, request.device_id, request.entitlement_id)
            device.entitlement_id = None
            device.last_seen_at = utcnow()
            self.db.commit()
        except LicensingError:
            self.db.rollback()
            raise

        logger.info(
            "Air-gapped device deactivated",
            extra={"device_id": request.device_id, "entitlement_id": request.entitlement_id, "jti": request.jti},
        )
        return {"deviceId": request.device_id, "entitlementId": request.entitlement_id, "deactivated": True}

# licensing/errors.py
from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_INVALID = "CHALLENGE_INVALID"
    LEASE_EXPIRED = "LEASE_EXPIRED"
    LEASE_INVALID = "LEASE_INVALID"
    REPLAY_REJECTED = "REPLAY_REJECTED"
    INVALID_SETUP_CODE = "INVALID_SETUP_CODE"
    INVALID_PUBLIC_KEY = "INVALID_PUBLIC_KEY"
    INVALID_REQUEST_CODE = "INVALID_REQUEST_CODE"
    SIGNATURE_VERIFICATION_FAILED = "SIGNATURE_VERIFICATION_FAILED"
    ENTITLEMENT_NOT_ACTIVE = "ENTITLEMENT_NOT_ACTIVE"
    DEVICE_NOT_OWNED = "DEVICE_NOT_OWNED"
    MAX_DEVICES_EXCEEDED = "MAX_DEVICES_EXCEEDED"
    LIFETIME_NOT_SUPPORTED = "LIFETIME_NOT_SUPPORTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.CHALLENGE_EXPIRED: 401,
    ErrorCode.CHALLENGE_INVALID: 400,
    ErrorCode.LEASE_EXPIRED: 401,
    ErrorCode.LEASE_INVALID: 401,
    ErrorCode.REPLAY_REJECTED: 409,
    ErrorCode.INVALID_SETUP_CODE: 400,
    ErrorCode.INVALID_PUBLIC_KEY: 400,
    ErrorCode.INVALID_REQUEST_CODE: 400,
    ErrorCode.SIGNATURE_VERIFICATION_FAILED: 401,
    ErrorCode.ENTITLEMENT_NOT_ACTIVE: 403,
    ErrorCode.DEVICE_NOT_OWNED: 403,
    ErrorCode.MAX_DEVICES_EXCEEDED: 409,
    ErrorCode.LIFETIME_NOT_SUPPORTED: 400,
    ErrorCode.INTERNAL_ERROR: 500,
}


class LicensingError(Exception):
    """Failure with a stable error code, rendered as {"error": code, "message": ...}."""

    def __init__(self, code: ErrorCode, message: str, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code or HTTP_STATUS.get(code, 400)

    def to_dict(self) -> dict:
        return {"error": self.code.value, "message": self.message}


class TokenError(LicensingError):
    pass


class LeaseExpiredError(TokenError):
    def __init__(self, message: str = "Lease token has expired"):
        super().__init__(ErrorCode.LEASE_EXPIRED, message)


class LeaseInvalidError(TokenError):
    def __init__(self, message: str = "Invalid lease token"):
        super().__init__(ErrorCode.LEASE_INVALID, message)


class ChallengeExpiredError(TokenError):
    def __init__(self, message: str = "Challenge has expired"):
        super().__init__(ErrorCode.CHALLENGE_EXPIRED, message)


class ChallengeInvalidError(TokenError):
    def __init__(self, message: str = "Invalid challenge"):
        super().__init__(ErrorCode.CHALLENGE_INVALID, message)

# licensing/services/offline_codes.py
# Parsing stops at the first failing step:
#   format -> size -> JSON -> object -> version -> type -> fields
# Signatures are checked in licensing.services.provisioning.
import binascii
import json
import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from licensing.errors import ErrorCode, LicensingError
from licensing.utils.crypto import b64url_decode, encode_json_code

CODE_VERSION = 1
PROTOCOL_TAG = "LL"

DEVICE_SETUP = "device_setup"
LEASE_REFRESH_REQUEST = "lease_refresh_request"
DEACTIVATION_CODE = "deactivation_code"
ACTIVATION_PACKAGE = "activation_package"
LEASE_REFRESH_RESPONSE = "lease_refresh_response"

CODE_TYPES = (DEVICE_SETUP, LEASE_REFRESH_REQUEST, DEACTIVATION_CODE)

MIN_CODE_LENGTH = 20
MAX_CODE_LENGTH = 50000
MAX_CODE_SIZE = {
    DEVICE_SETUP: 4096,
    LEASE_REFRESH_REQUEST: 2048,
    DEACTIVATION_CODE: 2048,
}

BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# step reasons
INVALID_BASE64URL = "INVALID_BASE64URL"
CODE_TOO_LARGE = "CODE_TOO_LARGE"
INVALID_JSON = "INVALID_JSON"
INVALID_STRUCTURE = "INVALID_STRUCTURE"
INVALID_VERSION = "INVALID_VERSION"
INVALID_TYPE = "INVALID_TYPE"
INVALID_FIELDS = "INVALID_FIELDS"


class DeviceSetupCode(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True)

    device_id: str = Field(alias="deviceId", min_length=3, max_length=256)
    device_name: str | None = Field(default=None, alias="deviceName", max_length=256)
    platform: str | None = Field(default=None, max_length=64)
    public_key: str = Field(alias="publicKey", min_length=32, max_length=1024)
    created_at: str = Field(alias="createdAt", max_length=64)


class SignedRequestCode(BaseModel):
    """Body shared by lease_refresh_request and deactivation_code."""

    model_config = ConfigDict(strict=True, frozen=True)

    device_id: str = Field(alias="deviceId", min_length=3, max_length=256)
    entitlement_id: int = Field(alias="entitlementId")
    jti: str = Field(min_length=8, max_length=128)
    iat: str = Field(max_length=64)
    sig: str = Field(min_length=32, max_length=512)


SCHEMAS = {
    DEVICE_SETUP: DeviceSetupCode,
    LEASE_REFRESH_REQUEST: SignedRequestCode,
    DEACTIVATION_CODE: SignedRequestCode,
}


def error_code_for(code_type: str | None) -> ErrorCode:
    return ErrorCode.INVALID_SETUP_CODE if code_type == DEVICE_SETUP else ErrorCode.INVALID_REQUEST_CODE


@dataclass(frozen=True)
class OfflineCodeResult:
    ok: bool
    code_type: str | None = None
    data: DeviceSetupCode | SignedRequestCode | None = None
    error_code: ErrorCode | None = None
    reason: str | None = None
    message: str | None = None

    @classmethod
    def success(cls, code_type: str, data) -> "OfflineCodeResult":
        return cls(ok=True, code_type=code_type, data=data)

    @classmethod
    def failure(cls, code_type: str | None, reason: str, message: str, error_code: ErrorCode | None = None):
        return cls(
            ok=False,
            code_type=code_type,
            error_code=error_code or error_code_for(code_type),
            reason=reason,
            message=message,
        )

    def raise_for_error(self) -> None:
        if not self.ok:
            raise LicensingError(self.error_code, self.message)


def _check_format(code) -> str | None:
    if not isinstance(code, str):
        return "Code must be a string"
    if not code:
        return "Code is empty"
    if len(code) < MIN_CODE_LENGTH:
        return "Code is too short"
    if len(code) > MAX_CODE_LENGTH:
        return "Code is too large"
    if not BASE64URL_RE.match(code):
        return "Code contains invalid characters (not base64url)"
    return None


def _describe_field_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ())) or "code"
    return f"Invalid field {loc}: {first.get('msg', 'invalid value')}"


def parse_offline_code(code, expected_type: str | None = None) -> OfflineCodeResult:
    """
    Run the validation pipeline over ``code``.

    With ``expected_type`` the code must be of that type. Without it any of
    the three inbound types is accepted and the size limit is applied once
    the type is known.
    """
    problem = _check_format(code)
    if problem:
        return OfflineCodeResult.failure(expected_type, INVALID_BASE64URL, problem)

    limit = MAX_CODE_SIZE[expected_type] if expected_type else max(MAX_CODE_SIZE.values())
    if len(code) > limit:
        return OfflineCodeResult.failure(expected_type, CODE_TOO_LARGE, f"Code too large (max {limit} characters)")

    try:
        data = json.loads(b64url_decode(code).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError, RecursionError):
        return OfflineCodeResult.failure(expected_type, INVALID_JSON, "Invalid code format (not valid JSON)")

    if not isinstance(data, dict):
        return OfflineCodeResult.failure(expected_type, INVALID_STRUCTURE, "Invalid code format (expected object)")

    version = data.get("v")
    # bool is an int subclass, and JSON true must not pass as version 1
    if isinstance(version, bool) or version != CODE_VERSION:
        return OfflineCodeResult.failure(expected_type, INVALID_VERSION, f"Unsupported code version: {version!r}")

    code_type = data.get("type")
    if expected_type is not None and code_type != expected_type:
        return OfflineCodeResult.failure(
            expected_type, INVALID_TYPE, f"Invalid code type: expected {expected_type}, got {code_type!r}"
        )
    if code_type not in CODE_TYPES:
        return OfflineCodeResult.failure(None, INVALID_TYPE, f"Unknown code type: {code_type!r}")

    if len(code) > MAX_CODE_SIZE[code_type]:
        return OfflineCodeResult.failure(
            code_type, CODE_TOO_LARGE, f"Code too large (max {MAX_CODE_SIZE[code_type]} characters)"
        )

    try:
        parsed = SCHEMAS[code_type].model_validate(data)
    except ValidationError as exc:
        return OfflineCodeResult.failure(code_type, INVALID_FIELDS, _describe_field_error(exc))

    return OfflineCodeResult.success(code_type, parsed)


def parse_device_setup_code(code) -> OfflineCodeResult:
    return parse_offline_code(code, DEVICE_SETUP)


def parse_lease_refresh_request(code) -> OfflineCodeResult:
    return parse_offline_code(code, LEASE_REFRESH_REQUEST)


def parse_deactivation_code(code) -> OfflineCodeResult:
    return parse_offline_code(code, DEACTIVATION_CODE)


def canonical_message(code_type: str, device_id: str, entitlement_id: int, jti: str, iat: str) -> bytes:
    """The exact bytes a device signs. Field order is fixed so signatures cannot be reshuffled."""
    return f"{PROTOCOL_TAG}|v{CODE_VERSION}|{code_type}\n{device_id}\n{entitlement_id}\n{jti}\n{iat}".encode("utf-8")


# ---------------------------
# outbound codes

def build_activation_package(
    activation_token: str,
    lease_token: str | None = None,
    lease_expires_at: str | None = None,
    entitlement_expires_at: str | None = None,
) -> str:
    package = {"v": CODE_VERSION, "type": ACTIVATION_PACKAGE, "activationToken": activation_token}
    if lease_token:
        package["leaseToken"] = lease_token
        package["leaseExpiresAt"] = lease_expires_at
    if entitlement_expires_at:
        package["entitlementExpiresAt"] = entitlement_expires_at
    return encode_json_code(package)


def build_refresh_response(
    lease_token: str,
    lease_expires_at: str,
    entitlement_expires_at: str | None = None,
) -> str:
    response = {
        "v": CODE_VERSION,
        "type": LEASE_REFRESH_RESPONSE,
        "leaseToken": lease_token,
        "leaseExpiresAt": lease_expires_at,
    }
    if entitlement_expires_at:
        response["entitlementExpiresAt"] = entitlement_expires_at
    return encode_json_code(response)


# ---------------------------
# device side (CLI and tests)

def build_device_setup_code(
    device_id: str,
    public_key_b64: str,
    created_at: str,
    device_name: str | None = None,
    platform: str | None = None,
) -> str:
    body = {
        "v": CODE_VERSION,
        "type": DEVICE_SETUP,
        "deviceId": device_id,
        "publicKey": public_key_b64,
        "createdAt": created_at,
    }
    if device_name:
        body["deviceName"] = device_name
    if platform:
        body["platform"] = platform
    return encode_json_code(body)


def build_signed_request_code(code_type: str, device_id: str, entitlement_id: int, jti: str, iat: str, sign) -> str:
    """``sign`` takes the canonical message bytes and returns a base64url signature."""
    sig = sign(canonical_message(code_type, device_id, entitlement_id, jti, iat))
    return encode_json_code(
        {
            "v": CODE_VERSION,
            "type": code_type,
            "deviceId": device_id,
            "entitlementId": entitlement_id,
            "jti": jti,
            "iat": iat,
            "sig": sig,
        }
    )

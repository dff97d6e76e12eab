# licensing/utils/crypto.py
import base64
import binascii
import hashlib
import json
import secrets
import time
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


def generate_license_key(product_name: str | None, customer_id: int | None) -> str:
    # PRO-0042-LZ3K9Q1A-9F2C4E... : product, customer, base36 millis, random hex
    millis = int(time.time() * 1000)
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    product_code = (product_name or "PRD")[:3].upper()
    customer_code = str(customer_id if customer_id is not None else "0000")[:4]
    return f"{product_code}-{customer_code}-{stamp}-{secrets.token_hex(8).upper()}"


# ---------------------------
# base64url helpers (RFC 4648 url-safe alphabet, no padding)

def b64url_encode(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def encode_json_code(obj: dict) -> str:
    return b64url_encode(json.dumps(obj, separators=(",", ":")))


def decode_json_code(code: str):
    return json.loads(b64url_decode(code).decode("utf-8"))


# ---------------------------
# RS256 signing keys for server-issued tokens

@dataclass(frozen=True)
class SigningKeys:
    private_pem: str
    public_pem: str


def _normalize_pem(value: str) -> str:
    # keys pasted into env files often carry literal "\n"
    return value.replace("\\n", "\n").strip() + "\n"


def load_signing_keys(private_pem: str, public_pem: str | None = None) -> SigningKeys:
    try:
        private_key = serialization.load_pem_private_key(_normalize_pem(private_pem).encode(), password=None)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(f"JWT_PRIVATE_KEY is not a valid PEM private key: {exc}")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise RuntimeError("JWT_PRIVATE_KEY must be an RSA key (RS256)")

    derived = private_key.public_key()
    if public_pem:
        try:
            public_key = serialization.load_pem_public_key(_normalize_pem(public_pem).encode())
        except (ValueError, TypeError) as exc:
            raise RuntimeError(f"JWT_PUBLIC_KEY is not a valid PEM public key: {exc}")
        if not isinstance(public_key, rsa.RSAPublicKey) or public_key.public_numbers() != derived.public_numbers():
            raise RuntimeError("JWT_PUBLIC_KEY does not match JWT_PRIVATE_KEY")

    private_out = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_out = derived.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return SigningKeys(private_pem=private_out, public_pem=public_out)


def generate_rsa_keypair(key_size: int = 2048) -> SigningKeys:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return load_signing_keys(pem)


# ---------------------------
# Ed25519 device keys (air-gapped codes)

def import_ed25519_public_key(public_key_b64: str) -> Ed25519PublicKey:
    """Load a base64 SPKI DER public key, raising ValueError unless it is Ed25519."""
    try:
        der = base64.b64decode(public_key_b64, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Public key is not valid base64")
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise ValueError("Public key is not a valid SPKI DER key")
    if not isinstance(key, Ed25519PublicKey):
        raise ValueError(f"Invalid key type: expected ed25519, got {type(key).__name__}")
    return key


def public_key_hash(public_key_b64: str) -> str:
    return hashlib.sha256(base64.b64decode(public_key_b64)).hexdigest()


def verify_ed25519_signature(public_key: Ed25519PublicKey, message: bytes, signature_b64url: str) -> bool:
    try:
        signature = b64url_decode(signature_b64url)
    except (binascii.Error, ValueError):
        return False
    # the decoder ignores trailing bits, so only the canonical spelling is accepted
    if len(signature) != 64 or b64url_encode(signature) != signature_b64url:
        return False
    try:
        public_key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


def generate_device_keypair() -> tuple[Ed25519PrivateKey, str]:
    private_key = Ed25519PrivateKey.generate()
    return private_key, ed25519_public_key_b64(private_key)


def sign_ed25519(private_key: Ed25519PrivateKey, message: bytes) -> str:
    return b64url_encode(private_key.sign(message))


def ed25519_private_pem(private_key: Ed25519PrivateKey) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_ed25519_private_key(pem: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(pem.encode(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Not an Ed25519 private key")
    return key


def ed25519_public_key_b64(private_key: Ed25519PrivateKey) -> str:
    der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")

# licensing/cli.py
# Local CLI for operators (uses DB directly) and device-side helpers for air-gapped testing
import argparse
import uuid
from pathlib import Path

from licensing.errors import LicensingError
from licensing.services import offline_codes
from licensing.utils.crypto import (
    ed25519_private_pem,
    ed25519_public_key_b64,
    generate_device_keypair,
    generate_rsa_keypair,
    load_ed25519_private_key,
    sign_ed25519,
)
from licensing.utils.timeutil import isoformat, utcnow

REQUEST_TYPES = {
    "refresh": offline_codes.LEASE_REFRESH_REQUEST,
    "deactivate": offline_codes.DEACTIVATION_CODE,
}


def _entitlement_service():
    # the database module needs DATABASE_URL at import; device helpers must work without it
    from licensing.database import SessionLocal
    from licensing.services.entitlements import EntitlementService

    db = SessionLocal()
    return db, EntitlementService(db)


def grant_trial(customer_id: int, tier: str, days: int | None):
    db, service = _entitlement_service()
    try:
        entitlement = service.grant_trial(customer_id, tier, days)
        print("Trial granted:", entitlement.id)
        print("Expires at:", isoformat(entitlement.expires_at))
    finally:
        db.close()


def retire(entitlement_id: int, reason: str):
    db, service = _entitlement_service()
    try:
        entitlement = service.retire_entitlement(entitlement_id, reason)
        print("Entitlement retired:", entitlement.id)
    finally:
        db.close()


def repair_founders():
    db, service = _entitlement_service()
    try:
        repaired = service.repair_founders_entitlements()
        print("Repaired entitlements:", len(repaired))
        for entitlement_id in repaired:
            print(" ", entitlement_id)
    finally:
        db.close()


def prune_ledger():
    db, service = _entitlement_service()
    try:
        print("Removed expired code uses:", service.prune_replay_ledger())
    finally:
        db.close()


def generate_keys(out_dir: str | None):
    keys = generate_rsa_keypair()
    if out_dir:
        directory = Path(out_dir)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "jwt_private.pem").write_text(keys.private_pem)
        (directory / "jwt_public.pem").write_text(keys.public_pem)
        print("Keys written to", directory)
    else:
        print(keys.private_pem)
        print(keys.public_pem)


def device_setup_code(device_id: str, key_file: str, name: str | None, platform: str | None) -> str:
    path = Path(key_file)
    if path.exists():
        private_key = load_ed25519_private_key(path.read_text())
        public_key = ed25519_public_key_b64(private_key)
    else:
        private_key, public_key = generate_device_keypair()
        path.write_text(ed25519_private_pem(private_key))
    code = offline_codes.build_device_setup_code(device_id, public_key, isoformat(utcnow()), name, platform)
    print(code)
    return code


def request_code(kind: str, device_id: str, entitlement_id: int, key_file: str) -> str:
    private_key = load_ed25519_private_key(Path(key_file).read_text())
    code = offline_codes.build_signed_request_code(
        REQUEST_TYPES[kind],
        device_id,
        entitlement_id,
        str(uuid.uuid4()),
        isoformat(utcnow()),
        lambda message: sign_ed25519(private_key, message),
    )
    print(code)
    return code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="licensing-cli")
    sub = parser.add_subparsers(dest="action", required=True)

    p = sub.add_parser("grant-trial", help="Grant a time-boxed trial entitlement")
    p.add_argument("--customer-id", type=int, required=True)
    p.add_argument("--tier", default="pro")
    p.add_argument("--days", type=int, default=None, help="Defaults to TRIAL_DAYS")

    p = sub.add_parser("retire", help="Soft-retire an entitlement and release its devices")
    p.add_argument("--entitlement-id", type=int, required=True)
    p.add_argument("--reason", default="admin")

    sub.add_parser("repair-founders", help="Fix legacy entitlements stored with tier 'founders'")
    sub.add_parser("prune-ledger", help="Delete expired offline code uses")

    p = sub.add_parser("generate-keys", help="Generate an RS256 key pair for token signing")
    p.add_argument("--out", help="Directory to write jwt_private.pem / jwt_public.pem")

    p = sub.add_parser("device-setup-code", help="Create a device identity and print its setup code")
    p.add_argument("--device-id", required=True)
    p.add_argument("--key-file", required=True, help="Ed25519 private key PEM; created if missing")
    p.add_argument("--name")
    p.add_argument("--platform")

    p = sub.add_parser("request-code", help="Print a signed lease refresh or deactivation code")
    p.add_argument("kind", choices=sorted(REQUEST_TYPES))
    p.add_argument("--device-id", required=True)
    p.add_argument("--entitlement-id", type=int, required=True)
    p.add_argument("--key-file", required=True)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        run(args)
    except LicensingError as exc:
        print(f"{exc.code.value}: {exc.message}")
        return 1
    return 0


def run(args):
    if args.action == "grant-trial":
        grant_trial(args.customer_id, args.tier, args.days)
    elif args.action == "retire":
        retire(args.entitlement_id, args.reason)
    elif args.action == "repair-founders":
        repair_founders()
    elif args.action == "prune-ledger":
        prune_ledger()
    elif args.action == "generate-keys":
        generate_keys(args.out)
    elif args.action == "device-setup-code":
        device_setup_code(args.device_id, args.key_file, args.name, args.platform)
    else:
        request_code(args.kind, args.device_id, args.entitlement_id, args.key_file)


if __name__ == "__main__":
    raise SystemExit(main())

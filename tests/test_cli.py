"""Operator commands and device-side code helpers of licensing-cli."""

import pytest

from licensing import cli
from licensing.services import offline_codes
from licensing.services.entitlements import EntitlementService
from licensing.utils.crypto import decode_json_code, load_signing_keys


@pytest.fixture
def patched_service(monkeypatch, db_session, settings):
    monkeypatch.setattr(cli, "_entitlement_service", lambda: (db_session, EntitlementService(db_session, settings)))


class TestDeviceHelpers:
    def test_setup_code_creates_key_file(self, tmp_path, capsys):
        key_file = tmp_path / "device.pem"

        assert cli.main(["device-setup-code", "--device-id", "device-cli-1", "--key-file", str(key_file)]) == 0

        code = capsys.readouterr().out.strip()
        assert key_file.exists()
        result = offline_codes.parse_device_setup_code(code)
        assert result.ok
        assert result.data.device_id == "device-cli-1"

    def test_setup_code_reuses_existing_key(self, tmp_path):
        key_file = tmp_path / "device.pem"
        first = cli.device_setup_code("device-cli-1", str(key_file), None, None)
        second = cli.device_setup_code("device-cli-1", str(key_file), "Bench", "linux")

        assert decode_json_code(first)["publicKey"] == decode_json_code(second)["publicKey"]
        assert decode_json_code(second)["platform"] == "linux"

    @pytest.mark.parametrize("kind,code_type", [("refresh", "lease_refresh_request"), ("deactivate", "deactivation_code")])
    def test_request_code(self, tmp_path, kind, code_type):
        key_file = tmp_path / "device.pem"
        cli.device_setup_code("device-cli-1", str(key_file), None, None)

        code = cli.request_code(kind, "device-cli-1", 7, str(key_file))

        result = offline_codes.parse_offline_code(code)
        assert result.code_type == code_type
        assert result.data.entitlement_id == 7

    def test_generate_keys(self, tmp_path):
        assert cli.main(["generate-keys", "--out", str(tmp_path)]) == 0

        keys = load_signing_keys((tmp_path / "jwt_private.pem").read_text())
        assert keys.public_pem == (tmp_path / "jwt_public.pem").read_text()


class TestOperatorCommands:
    def test_grant_trial(self, patched_service, customer, capsys):
        assert cli.main(["grant-trial", "--customer-id", str(customer.id), "--days", "3"]) == 0
        assert "Trial granted" in capsys.readouterr().out

    def test_error_exit_code(self, patched_service, capsys):
        assert cli.main(["retire", "--entitlement-id", "9999"]) == 1
        assert capsys.readouterr().out.startswith("ENTITLEMENT_NOT_ACTIVE:")

    def test_repair_and_prune(self, patched_service, make_entitlement, customer, capsys):
        make_entitlement(customer, tier="founders")

        assert cli.main(["repair-founders"]) == 0
        assert cli.main(["prune-ledger"]) == 0

        out = capsys.readouterr().out
        assert "Repaired entitlements: 1" in out
        assert "Removed expired code uses: 0" in out

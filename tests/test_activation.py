"""
Tests for online activation and the lease lifecycle.

Tests cover:
- Device binding and the max_devices limit
- Lease refresh and verification
- The single-use challenge handshake
"""

from datetime import timedelta

import pytest

from licensing.errors import ErrorCode, LicensingError
from licensing.models import Device
from licensing.services.activation import ActivationService
from licensing.services.tokens import TokenService
from licensing.utils.timeutil import utcnow


@pytest.fixture
def service(db_session, settings, tokens):
    return ActivationService(db_session, settings, tokens)


class TestActivate:
    def test_returns_tokens(self, service, tokens, customer, entitlement):
        result = service.activate(customer.id, entitlement.id, "device-online-1", "Laptop", "macos")

        assert result["entitlementId"] == entitlement.id
        assert result["tier"] == "pro"
        assert result["isLifetime"] is False
        assert result["leaseRequired"] is True
        assert tokens.verify_activation(result["activationToken"])["deviceId"] == "device-online-1"
        assert tokens.verify_lease(result["leaseToken"])["entitlementId"] == entitlement.id

    def test_lifetime_gets_no_lease(self, service, customer, lifetime_entitlement):
        result = service.activate(customer.id, lifetime_entitlement.id, "device-online-1")

        assert result["isLifetime"] is True
        assert result["leaseToken"] is None
        assert result["leaseRequired"] is False

    def test_activation_is_idempotent_per_device(self, service, db_session, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        service.activate(customer.id, entitlement.id, "device-online-1", "Renamed")

        device = db_session.query(Device).filter_by(device_id="device-online-1").one()
        assert device.name == "Renamed"

    def test_max_devices(self, service, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")

        with pytest.raises(LicensingError) as exc_info:
            service.activate(customer.id, entitlement.id, "device-online-2")
        assert exc_info.value.code == ErrorCode.MAX_DEVICES_EXCEEDED
        assert exc_info.value.status_code == 409

    def test_enterprise_allows_more_devices(self, service, customer, make_entitlement):
        enterprise = make_entitlement(customer, tier="enterprise", max_devices=10)

        for n in range(10):
            service.activate(customer.id, enterprise.id, f"device-fleet-{n}")

        with pytest.raises(LicensingError):
            service.activate(customer.id, enterprise.id, "device-fleet-10")

    def test_device_of_another_customer(self, service, make_customer, make_entitlement, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        other = make_customer()
        other_entitlement = make_entitlement(other)

        with pytest.raises(LicensingError) as exc_info:
            service.activate(other.id, other_entitlement.id, "device-online-1")
        assert exc_info.value.code == ErrorCode.DEVICE_NOT_OWNED

    def test_device_bound_elsewhere_must_deactivate_first(self, service, customer, entitlement, make_entitlement):
        second = make_entitlement(customer)
        service.activate(customer.id, entitlement.id, "device-online-1")

        with pytest.raises(LicensingError) as exc_info:
            service.activate(customer.id, second.id, "device-online-1")
        assert exc_info.value.status_code == 409

        service.deactivate(customer.id, "device-online-1")
        assert service.activate(customer.id, second.id, "device-online-1")["entitlementId"] == second.id

    def test_expired_trial(self, service, customer, make_entitlement):
        trial = make_entitlement(customer, source="trial", expires_at=utcnow() - timedelta(minutes=1))

        with pytest.raises(LicensingError) as exc_info:
            service.activate(customer.id, trial.id, "device-online-1")
        assert exc_info.value.code == ErrorCode.ENTITLEMENT_NOT_ACTIVE

    def test_missing_entitlement(self, service, customer):
        with pytest.raises(LicensingError) as exc_info:
            service.activate(customer.id, 9999, "device-online-1")
        assert exc_info.value.status_code == 404


class TestDeactivate:
    def test_unbinds(self, service, db_session, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")

        result = service.deactivate(customer.id, "device-online-1")

        assert result["entitlementId"] == entitlement.id
        assert db_session.query(Device).filter_by(device_id="device-online-1").one().entitlement_id is None

    def test_unknown_device(self, service, customer):
        with pytest.raises(LicensingError) as exc_info:
            service.deactivate(customer.id, "device-never-seen")
        assert exc_info.value.code == ErrorCode.DEVICE_NOT_OWNED


class TestLease:
    def test_refresh(self, service, tokens, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")

        result = service.refresh_lease(customer.id, entitlement.id, "device-online-1")

        assert tokens.verify_lease(result["leaseToken"])["deviceId"] == "device-online-1"

    def test_refresh_after_cancel_is_refused(self, service, db_session, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        entitlement.status = "canceled"
        db_session.commit()

        with pytest.raises(LicensingError) as exc_info:
            service.refresh_lease(customer.id, entitlement.id, "device-online-1")
        assert exc_info.value.code == ErrorCode.ENTITLEMENT_NOT_ACTIVE

    def test_refresh_for_unbound_device(self, service, customer, entitlement):
        with pytest.raises(LicensingError) as exc_info:
            service.refresh_lease(customer.id, entitlement.id, "device-online-1")
        assert exc_info.value.code == ErrorCode.DEVICE_NOT_OWNED

    def test_verify(self, service, customer, entitlement):
        lease = service.activate(customer.id, entitlement.id, "device-online-1")["leaseToken"]

        result = service.verify_lease(lease)

        assert result["valid"] is True
        assert result["customerId"] == customer.id
        assert result["expiresAt"].endswith("Z")

    def test_verify_expired(self, service, tokens, customer, entitlement):
        expired = tokens.mint_lease(entitlement.id, customer.id, "device-online-1", "pro", False, ttl_seconds=-1)

        with pytest.raises(LicensingError) as exc_info:
            service.verify_lease(expired.token)
        assert exc_info.value.code == ErrorCode.LEASE_EXPIRED


class TestChallenge:
    def test_handshake(self, service, tokens, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")

        challenge = service.issue_challenge(customer.id, entitlement.id, "device-online-1")
        result = service.redeem_challenge(customer.id, challenge["challenge"])

        assert challenge["expiresAt"].endswith("Z")
        assert tokens.verify_lease(result["leaseToken"])["entitlementId"] == entitlement.id

    def test_challenge_is_single_use(self, service, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        challenge = service.issue_challenge(customer.id, entitlement.id, "device-online-1")["challenge"]
        service.redeem_challenge(customer.id, challenge)

        with pytest.raises(LicensingError) as exc_info:
            service.redeem_challenge(customer.id, challenge)
        assert exc_info.value.code == ErrorCode.REPLAY_REJECTED

    def test_challenge_for_another_account(self, service, make_customer, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        challenge = service.issue_challenge(customer.id, entitlement.id, "device-online-1")["challenge"]

        with pytest.raises(LicensingError) as exc_info:
            service.redeem_challenge(make_customer().id, challenge)
        assert exc_info.value.code == ErrorCode.CHALLENGE_INVALID

    def test_expired_challenge(self, db_session, settings_with, customer, entitlement):
        short = settings_with(challenge_ttl_seconds=-5)
        service = ActivationService(db_session, short, TokenService(short))
        service.activate(customer.id, entitlement.id, "device-online-1")
        challenge = service.issue_challenge(customer.id, entitlement.id, "device-online-1")["challenge"]

        with pytest.raises(LicensingError) as exc_info:
            service.redeem_challenge(customer.id, challenge)
        assert exc_info.value.code == ErrorCode.CHALLENGE_EXPIRED

    def test_lifetime_needs_no_challenge(self, service, customer, lifetime_entitlement):
        service.activate(customer.id, lifetime_entitlement.id, "device-online-1")

        with pytest.raises(LicensingError) as exc_info:
            service.issue_challenge(customer.id, lifetime_entitlement.id, "device-online-1")
        assert exc_info.value.code == ErrorCode.LIFETIME_NOT_SUPPORTED

    def test_failed_redeem_leaves_challenge_usable(self, service, db_session, customer, entitlement):
        service.activate(customer.id, entitlement.id, "device-online-1")
        challenge = service.issue_challenge(customer.id, entitlement.id, "device-online-1")["challenge"]
        entitlement.status = "inactive"
        db_session.commit()

        with pytest.raises(LicensingError):
            service.redeem_challenge(customer.id, challenge)

        entitlement.status = "active"
        db_session.commit()
        assert service.redeem_challenge(customer.id, challenge)["leaseToken"]

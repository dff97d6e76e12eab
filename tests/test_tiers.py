"""
Tests for tier and lifetime determination.

Tests cover:
- Price id, amount and fallback signals
- Inclusive founders window boundaries
- Repair of legacy "founders" tier records
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from licensing.config import FoundersWindow
from licensing.models import Entitlement
from licensing.tiers import (
    PurchaseAttrs,
    apply_founders_repair,
    determine_tier,
    map_amount_to_tier,
    map_price_id_to_tier,
    repair_founders_tier,
)

INSIDE_WINDOW = datetime(2025, 6, 1, tzinfo=timezone.utc)
AFTER_WINDOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


class TestSignals:
    def test_price_id_match_is_high_confidence(self, settings):
        decision = determine_tier(PurchaseAttrs(price_id="price_pro", amount=5, created_at=AFTER_WINDOW), settings)

        assert decision.tier == "pro"
        assert decision.confidence == "high"
        assert decision.reason == "priceId_match"
        assert decision.max_devices == 1
        assert decision.is_lifetime is False

    def test_amount_match_when_price_unknown(self, settings):
        decision = determine_tier(PurchaseAttrs(price_id="price_unknown", amount=499, created_at=AFTER_WINDOW), settings)

        assert decision.tier == "enterprise"
        assert decision.confidence == "medium"
        assert decision.reason == "amount_match"
        assert decision.max_devices == 10

    def test_fallback_is_pro_and_flagged(self, settings):
        decision = determine_tier(PurchaseAttrs(price_id=None, amount=None, created_at=AFTER_WINDOW), settings)

        assert decision.tier == "pro"
        assert decision.confidence == "low"
        assert decision.reason == "fallback_uncertain"
        assert decision.needs_review is True
        assert decision.metadata["migrationUncertain"] is True

    def test_amounts_round_half_up(self):
        assert map_amount_to_tier(99.5) == "maker"
        assert map_amount_to_tier(199.49) == "pro"
        assert map_amount_to_tier(0) is None
        assert map_amount_to_tier(12) is None

    def test_extra_price_tiers_are_merged(self):
        assert map_price_id_to_tier("price_env_maker", {"price_env_maker": "maker"}) == "maker"
        assert map_price_id_to_tier("price_env_maker") is None

    def test_metadata_keeps_original_signals(self, settings):
        decision = determine_tier(PurchaseAttrs(price_id="price_starter", amount=99, created_at=INSIDE_WINDOW), settings)

        assert decision.metadata["originalPriceId"] == "price_starter"
        assert decision.metadata["originalAmount"] == 99
        assert decision.metadata["purchasedAt"] == "2025-06-01T00:00:00Z"


class TestFoundersWindow:
    def test_purchase_inside_window_is_lifetime(self, settings):
        decision = determine_tier(PurchaseAttrs(price_id="price_pro", created_at=INSIDE_WINDOW), settings)

        assert decision.tier == "pro"
        assert decision.is_lifetime is True
        assert decision.reason == "priceId_match_founders_lifetime"

    def test_boundaries_are_inclusive(self, settings):
        window = settings.founders_window
        start = determine_tier(PurchaseAttrs(price_id="price_pro", created_at=window.start), settings)
        end = determine_tier(PurchaseAttrs(price_id="price_pro", created_at=window.end), settings)

        assert start.is_lifetime is True
        assert end.is_lifetime is True

    def test_one_microsecond_outside_is_excluded(self, settings):
        window = settings.founders_window
        before = determine_tier(
            PurchaseAttrs(price_id="price_pro", created_at=window.start - timedelta(microseconds=1)), settings
        )
        after = determine_tier(
            PurchaseAttrs(price_id="price_pro", created_at=window.end + timedelta(microseconds=1)), settings
        )

        assert before.is_lifetime is False
        assert after.is_lifetime is False

    def test_missing_purchase_date_is_not_lifetime(self, settings):
        assert determine_tier(PurchaseAttrs(price_id="price_pro"), settings).is_lifetime is False

    def test_naive_datetimes_are_treated_as_utc(self, settings):
        naive_end = settings.founders_window.end.replace(tzinfo=None)
        assert settings.founders_window.contains(naive_end) is True

    def test_custom_window(self, settings):
        window = FoundersWindow(
            start=datetime(2030, 1, 1, tzinfo=timezone.utc),
            end=datetime(2030, 1, 31, tzinfo=timezone.utc),
        )
        custom = replace(settings, founders_window=window)

        assert determine_tier(PurchaseAttrs(price_id="price_pro", created_at=INSIDE_WINDOW), custom).is_lifetime is False
        assert (
            determine_tier(
                PurchaseAttrs(price_id="price_pro", created_at=datetime(2030, 1, 15, tzinfo=timezone.utc)), custom
            ).is_lifetime
            is True
        )

    def test_window_requires_an_end(self):
        with pytest.raises(RuntimeError):
            FoundersWindow(start=datetime(2024, 1, 1, tzinfo=timezone.utc), end=None)

    def test_window_cannot_end_before_start(self):
        with pytest.raises(RuntimeError):
            FoundersWindow(
                start=datetime(2025, 1, 1, tzinfo=timezone.utc),
                end=datetime(2024, 1, 1, tzinfo=timezone.utc),
            )


class TestFoundersRepair:
    def test_repair_uses_price_then_amount(self):
        assert repair_founders_tier({"originalPriceId": "price_enterprise"}) == ("enterprise", 10)
        assert repair_founders_tier({"originalAmount": 99}) == ("maker", 1)
        assert repair_founders_tier({}) == ("pro", 1)
        assert repair_founders_tier(None) == ("pro", 1)

    def test_apply_repair_forces_lifetime(self):
        entitlement = Entitlement(
            id=7,
            tier="founders",
            is_lifetime=False,
            expires_at=AFTER_WINDOW,
            max_devices=3,
            metadata_={"originalAmount": 499},
        )

        assert apply_founders_repair(entitlement) is True
        assert entitlement.tier == "enterprise"
        assert entitlement.max_devices == 10
        assert entitlement.is_lifetime is True
        assert entitlement.expires_at is None
        assert entitlement.metadata_["repairedFromFoundersTier"] is True

    def test_apply_repair_skips_real_tiers(self):
        entitlement = Entitlement(id=8, tier="pro", is_lifetime=False, max_devices=1, metadata_={})

        assert apply_founders_repair(entitlement) is False
        assert entitlement.tier == "pro"

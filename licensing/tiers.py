# licensing/tiers.py
# "Founders" is a billing promise (lifetime access), not a tier: a founder who
# bought Pro is tier="pro", is_lifetime=True.
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime

from licensing.config import FoundersWindow, Settings, get_settings
from licensing.utils.timeutil import as_utc, isoformat

logger = logging.getLogger(__name__)

MAKER_PRICE_IDS = ("price_starter", "price_starter_test")
PRO_PRICE_IDS = ("price_pro", "price_pro_test")
ENTERPRISE_PRICE_IDS = ("price_enterprise", "price_enterprise_test")
EDUCATION_PRICE_IDS = ()

PRICE_TIER_MAP = {
    **{price_id: "maker" for price_id in MAKER_PRICE_IDS},
    **{price_id: "pro" for price_id in PRO_PRICE_IDS},
    **{price_id: "enterprise" for price_id in ENTERPRISE_PRICE_IDS},
    **{price_id: "education" for price_id in EDUCATION_PRICE_IDS},
}

# whole dollars
AMOUNT_TIER_MAP = {
    99: "maker",
    100: "maker",
    199: "pro",
    200: "pro",
    499: "enterprise",
}

TIER_MAX_DEVICES = {
    "maker": 1,
    "pro": 1,
    "education": 5,
    "enterprise": 10,
}

FALLBACK_TIER = "pro"


@dataclass(frozen=True)
class PurchaseAttrs:
    price_id: str | None = None
    amount: float | None = None  # dollars, not cents
    created_at: datetime | None = None


@dataclass(frozen=True)
class TierDecision:
    tier: str
    is_lifetime: bool
    max_devices: int
    confidence: str  # high | medium | low
    reason: str
    metadata: dict = field(default_factory=dict)

    @property
    def needs_review(self) -> bool:
        return self.confidence == "low"


def map_price_id_to_tier(price_id: str | None, extra_price_tiers: dict | None = None) -> str | None:
    if not price_id:
        return None
    if price_id in PRICE_TIER_MAP:
        return PRICE_TIER_MAP[price_id]
    return (extra_price_tiers or {}).get(price_id)


def map_amount_to_tier(amount: float | None) -> str | None:
    if not amount:
        return None
    # half-up, so 99.5 lands on 100 rather than banker's 100/99 flip-flop
    return AMOUNT_TIER_MAP.get(math.floor(float(amount) + 0.5))


def is_in_founders_window(when: datetime | None, window: FoundersWindow) -> bool:
    return window.contains(when)


def determine_tier(purchase: PurchaseAttrs, settings: Settings | None = None) -> TierDecision:
    """
    Pick a tier from the strongest signal available.

    A known price id wins. Historical purchases without one fall back to the
    amount. With neither, the result is the fallback tier flagged for review.
    """
    settings = settings or get_settings()

    tier = map_price_id_to_tier(purchase.price_id, settings.extra_price_tiers)
    confidence, reason = "high", "priceId_match"

    if tier is None:
        tier = map_amount_to_tier(purchase.amount)
        confidence, reason = "medium", "amount_match"

    if tier is None:
        tier = FALLBACK_TIER
        confidence, reason = "low", "fallback_uncertain"
        logger.warning(
            "Tier could not be determined, defaulting to %s", FALLBACK_TIER,
            extra={"price_id": purchase.price_id, "amount": purchase.amount},
        )

    is_lifetime = is_in_founders_window(as_utc(purchase.created_at), settings.founders_window)

    return TierDecision(
        tier=tier,
        is_lifetime=is_lifetime,
        max_devices=TIER_MAX_DEVICES[tier],
        confidence=confidence,
        reason=f"{reason}_founders_lifetime" if is_lifetime else reason,
        metadata={
            "mappingSignal": reason,
            "originalPriceId": purchase.price_id or None,
            "originalAmount": purchase.amount or None,
            "purchasedAt": isoformat(purchase.created_at),
            "inFoundersWindow": is_lifetime,
            "isFoundersLifetime": is_lifetime,
            "migrationUncertain": confidence == "low",
        },
    )


def repair_founders_tier(metadata: dict | None, extra_price_tiers: dict | None = None) -> tuple[str, int]:
    """Recover the real tier of a legacy record that stored "founders" as its tier."""
    metadata = metadata or {}
    tier = map_price_id_to_tier(metadata.get("originalPriceId"), extra_price_tiers)
    if tier is None:
        tier = map_amount_to_tier(metadata.get("originalAmount"))
    if tier is None:
        tier = FALLBACK_TIER
    return tier, TIER_MAX_DEVICES[tier]


def apply_founders_repair(entitlement, extra_price_tiers: dict | None = None) -> bool:
    """Fix an Entitlement row in place. Returns False when it did not need repair."""
    if entitlement.tier != "founders":
        return False
    tier, max_devices = repair_founders_tier(entitlement.metadata_, extra_price_tiers)
    entitlement.tier = tier
    entitlement.max_devices = max_devices
    entitlement.is_lifetime = True
    entitlement.expires_at = None
    entitlement.metadata_ = {**(entitlement.metadata_ or {}), "repairedFromFoundersTier": True}
    logger.info("Repaired founders tier", extra={"entitlement_id": entitlement.id, "tier": tier})
    return True

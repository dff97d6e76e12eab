# licensing/services/entitlements.py
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from licensing.config import Settings, get_settings
from licensing.errors import ErrorCode, LicensingError
from licensing.models import TIERS, Device, Entitlement
from licensing.repositories import SqlCustomerRepo, SqlEntitlementRepo, SqlReplayLedger
from licensing.tiers import TIER_MAX_DEVICES, apply_founders_repair
from licensing.utils.timeutil import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)


def is_usable(entitlement: Entitlement | None, now: datetime | None = None) -> bool:
    """Active and not past its expiry. Lifetime grants have no expiry."""
    if entitlement is None or entitlement.status != "active":
        return False
    if entitlement.expires_at is None:
        return True
    return as_utc(entitlement.expires_at) > (now or utcnow())


def entitlement_to_dict(entitlement: Entitlement) -> dict:
    return {
        "id": entitlement.id,
        "customerId": entitlement.customer_id,
        "tier": entitlement.tier,
        "status": entitlement.status,
        "isLifetime": bool(entitlement.is_lifetime),
        "expiresAt": isoformat(entitlement.expires_at),
        "currentPeriodEnd": isoformat(entitlement.current_period_end),
        "cancelAtPeriodEnd": bool(entitlement.cancel_at_period_end),
        "maxDevices": entitlement.max_devices,
        "source": entitlement.source,
        "stripeSubscriptionId": entitlement.stripe_subscription_id,
        "metadata": entitlement.metadata_ or {},
    }


class EntitlementService:
    def __init__(self, db: Session, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.entitlements = SqlEntitlementRepo(db)
        self.customers = SqlCustomerRepo(db)

    def list_entitlements(self, customer_id: int | None = None) -> list[Entitlement]:
        if customer_id is None:
            return self.entitlements.list_all()
        return self.entitlements.list_for_customer(customer_id)

    def grant_trial(self, customer_id: int, tier: str = "pro", days: int | None = None) -> Entitlement:
        if tier not in TIERS:
            raise LicensingError(ErrorCode.VALIDATION_ERROR, f"Unknown tier: {tier}")
        days = days or self.settings.trial_days
        if days <= 0:
            raise LicensingError(ErrorCode.VALIDATION_ERROR, "Trial length must be positive")
        if self.customers.get(customer_id) is None:
            raise LicensingError(ErrorCode.VALIDATION_ERROR, f"Customer {customer_id} not found", 404)
        if self.entitlements.has_trial(customer_id):
            raise LicensingError(ErrorCode.VALIDATION_ERROR, "Customer already had a trial")

        now = utcnow()
        entitlement = self.entitlements.add(
            Entitlement(
                customer_id=customer_id,
                tier=tier,
                status="active",
                is_lifetime=False,
                expires_at=now + timedelta(days=days),
                max_devices=TIER_MAX_DEVICES[tier],
                source="trial",
                metadata_={"sourceType": "trial", "trialDays": days, "grantedAt": isoformat(now)},
            )
        )
        self.db.commit()
        logger.info(
            "Trial granted",
            extra={"customer_id": customer_id, "entitlement_id": entitlement.id, "tier": tier, "days": days},
        )
        return entitlement

    def retire_trials_for_customer(self, customer_id: int | None, replaced_by_id: int | None = None) -> list[int]:
        """Expire the customer's active trials. Runs inside the caller's transaction."""
        if not customer_id:
            return []
        now = utcnow()
        retired = []
        for trial in self.entitlements.list_active_trials(customer_id):
            trial.status = "expired"
            trial.expires_at = now
            trial.metadata_ = {
                **(trial.metadata_ or {}),
                "retiredAt": isoformat(now),
                "retiredReason": "replaced_by_paid",
                "replacedByEntitlementId": replaced_by_id,
            }
            retired.append(trial.id)
        if retired:
            self.db.flush()
            logger.info(
                "Trials retired",
                extra={"customer_id": customer_id, "retired_ids": retired, "replaced_by": replaced_by_id},
            )
        return retired

    def retire_entitlement(self, entitlement_id: int, reason: str = "admin") -> Entitlement:
        entitlement = self.entitlements.get(entitlement_id, for_update=True)
        if entitlement is None:
            raise LicensingError(ErrorCode.ENTITLEMENT_NOT_ACTIVE, f"Entitlement {entitlement_id} not found", 404)
        if entitlement.status == "expired":
            return entitlement

        now = utcnow()
        entitlement.status = "expired"
        if not entitlement.is_lifetime:
            entitlement.expires_at = now
        entitlement.metadata_ = {**(entitlement.metadata_ or {}), "retiredAt": isoformat(now), "retiredReason": reason}
        unbound = (
            self.db.query(Device)
            .filter(Device.entitlement_id == entitlement.id)
            .update({Device.entitlement_id: None}, synchronize_session=False)
        )
        self.db.commit()
        logger.info(
            "Entitlement retired",
            extra={"entitlement_id": entitlement.id, "reason": reason, "devices_unbound": unbound},
        )
        return entitlement

    def repair_founders_entitlements(self) -> list[int]:
        repaired = [
            entitlement.id
            for entitlement in self.entitlements.list_with_tier("founders")
            if apply_founders_repair(entitlement, self.settings.extra_price_tiers)
        ]
        self.db.commit()
        logger.info("Founders repair finished", extra={"repaired_count": len(repaired)})
        return repaired

    def prune_replay_ledger(self, now: datetime | None = None) -> int:
        removed = SqlReplayLedger(self.db).prune(now)
        self.db.commit()
        logger.info("Replay ledger pruned", extra={"removed": removed})
        return removed

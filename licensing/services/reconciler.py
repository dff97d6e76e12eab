# licensing/services/reconciler.py
import logging
from dataclasses import dataclass, field

import requests
from sqlalchemy.orm import Session

from licensing.config import Settings, get_settings
from licensing.models import Customer, Entitlement, LicenseKey, Purchase
from licensing.repositories import (
    DuplicateEventError,
    SqlBillingEventLedger,
    SqlCustomerRepo,
    SqlEntitlementRepo,
    SqlPurchaseRepo,
    deactivate_unless_canceled,
    reactivate_if_inactive,
)
from licensing.services.entitlements import EntitlementService
from licensing.services.stripe_webhook import StripeClient
from licensing.tiers import PurchaseAttrs, determine_tier
from licensing.utils.crypto import generate_license_key
from licensing.utils.timeutil import from_unix, isoformat, utcnow

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "inactive",
    "unpaid": "inactive",
    "canceled": "canceled",
    "incomplete_expired": "canceled",
}


@dataclass(frozen=True)
class CustomerRef:
    """Whatever a billing payload tells us about the buyer, most specific first."""

    customer_id: int | None = None
    stripe_customer_id: str | None = None
    email: str | None = None

    @classmethod
    def from_checkout_session(cls, session: dict) -> "CustomerRef":
        metadata = session.get("metadata") or {}
        customer_id = None
        raw_id = metadata.get("customerId")
        if raw_id not in (None, ""):
            try:
                customer_id = int(raw_id)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric customerId metadata", extra={"raw_customer_id": raw_id})
        details = session.get("customer_details") or {}
        email = details.get("email") or session.get("customer_email")
        return cls(
            customer_id=customer_id,
            stripe_customer_id=session.get("customer") or None,
            email=email.strip().lower() if email else None,
        )


@dataclass
class ReconcileResult:
    status: str  # processed | already_processed | unhandled
    event_id: str
    event_type: str
    outcome: str | None = None
    entitlement_id: int | None = None
    purchase_id: int | None = None
    license_key_id: int | None = None
    needs_review: bool = False
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "outcome": self.outcome,
            "entitlementId": self.entitlement_id,
            "purchaseId": self.purchase_id,
            "licenseKeyId": self.license_key_id,
            "needsReview": self.needs_review,
        }


def _subscription_period_end(subscription: dict):
    # newer API versions moved the period onto the subscription items
    period_end = subscription.get("current_period_end")
    if period_end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return from_unix(period_end)


def _subscription_price_id(subscription: dict) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return (items[0].get("price") or {}).get("id")
    return None


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    return subscription


class BillingReconciler:
    """
    Applies Stripe events to entitlements.

    Events are deduplicated on their id. A change only lands when the event
    is newer than the last one applied and the entitlement is not a lifetime
    grant. The ledger row is written in the same transaction as the change.
    """

    def __init__(self, db: Session, settings: Settings | None = None, stripe: StripeClient | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.stripe = stripe or StripeClient(self.settings.stripe_secret_key)
        self.customers = SqlCustomerRepo(db)
        self.purchases = SqlPurchaseRepo(db)
        self.entitlements = SqlEntitlementRepo(db)
        self.ledger = SqlBillingEventLedger(db)
        self.handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_succeeded,
            "invoice.payment_failed": self._handle_invoice_failed,
        }

    def reconcile(self, event: dict) -> ReconcileResult:
        """
        Apply one provider event.

        Raises ValueError for a malformed event. Any other exception means
        nothing was persisted and the provider should redeliver.
        """
        event_id = event.get("id")
        event_type = event.get("type")
        created = event.get("created")
        obj = (event.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(created, int) or not isinstance(obj, dict):
            raise ValueError("Malformed billing event: id, type, created and data.object are required")

        if self.ledger.is_processed(event_id):
            logger.info("Duplicate billing event skipped", extra={"event_id": event_id, "event_type": event_type})
            return ReconcileResult(status="already_processed", event_id=event_id, event_type=event_type)

        handler = self.handlers.get(event_type)
        result = ReconcileResult(status="processed" if handler else "unhandled", event_id=event_id, event_type=event_type)
        try:
            if handler:
                handler(obj, created, result)
            else:
                result.outcome = "ignored"
                logger.debug("Unhandled billing event type", extra={"event_type": event_type})
            self.ledger.record(event_id, event_type, created, result.outcome)
            self.db.commit()
        except DuplicateEventError:
            self.db.rollback()
            logger.info("Billing event processed concurrently", extra={"event_id": event_id})
            return ReconcileResult(status="already_processed", event_id=event_id, event_type=event_type)
        except Exception:
            self.db.rollback()
            logger.error(
                "Billing event failed", extra={"event_id": event_id, "event_type": event_type}, exc_info=True
            )
            raise

        logger.info(
            "Billing event processed",
            extra={
                "event_id": event_id,
                "event_type": event_type,
                "outcome": result.outcome,
                "entitlement_id": result.entitlement_id,
            },
        )
        return result

    # ---------------------------
    # customers

    def resolve_customer(self, ref: CustomerRef) -> Customer | None:
        customer = None
        if ref.customer_id is not None:
            customer = self.customers.get(ref.customer_id)
        if customer is None and ref.stripe_customer_id:
            customer = self.customers.get_by_stripe_id(ref.stripe_customer_id)
        if customer is None and ref.email:
            customer = self.customers.get_by_email(ref.email)

        if customer is not None and ref.stripe_customer_id and not customer.stripe_customer_id:
            customer.stripe_customer_id = ref.stripe_customer_id
            logger.info(
                "Linked Stripe customer",
                extra={"customer_id": customer.id, "stripe_customer_id": ref.stripe_customer_id},
            )
        return customer

    # ---------------------------
    # checkout

    def _fetch_line_item(self, session_id: str) -> dict | None:
        if not self.stripe.enabled:
            return None
        try:
            items = self.stripe.list_line_items(session_id)
        except requests.RequestException as exc:
            logger.warning("Could not fetch line items", extra={"session_id": session_id, "error": str(exc)})
            return None
        return items[0] if items else None

    def _fetch_subscription(self, subscription_id: str) -> dict | None:
        if not self.stripe.enabled:
            return None
        try:
            return self.stripe.retrieve_subscription(subscription_id)
        except requests.RequestException as exc:
            logger.warning(
                "Could not fetch subscription", extra={"subscription_id": subscription_id, "error": str(exc)}
            )
            return None

    def _handle_checkout_completed(self, session: dict, created: int, result: ReconcileResult) -> None:
        session_id = session.get("id")
        if not session_id:
            raise ValueError("Checkout session without id")

        existing = self.purchases.get_by_session_id(session_id)
        if existing is not None:
            logger.info("Purchase already exists for session", extra={"session_id": session_id})
            result.outcome = "duplicate_purchase"
            result.purchase_id = existing.id
            return

        ref = CustomerRef.from_checkout_session(session)
        customer = self.resolve_customer(ref)
        if customer is None:
            logger.warning(
                "No customer found for checkout",
                extra={"session_id": session_id, "email": ref.email, "stripe_customer_id": ref.stripe_customer_id},
            )
        customer_id = customer.id if customer else None

        metadata = session.get("metadata") or {}
        tier_hint = metadata.get("tier")
        price_id = metadata.get("priceId")
        amount_cents = session.get("amount_total") or 0
        product_name = tier_hint

        if not price_id or not amount_cents:
            line_item = self._fetch_line_item(session_id)
            if line_item:
                price_id = price_id or (line_item.get("price") or {}).get("id")
                amount_cents = amount_cents or line_item.get("amount_total") or 0
                product_name = line_item.get("description") or product_name
        if not price_id and tier_hint:
            price_id = f"price_{tier_hint}"

        mode = "subscription" if session.get("mode") == "subscription" else "payment"
        is_subscription = mode == "subscription"
        subscription_id = session.get("subscription") if is_subscription else None

        decision = determine_tier(
            PurchaseAttrs(
                price_id=price_id,
                amount=amount_cents / 100 if amount_cents else None,
                created_at=from_unix(session.get("created") or created),
            ),
            self.settings,
        )
        # a subscription is never a lifetime grant, whatever the purchase date
        is_lifetime = decision.is_lifetime and not is_subscription

        current_period_end = None
        cancel_at_period_end = False
        if subscription_id:
            subscription = self._fetch_subscription(subscription_id)
            if subscription:
                current_period_end = _subscription_period_end(subscription)
                cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        purchase = self.purchases.add(
            Purchase(
                stripe_session_id=session_id,
                stripe_payment_intent_id=session.get("payment_intent"),
                stripe_subscription_id=subscription_id,
                mode=mode,
                amount_cents=amount_cents,
                currency=session.get("currency") or "usd",
                customer_email=ref.email,
                price_id=price_id,
                customer_id=customer_id,
            )
        )
        license_key = self.purchases.add_license_key(
            LicenseKey(
                key=generate_license_key(product_name, customer_id),
                product_name=product_name,
                price_id=price_id,
                customer_id=customer_id,
                purchase_id=purchase.id,
            )
        )
        entitlement = self.entitlements.add(
            Entitlement(
                customer_id=customer_id,
                license_key_id=license_key.id,
                purchase_id=purchase.id,
                tier=decision.tier,
                status="active",
                is_lifetime=is_lifetime,
                expires_at=None,
                current_period_end=current_period_end,
                cancel_at_period_end=cancel_at_period_end,
                max_devices=decision.max_devices,
                source="subscription" if is_subscription else "purchase",
                stripe_customer_id=ref.stripe_customer_id,
                stripe_subscription_id=subscription_id,
                stripe_price_id=price_id,
                last_event_created=created,
                metadata_={
                    **decision.metadata,
                    "isFoundersLifetime": is_lifetime,
                    "needsReview": decision.needs_review,
                    "tierReason": decision.reason,
                    "sourceType": "subscription_checkout" if is_subscription else "payment_checkout",
                    "sourcePurchaseId": purchase.id,
                    "sourceLicenseKeyId": license_key.id,
                    "createdAt": isoformat(utcnow()),
                },
            )
        )

        EntitlementService(self.db, self.settings).retire_trials_for_customer(customer_id, entitlement.id)

        if decision.needs_review:
            logger.warning(
                "Entitlement created with uncertain tier",
                extra={"entitlement_id": entitlement.id, "session_id": session_id, "tier": decision.tier},
            )
        logger.info(
            "Entitlement created",
            extra={
                "entitlement_id": entitlement.id,
                "tier": decision.tier,
                "is_lifetime": is_lifetime,
                "source": entitlement.source,
                "subscription_id": subscription_id,
            },
        )
        result.outcome = "created"
        result.entitlement_id = entitlement.id
        result.purchase_id = purchase.id
        result.license_key_id = license_key.id
        result.needs_review = decision.needs_review

    # ---------------------------
    # subscription lifecycle

    def _apply(self, subscription_id: str | None, created: int, values: dict, result: ReconcileResult) -> Entitlement | None:
        if not subscription_id:
            result.outcome = "no_subscription"
            return None

        entitlement = self.entitlements.get_by_subscription_id(subscription_id)
        if entitlement is None:
            logger.warning("No entitlement for subscription", extra={"subscription_id": subscription_id})
            result.outcome = "no_entitlement"
            return None
        result.entitlement_id = entitlement.id

        if entitlement.is_lifetime:
            logger.info("Lifetime entitlement left untouched", extra={"entitlement_id": entitlement.id})
            result.outcome = "lifetime_protected"
            return entitlement

        if self.entitlements.apply_if_newer(entitlement, created, values):
            result.outcome = "updated"
            logger.info(
                "Entitlement updated from billing",
                extra={"entitlement_id": entitlement.id, "status": entitlement.status, "event_created": created},
            )
        elif entitlement.is_lifetime:
            result.outcome = "lifetime_protected"
        else:
            result.outcome = "stale"
            logger.warning(
                "Stale billing event ignored",
                extra={
                    "entitlement_id": entitlement.id,
                    "event_created": created,
                    "last_event_created": entitlement.last_event_created,
                },
            )
        return entitlement

    def _handle_subscription_created(self, subscription: dict, created: int, result: ReconcileResult) -> None:
        values = {
            "status": STATUS_MAP.get(subscription.get("status"), "inactive"),
            "current_period_end": _subscription_period_end(subscription),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        }
        price_id = _subscription_price_id(subscription)
        if price_id:
            values["stripe_price_id"] = price_id
        if subscription.get("customer"):
            values["stripe_customer_id"] = subscription["customer"]
        self._apply(subscription.get("id"), created, values, result)

    def _handle_subscription_updated(self, subscription: dict, created: int, result: ReconcileResult) -> None:
        period_end = _subscription_period_end(subscription)
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
        values = {
            "current_period_end": period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "expires_at": period_end if cancel_at_period_end else None,
        }
        status = STATUS_MAP.get(subscription.get("status"))
        if status:
            values["status"] = status
        self._apply(subscription.get("id"), created, values, result)

    def _handle_subscription_deleted(self, subscription: dict, created: int, result: ReconcileResult) -> None:
        self._apply(subscription.get("id"), created, {"status": "canceled", "cancel_at_period_end": True}, result)

    # ---------------------------
    # invoices

    def _handle_invoice_succeeded(self, invoice: dict, created: int, result: ReconcileResult) -> None:
        subscription_id = _invoice_subscription_id(invoice)
        self._apply(subscription_id, created, {"status": reactivate_if_inactive()}, result)
        if not subscription_id:
            return
        purchase = self.purchases.get_by_subscription_id(subscription_id)
        if purchase is not None and not purchase.stripe_invoice_id and invoice.get("id"):
            purchase.stripe_invoice_id = invoice["id"]
            result.purchase_id = purchase.id

    def _handle_invoice_failed(self, invoice: dict, created: int, result: ReconcileResult) -> None:
        self._apply(_invoice_subscription_id(invoice), created, {"status": deactivate_unless_canceled()}, result)

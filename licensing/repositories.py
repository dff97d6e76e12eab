# licensing/repositories.py
# Repositories flush but never commit; the calling service owns the unit of work.
import logging
from datetime import datetime
from typing import Protocol

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from licensing.models import (
    BillingEvent,
    Customer,
    Device,
    DeviceIdentity,
    Entitlement,
    LicenseKey,
    OfflineCodeUse,
    Purchase,
)
from licensing.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class DuplicateEventError(Exception):
    """The billing event id is already in the ledger (concurrent redelivery)."""


class EntitlementRepo(Protocol):
    def get(self, entitlement_id: int, for_update: bool = False) -> Entitlement | None: ...

    def get_by_subscription_id(self, subscription_id: str) -> Entitlement | None: ...

    def list_for_customer(self, customer_id: int) -> list[Entitlement]: ...

    def add(self, entitlement: Entitlement) -> Entitlement: ...

    def apply_if_newer(self, entitlement: Entitlement, event_created: int, values: dict) -> bool: ...


class DeviceRepo(Protocol):
    def get_by_device_id(self, device_id: str) -> Device | None: ...

    def add(self, device: Device) -> Device: ...

    def count_bound(self, entitlement_id: int) -> int: ...

    def get_identity(self, device_id: str) -> DeviceIdentity | None: ...

    def add_identity(self, identity: DeviceIdentity) -> DeviceIdentity: ...


class ReplayLedger(Protocol):
    def record(
        self,
        jti: str,
        kind: str,
        customer_id: int | None,
        entitlement_id: int | None,
        device_id: str | None,
        expires_at: datetime | None = None,
    ) -> bool: ...

    def prune(self, now: datetime | None = None) -> int: ...


class BillingEventLedger(Protocol):
    def is_processed(self, event_id: str) -> bool: ...

    def record(self, event_id: str, event_type: str, event_created: int | None, outcome: str) -> None: ...


# ---------------------------
# SQLAlchemy implementations

class SqlCustomerRepo:
    def __init__(self, db: Session):
        self.db = db

    def get(self, customer_id: int) -> Customer | None:
        return self.db.get(Customer, customer_id)

    def get_by_stripe_id(self, stripe_customer_id: str) -> Customer | None:
        return self.db.query(Customer).filter(Customer.stripe_customer_id == stripe_customer_id).first()

    def get_by_email(self, email: str) -> Customer | None:
        return self.db.query(Customer).filter(func.lower(Customer.email) == email.strip().lower()).first()

    def add(self, customer: Customer) -> Customer:
        self.db.add(customer)
        self.db.flush()
        return customer


class SqlPurchaseRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_by_session_id(self, session_id: str) -> Purchase | None:
        return self.db.query(Purchase).filter(Purchase.stripe_session_id == session_id).first()

    def get_by_subscription_id(self, subscription_id: str) -> Purchase | None:
        return self.db.query(Purchase).filter(Purchase.stripe_subscription_id == subscription_id).first()

    def add(self, purchase: Purchase) -> Purchase:
        self.db.add(purchase)
        self.db.flush()
        return purchase

    def add_license_key(self, license_key: LicenseKey) -> LicenseKey:
        self.db.add(license_key)
        self.db.flush()
        return license_key


class SqlEntitlementRepo:
    def __init__(self, db: Session):
        self.db = db

    def get(self, entitlement_id: int, for_update: bool = False) -> Entitlement | None:
        stmt = select(Entitlement).where(Entitlement.id == entitlement_id)
        if for_update:
            # row lock on PostgreSQL; ignored by SQLite, which serializes writers anyway
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_by_subscription_id(self, subscription_id: str) -> Entitlement | None:
        return (
            self.db.query(Entitlement)
            .filter(Entitlement.stripe_subscription_id == subscription_id)
            .order_by(Entitlement.id)
            .first()
        )

    def list_for_customer(self, customer_id: int) -> list[Entitlement]:
        return self.db.query(Entitlement).filter(Entitlement.customer_id == customer_id).order_by(Entitlement.id).all()

    def list_active_trials(self, customer_id: int) -> list[Entitlement]:
        return (
            self.db.query(Entitlement)
            .filter(
                Entitlement.customer_id == customer_id,
                Entitlement.source == "trial",
                Entitlement.status == "active",
            )
            .all()
        )

    def has_trial(self, customer_id: int) -> bool:
        return (
            self.db.query(Entitlement.id)
            .filter(Entitlement.customer_id == customer_id, Entitlement.source == "trial")
            .first()
            is not None
        )

    def list_with_tier(self, tier: str) -> list[Entitlement]:
        return self.db.query(Entitlement).filter(Entitlement.tier == tier).all()

    def list_all(self) -> list[Entitlement]:
        return self.db.query(Entitlement).order_by(Entitlement.id).all()

    def add(self, entitlement: Entitlement) -> Entitlement:
        self.db.add(entitlement)
        self.db.flush()
        return entitlement

    def apply_if_newer(self, entitlement: Entitlement, event_created: int, values: dict) -> bool:
        """
        Conditionally apply billing-driven changes in one UPDATE.

        The row only changes when the event is strictly newer than the last
        one applied and the entitlement is not a lifetime grant, so two
        workers racing on the same entitlement cannot both win.
        """
        stmt = (
            update(Entitlement)
            .where(
                and_(
                    Entitlement.id == entitlement.id,
                    Entitlement.is_lifetime.is_(False),
                    or_(
                        Entitlement.last_event_created.is_(None),
                        Entitlement.last_event_created < event_created,
                    ),
                )
            )
            .values(last_event_created=event_created, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.refresh(entitlement)
        return result.rowcount == 1


def reactivate_if_inactive():
    """Status expression: inactive -> active, anything else unchanged."""
    return case((Entitlement.status == "inactive", "active"), else_=Entitlement.status)


def deactivate_unless_canceled():
    """Status expression: canceled/expired stay put, everything else -> inactive."""
    return case(
        (Entitlement.status.in_(("canceled", "expired")), Entitlement.status),
        else_="inactive",
    )


class SqlDeviceRepo:
    def __init__(self, db: Session):
        self.db = db

    def get_by_device_id(self, device_id: str) -> Device | None:
        return self.db.query(Device).filter(Device.device_id == device_id).first()

    def add(self, device: Device) -> Device:
        self.db.add(device)
        self.db.flush()
        return device

    def count_bound(self, entitlement_id: int) -> int:
        return self.db.query(func.count(Device.id)).filter(Device.entitlement_id == entitlement_id).scalar() or 0

    def list_for_customer(self, customer_id: int) -> list[Device]:
        return self.db.query(Device).filter(Device.customer_id == customer_id).order_by(Device.id).all()

    def get_identity(self, device_id: str) -> DeviceIdentity | None:
        return self.db.query(DeviceIdentity).filter(DeviceIdentity.device_id == device_id).first()

    def add_identity(self, identity: DeviceIdentity) -> DeviceIdentity:
        self.db.add(identity)
        self.db.flush()
        return identity


class SqlReplayLedger:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        jti: str,
        kind: str,
        customer_id: int | None,
        entitlement_id: int | None,
        device_id: str | None,
        expires_at: datetime | None = None,
    ) -> bool:
        """
        Insert the jti, returning False if it was already used.

        The unique constraint is the only source of truth: there is no
        existence check first. On a violation the session is rolled back,
        which abandons the current request's unit of work.
        """
        self.db.add(
            OfflineCodeUse(
                jti=jti,
                kind=kind,
                customer_id=customer_id,
                entitlement_id=entitlement_id,
                device_id=device_id,
                used_at=utcnow(),
                expires_at=expires_at,
            )
        )
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning("Replay rejected", extra={"jti": jti, "kind": kind, "device_id": device_id})
            return False
        return True

    def prune(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        result = self.db.execute(
            delete(OfflineCodeUse)
            .where(OfflineCodeUse.expires_at.is_not(None), OfflineCodeUse.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class SqlBillingEventLedger:
    def __init__(self, db: Session):
        self.db = db

    def is_processed(self, event_id: str) -> bool:
        return self.db.query(BillingEvent.id).filter(BillingEvent.event_id == event_id).first() is not None

    def record(self, event_id: str, event_type: str, event_created: int | None, outcome: str) -> None:
        self.db.add(
            BillingEvent(
                event_id=event_id,
                event_type=event_type,
                event_created=event_created,
                outcome=outcome,
                processed_at=utcnow(),
            )
        )
        try:
            self.db.flush()
        except IntegrityError:
            raise DuplicateEventError(event_id)

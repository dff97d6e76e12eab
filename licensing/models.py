# licensing/models.py
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

TIERS = ("maker", "pro", "education", "enterprise")
ENTITLEMENT_STATUSES = ("active", "inactive", "canceled", "expired")


class Customer(Base):
    __tablename__ = "customers"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(Text, unique=True, nullable=True, index=True)
    name = Column(Text, nullable=True)
    stripe_customer_id = Column(Text, unique=True, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Purchase(Base):
    __tablename__ = "purchases"
    id = Column(Integer, primary_key=True, index=True)
    stripe_session_id = Column(Text, unique=True, nullable=False, index=True)
    stripe_payment_intent_id = Column(Text, nullable=True)
    stripe_invoice_id = Column(Text, nullable=True)
    stripe_subscription_id = Column(Text, nullable=True, index=True)
    mode = Column(Text, nullable=False, default="payment")  # payment | subscription
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(Text, nullable=False, default="usd")
    customer_email = Column(Text, nullable=True)
    price_id = Column(Text, nullable=True)
    customer_id = Column(Integer, nullable=True, index=True)  # FK not declared for portability
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LicenseKey(Base):
    __tablename__ = "license_keys"
    id = Column(Integer, primary_key=True, index=True)
    key = Column(Text, unique=True, nullable=False, index=True)
    product_name = Column(Text, nullable=True)
    price_id = Column(Text, nullable=True)
    customer_id = Column(Integer, nullable=True, index=True)
    purchase_id = Column(Integer, unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Entitlement(Base):
    __tablename__ = "entitlements"
    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, nullable=True, index=True)
    license_key_id = Column(Integer, unique=True, nullable=True)
    purchase_id = Column(Integer, unique=True, nullable=True)
    tier = Column(Text, nullable=False, default="pro")
    status = Column(Text, nullable=False, default="active")
    is_lifetime = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    max_devices = Column(Integer, nullable=False, default=1)
    source = Column(Text, nullable=False, default="purchase")  # purchase | subscription | trial | legacy_purchase
    stripe_customer_id = Column(Text, nullable=True)
    stripe_subscription_id = Column(Text, nullable=True, index=True)
    stripe_price_id = Column(Text, nullable=True)
    # provider "created" (unix seconds) of the newest billing event applied
    last_event_created = Column(Integer, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Device(Base):
    __tablename__ = "devices"
    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, nullable=False, index=True)
    device_id = Column(Text, unique=True, nullable=False, index=True)
    name = Column(Text, nullable=True)
    platform = Column(Text, nullable=True)
    is_airgapped = Column(Boolean, nullable=False, default=False)
    entitlement_id = Column(Integer, nullable=True, index=True)
    last_seen_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DeviceIdentity(Base):
    __tablename__ = "device_identities"
    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Text, unique=True, nullable=False, index=True)
    public_key = Column(Text, nullable=False)  # Ed25519 SPKI DER, base64
    public_key_hash = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class BillingEvent(Base):
    __tablename__ = "billing_events"
    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Text, unique=True, nullable=False, index=True)
    event_type = Column(Text, nullable=False)
    event_created = Column(Integer, nullable=True)
    outcome = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())


class OfflineCodeUse(Base):
    __tablename__ = "offline_code_uses"
    id = Column(Integer, primary_key=True, index=True)
    jti = Column(Text, unique=True, nullable=False, index=True)
    kind = Column(Text, nullable=False)  # refresh | deactivation | activation
    customer_id = Column(Integer, nullable=True)
    entitlement_id = Column(Integer, nullable=True)
    device_id = Column(Text, nullable=True)
    used_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

# barter
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, BigInteger, DateTime, Boolean, ForeignKey, Index, UniqueConstraint, CheckConstraint, JSON, Uuid
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


def utcnow() -> datetime:
    """Naive UTC, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=True)
    role = Column(String(16), nullable=False, default="user")  # user|admin
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    listings = relationship("Listing", back_populates="seller")


class Listing(Base):
    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_listing_price_nonneg"),
        CheckConstraint("quantity >= 1", name="ck_listing_quantity_pos"),
        Index("ix_listings_seller", "seller_user_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    seller_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    title = Column(String(128), nullable=False)
    description = Column(String(2048), nullable=True)
    price_cents = Column(BigInteger, nullable=False, default=0)
    currency_code = Column(String(3), nullable=False, default="NGN")
    quantity = Column(Integer, nullable=False, default=1)
    allow_barter = Column(Boolean, nullable=False, default=True)
    allow_cash_plus_barter = Column(Boolean, nullable=False, default=False)
    status = Column(String(16), nullable=False, default="active")  # active|sold|hidden
    created_at = Column(DateTime, nullable=False, default=utcnow)

    seller = relationship("User", back_populates="listings")

    @property
    def open_to_offers(self) -> bool:
        return self.status == "active" and bool(self.allow_barter or self.allow_cash_plus_barter)


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        CheckConstraint("offered_cash_cents >= 0", name="ck_offer_cash_nonneg"),
        Index("ix_offers_buyer", "buyer_user_id"),
        Index("ix_offers_seller", "seller_user_id"),
        Index("ix_offers_listing", "listing_id"),
        Index("ix_offers_status_timer", "status", "timer_expires_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    buyer_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    seller_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    currency_code = Column(String(3), nullable=False)
    offered_cash_cents = Column(BigInteger, nullable=False, default=0)
    message = Column(String(2000), nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    # author of the live terms; the other party is the one awaited
    last_proposer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    round = Column(Integer, nullable=False, default=0)

    downpayment_status = Column(String(24), nullable=False, default="none")  # none|awaiting_payment|paid|confirmed
    downpayment_cents = Column(BigInteger, nullable=False, default=0)
    downpayment_paid_at = Column(DateTime, nullable=True)
    downpayment_confirmed_at = Column(DateTime, nullable=True)

    timer_expires_at = Column(DateTime, nullable=True)
    timer_extensions = Column(Integer, nullable=False, default=0)
    timer_warned = Column(Boolean, nullable=False, default=False)

    buyer_confirmed_at = Column(DateTime, nullable=True)
    seller_confirmed_at = Column(DateTime, nullable=True)

    pickup_pin = Column(String(12), nullable=True)
    locked_at = Column(DateTime, nullable=True)

    dispute_status = Column(String(16), nullable=False, default="none")  # none|opened|resolved
    dispute_reason = Column(String(2000), nullable=True)
    disputed_by_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    disputed_at = Column(DateTime, nullable=True)
    resolution = Column(String(16), nullable=True)  # completed|cancelled
    resolved_at = Column(DateTime, nullable=True)

    receipt_number = Column(String(32), nullable=True, unique=True)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    listing = relationship("Listing")
    items = relationship(
        "OfferItem",
        back_populates="offer",
        order_by="OfferItem.position",
        cascade="all, delete-orphan",
    )
    revisions = relationship("OfferRevision", back_populates="offer", order_by="OfferRevision.round")

    __mapper_args__ = {"version_id_col": version}


class OfferItem(Base):
    __tablename__ = "offer_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_offer_item_quantity_pos"),
        Index("ix_offer_items_offer", "offer_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    offer_id = Column(Uuid(as_uuid=True), ForeignKey("offers.id"), nullable=False)
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    position = Column(Integer, nullable=False, default=0)

    offer = relationship("Offer", back_populates="items")
    listing = relationship("Listing")


class OfferRevision(Base):
    __tablename__ = "offer_revisions"
    __table_args__ = (
        UniqueConstraint("offer_id", "round", name="uq_offer_revision_round"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    offer_id = Column(Uuid(as_uuid=True), ForeignKey("offers.id"), nullable=False)
    round = Column(Integer, nullable=False)
    proposer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    offered_cash_cents = Column(BigInteger, nullable=False, default=0)
    items = Column(JSON, nullable=False, default=list)  # [{"listing_id": str, "quantity": int}]
    message = Column(String(2000), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    offer = relationship("Offer", back_populates="revisions")


class BrandSettings(Base):
    __tablename__ = "brand_settings"
    __table_args__ = (
        CheckConstraint("default_timer_duration >= 10 AND default_timer_duration <= 1440", name="ck_brand_timer_range"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True)
    require_downpayment = Column(Boolean, nullable=False, default=False)
    downpayment_type = Column(String(16), nullable=False, default="FIXED")  # FIXED|PERCENTAGE
    downpayment_value = Column(BigInteger, nullable=False, default=0)
    default_timer_duration = Column(Integer, nullable=False, default=60)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    type = Column(String(32), nullable=False)
    title = Column(String(128), nullable=False)
    message = Column(String(512), nullable=False)
    data = Column(JSON, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    type = Column(String(64), nullable=False)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

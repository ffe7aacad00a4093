"""Offer lifecycle operations.

Each function runs inside the caller's session and never commits: the
request scope commits on success and rolls back on any raised ``AppError``,
so a refused operation leaves no trace. Writes go through
``persist_transition`` which flushes against the offer's version column; a
concurrent writer that got there first turns our flush into a ConflictError.
"""
from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Iterable, NamedTuple

from prometheus_client import Counter
from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .downpayment import FIXED, compute_downpayment, validate_brand_settings
from .errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from .lifecycle import (
    NEGOTIATING,
    UNSETTLED_DOWNPAYMENT,
    BUYER,
    Caller,
    DownpaymentStatus,
    OfferStatus,
    Operation,
    assert_edge,
    awaited_party_id,
    check,
    effective_status,
    role_of,
)
from .models import BrandSettings, Listing, Offer, OfferItem, OfferRevision, utcnow
from .utils.audit import record_event
from .utils.notify import notify


log = logging.getLogger("barter.offers")

OFFER_TRANSITIONS = Counter("barter_offer_transitions_total", "Offer lifecycle transitions", ["operation"])

MAX_MESSAGE_LEN = 2000
_TIMED_STATUSES = (OfferStatus.PENDING.value, OfferStatus.COUNTERED.value, OfferStatus.ACCEPTED.value, OfferStatus.LOCKED.value)


class ItemTerm(NamedTuple):
    listing_id: str | uuid.UUID
    quantity: int


def parse_id(value, what: str = "Offer") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{what} not found")


def _coerce_items(items: Iterable | None) -> list[ItemTerm]:
    out: list[ItemTerm] = []
    for it in items or []:
        if isinstance(it, dict):
            out.append(ItemTerm(it.get("listing_id"), it.get("quantity")))
        elif isinstance(it, ItemTerm):
            out.append(it)
        else:
            out.append(ItemTerm(it.listing_id, it.quantity))
    return out


def _validate_terms(items: list[ItemTerm], cash_cents, message: str | None) -> None:
    if not isinstance(cash_cents, int) or isinstance(cash_cents, bool):
        raise ValidationError("offered_cash_cents must be an integer")
    if cash_cents < 0:
        raise ValidationError("offered_cash_cents must be >= 0")
    seen = set()
    for it in items:
        if not isinstance(it.quantity, int) or isinstance(it.quantity, bool) or it.quantity < 1:
            raise ValidationError("Each offered item needs a quantity of at least 1")
        lid = parse_id(it.listing_id, "Offered listing")
        if lid in seen:
            raise ValidationError("An offered listing appears more than once")
        seen.add(lid)
    if cash_cents == 0 and not items:
        raise ValidationError("An offer needs cash, items, or both")
    if message is not None and len(message) > MAX_MESSAGE_LEN:
        raise ValidationError(f"message must be at most {MAX_MESSAGE_LEN} characters")


def _validate_offered_listings(db: Session, owner_id, items: list[ItemTerm], target: Listing) -> None:
    """Offered listings must exist, belong to the buyer and have the stock."""
    for it in items:
        lid = parse_id(it.listing_id, "Offered listing")
        listing = db.get(Listing, lid)
        if listing is None:
            raise NotFoundError(f"Offered listing {lid} not found")
        if listing.id == target.id:
            raise ValidationError("A listing cannot be offered for itself")
        if listing.seller_user_id != owner_id:
            raise ForbiddenError("Only the buyer's own listings can be offered", code="not_your_listing")
        if listing.status != "active":
            raise ValidationError(f"Offered listing {lid} is not available")
        if listing.quantity < it.quantity:
            raise ValidationError(f"Insufficient quantity for listing {lid}")


def _check_listing_accepts(listing: Listing, items: list[ItemTerm], cash_cents: int) -> None:
    if not listing.open_to_offers:
        raise InvalidStateError("This listing is not open to offers", code="listing_closed")
    if items and cash_cents > 0 and not listing.allow_cash_plus_barter:
        raise ValidationError("This listing does not accept cash plus barter offers")
    if items and cash_cents == 0 and not listing.allow_barter:
        raise ValidationError("This listing does not accept barter-only offers")


def _brand_for(db: Session, user_id) -> BrandSettings | None:
    return db.query(BrandSettings).filter(BrandSettings.user_id == user_id).one_or_none()


def _timer_minutes(db: Session, seller_id) -> int:
    brand = _brand_for(db, seller_id)
    return brand.default_timer_duration if brand is not None else settings.DEFAULT_TIMER_MINUTES


def _start_timer(offer: Offer, now: datetime, minutes: int) -> None:
    offer.timer_expires_at = now + timedelta(minutes=minutes)
    offer.timer_extensions = 0
    offer.timer_warned = False


def _stop_timer(offer: Offer) -> None:
    offer.timer_expires_at = None
    offer.timer_warned = False


def _move(offer: Offer, target: OfferStatus) -> None:
    assert_edge(offer.status, target)
    offer.status = target.value


def _snapshot(offer: Offer, items: list[ItemTerm]) -> list[dict]:
    return [{"listing_id": str(parse_id(i.listing_id)), "quantity": i.quantity} for i in items]


def _add_revision(db: Session, offer: Offer, proposer_id, items: list[ItemTerm], now: datetime) -> None:
    db.add(OfferRevision(
        offer_id=offer.id,
        round=offer.round,
        proposer_id=proposer_id,
        offered_cash_cents=offer.offered_cash_cents,
        items=_snapshot(offer, items),
        message=offer.message,
        created_at=now,
    ))


def _payload(offer: Offer, **extra) -> dict:
    return {"offer_id": str(offer.id), "listing_id": str(offer.listing_id), **extra}


def persist_transition(db: Session, offer: Offer, now: datetime, operation: str) -> Offer:
    offer.updated_at = now
    try:
        db.flush()
    except StaleDataError:
        raise ConflictError("The offer was changed by another request; reload and retry")
    OFFER_TRANSITIONS.labels(operation).inc()
    log.info("offer %s %s -> %s", offer.id, operation, offer.status)
    return offer


def _load_offer(db: Session, offer_id, lock: bool = True) -> Offer:
    stmt = select(Offer).where(Offer.id == parse_id(offer_id))
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    offer = db.execute(stmt).scalars().first()
    if offer is None:
        raise NotFoundError("Offer not found")
    return offer


def apply_timer(db: Session, offer: Offer, now: datetime) -> bool:
    """Persist what the timer already decided (expiry or meetup escalation)."""
    target = effective_status(offer, now)
    if target.value == offer.status:
        return False
    previous = offer.status
    _move(offer, target)
    _stop_timer(offer)
    if target == OfferStatus.EXPIRED:
        kind = "TRADE_EXPIRED" if previous == OfferStatus.ACCEPTED.value else "OFFER_EXPIRED"
        for uid in (offer.buyer_user_id, offer.seller_user_id):
            notify(db, uid, kind, "Offer expired", "The response deadline passed and the offer expired.", _payload(offer))
        record_event(db, "offers.expired", None, _payload(offer, previous=previous))
        op = "expire"
    else:
        offer.dispute_status = "opened"
        offer.dispute_reason = "Meetup deadline passed without pickup verification"
        offer.disputed_at = now
        for uid in (offer.buyer_user_id, offer.seller_user_id):
            notify(db, uid, "MEETUP_EXPIRED", "Meetup deadline passed", "The trade was escalated for admin review.", _payload(offer))
        record_event(db, "offers.escalated", None, _payload(offer))
        op = "escalate"
    persist_transition(db, offer, now, op)
    return True


def _prepare(db: Session, caller: Caller, offer_id, operation: Operation, now: datetime) -> Offer:
    offer = _load_offer(db, offer_id)
    if role_of(offer, caller.id) is None and not caller.is_admin:
        raise ForbiddenError("You are not a party to this offer")
    apply_timer(db, offer, now)
    check(operation, offer, caller, now)
    return offer


def _lock_stock(db: Session, listing_id, quantity: int) -> Listing:
    listing = db.execute(
        select(Listing)
        .where(Listing.id == listing_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if listing is None or listing.status != "active" or listing.quantity < quantity:
        raise InvalidStateError("A listing in this trade is no longer available", code="listing_closed")
    return listing


def _consume_stock(listing: Listing, quantity: int) -> None:
    if listing.quantity <= quantity:
        listing.status = "sold"
    else:
        listing.quantity -= quantity


def _receipt_number(now: datetime) -> str:
    return f"BW-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def _complete(db: Session, offer: Offer, now: datetime) -> None:
    if DownpaymentStatus(offer.downpayment_status) in UNSETTLED_DOWNPAYMENT:
        raise InvalidStateError("The downpayment must be confirmed before the trade completes", code="downpayment_pending")
    # other accepted offers on the same listings may have consumed the stock
    stock = [(_lock_stock(db, offer.listing_id, 1), 1)]
    for item in sorted(offer.items, key=lambda i: str(i.listing_id)):
        stock.append((_lock_stock(db, item.listing_id, item.quantity), item.quantity))
    _move(offer, OfferStatus.COMPLETED)
    _stop_timer(offer)
    offer.completed_at = now
    offer.receipt_number = _receipt_number(now)
    for listing, quantity in stock:
        _consume_stock(listing, quantity)
    for uid in (offer.buyer_user_id, offer.seller_user_id):
        notify(db, uid, "TRADE_COMPLETED", "Trade completed", f"Receipt {offer.receipt_number} is ready.", _payload(offer, receipt_number=offer.receipt_number))


# --- negotiation ---------------------------------------------------------


def create_offer(
    db: Session,
    caller: Caller,
    target_listing_id,
    offered_items: Iterable | None = None,
    offered_cash_cents: int = 0,
    message: str | None = None,
    currency_code: str | None = None,
    now: datetime | None = None,
) -> Offer:
    now = now or utcnow()
    items = _coerce_items(offered_items)
    cash = offered_cash_cents if offered_cash_cents is not None else 0
    _validate_terms(items, cash, message)

    listing = db.get(Listing, parse_id(target_listing_id, "Listing"))
    if listing is None:
        raise NotFoundError("Listing not found")
    if listing.seller_user_id == caller.id:
        raise ForbiddenError("Cannot make an offer on your own listing", code="own_listing")
    _check_listing_accepts(listing, items, cash)
    _validate_offered_listings(db, caller.id, items, listing)

    currency = (currency_code or listing.currency_code or settings.DEFAULT_CURRENCY).upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency_code must be a 3-letter ISO code")

    offer = Offer(
        listing_id=listing.id,
        buyer_user_id=caller.id,
        seller_user_id=listing.seller_user_id,
        currency_code=currency,
        offered_cash_cents=cash,
        message=message,
        status=OfferStatus.PENDING.value,
        last_proposer_id=caller.id,
        round=0,
        downpayment_status=DownpaymentStatus.NONE.value,
        created_at=now,
        updated_at=now,
    )
    offer.items = [OfferItem(listing_id=parse_id(it.listing_id), quantity=it.quantity, position=i) for i, it in enumerate(items)]
    _start_timer(offer, now, _timer_minutes(db, listing.seller_user_id))
    db.add(offer)
    db.flush()
    _add_revision(db, offer, caller.id, items, now)
    notify(db, listing.seller_user_id, "NEW_OFFER", "New barter offer", f"You received an offer for {listing.title}", _payload(offer))
    record_event(db, "offers.create", caller.id, _payload(offer, cash_cents=cash, items=len(items)))
    return persist_transition(db, offer, now, "create")


def list_offers(
    db: Session,
    caller: Caller,
    type: str | None = None,
    status: str | None = None,
    listing_id=None,
    now: datetime | None = None,
    limit: int = 100,
) -> list[Offer]:
    now = now or utcnow()
    if type not in (None, "sent", "received"):
        raise ValidationError("type must be 'sent' or 'received'")
    if status is not None:
        try:
            status = OfferStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}")
    if type == "sent":
        party = Offer.buyer_user_id == caller.id
    elif type == "received":
        party = Offer.seller_user_id == caller.id
    else:
        party = or_(Offer.buyer_user_id == caller.id, Offer.seller_user_id == caller.id)

    # lazy expiry: settle overdue rows before filtering on status
    overdue = db.execute(
        select(Offer)
        .where(party, Offer.status.in_(_TIMED_STATUSES), Offer.timer_expires_at <= now)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    for o in overdue:
        apply_timer(db, o, now)

    qry = db.query(Offer).filter(party)
    if status is not None:
        qry = qry.filter(Offer.status == status)
    if listing_id is not None:
        try:
            lid = uuid.UUID(str(listing_id))
        except ValueError:
            raise ValidationError("listing_id is not a valid id")
        qry = qry.filter(Offer.listing_id == lid)
    return qry.order_by(Offer.created_at.desc()).limit(limit).all()


def get_offer(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    return _prepare(db, caller, offer_id, Operation.VIEW, now or utcnow())


def list_revisions(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> list[OfferRevision]:
    offer = _prepare(db, caller, offer_id, Operation.VIEW, now or utcnow())
    return list(offer.revisions)


def counter_offer(
    db: Session,
    caller: Caller,
    offer_id,
    offered_items: Iterable | None = None,
    offered_cash_cents: int | None = None,
    message: str | None = None,
    now: datetime | None = None,
) -> Offer:
    """Replace the live terms and hand the turn to the other party.

    Omitted items or cash keep their current values; the message is always
    replaced.
    """
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.COUNTER, now)
    if offered_items is None:
        items = [ItemTerm(i.listing_id, i.quantity) for i in offer.items]
    else:
        items = _coerce_items(offered_items)
    cash = offer.offered_cash_cents if offered_cash_cents is None else offered_cash_cents
    _validate_terms(items, cash, message)
    listing = db.get(Listing, offer.listing_id)
    _check_listing_accepts(listing, items, cash)
    _validate_offered_listings(db, offer.buyer_user_id, items, listing)

    _move(offer, OfferStatus.COUNTERED)
    offer.items = [OfferItem(listing_id=parse_id(it.listing_id), quantity=it.quantity, position=i) for i, it in enumerate(items)]
    offer.offered_cash_cents = cash
    offer.message = message
    offer.last_proposer_id = caller.id
    offer.round += 1
    _start_timer(offer, now, _timer_minutes(db, offer.seller_user_id))
    _add_revision(db, offer, caller.id, items, now)
    notify(db, awaited_party_id(offer), "COUNTER_OFFER", "Counter offer received", f"You received a counter-offer for {listing.title}", _payload(offer, round=offer.round))
    record_event(db, "offers.counter", caller.id, _payload(offer, round=offer.round, cash_cents=cash))
    return persist_transition(db, offer, now, "counter")


def accept_offer(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.ACCEPT, now)
    listing = db.get(Listing, offer.listing_id)
    if listing is None or listing.status != "active":
        raise InvalidStateError("The listing is no longer available", code="listing_closed")

    brand = _brand_for(db, offer.seller_user_id)
    dp_status, dp_cents = compute_downpayment(brand, listing.price_cents)
    proposer = offer.last_proposer_id
    _move(offer, OfferStatus.ACCEPTED)
    offer.downpayment_status = dp_status.value
    offer.downpayment_cents = dp_cents
    _start_timer(offer, now, brand.default_timer_duration if brand is not None else settings.DEFAULT_TIMER_MINUTES)
    notify(db, proposer, "OFFER_ACCEPTED", "Offer accepted!", f"Your offer for {listing.title} was accepted", _payload(offer))
    if dp_status == DownpaymentStatus.AWAITING_PAYMENT:
        notify(db, offer.buyer_user_id, "DOWNPAYMENT_REQUIRED", "Downpayment required", "Pay the downpayment to secure this trade.", _payload(offer, downpayment_cents=dp_cents))
    record_event(db, "offers.accept", caller.id, _payload(offer, downpayment_status=dp_status.value, downpayment_cents=dp_cents))
    return persist_transition(db, offer, now, "accept")


def reject_offer(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.REJECT, now)
    _move(offer, OfferStatus.REJECTED)
    _stop_timer(offer)
    notify(db, offer.last_proposer_id, "OFFER_REJECTED", "Offer rejected", "Your terms were rejected.", _payload(offer))
    record_event(db, "offers.reject", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "reject")


def cancel_offer(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.CANCEL, now)
    _move(offer, OfferStatus.CANCELLED)
    _stop_timer(offer)
    notify(db, offer.seller_user_id, "OFFER_CANCELLED", "Offer withdrawn", "The buyer withdrew their offer.", _payload(offer))
    record_event(db, "offers.cancel", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "cancel")


def extend_timer(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.EXTEND_TIMER, now)
    if offer.timer_expires_at is None:
        raise InvalidStateError("No timer is running on this offer", code="timer_not_running")
    if offer.timer_extensions >= settings.MAX_TIMER_EXTENSIONS:
        raise InvalidStateError("The timer cannot be extended any further", code="extension_limit")
    offer.timer_expires_at = offer.timer_expires_at + timedelta(minutes=settings.TIMER_EXTENSION_MINUTES)
    offer.timer_extensions += 1
    offer.timer_warned = False
    other = offer.seller_user_id if caller.id == offer.buyer_user_id else offer.buyer_user_id
    notify(db, other, "TIMER_EXTENDED", "Timer extended", f"The deadline was extended by {settings.TIMER_EXTENSION_MINUTES} minutes.", _payload(offer))
    record_event(db, "offers.extend_timer", caller.id, _payload(offer, extensions=offer.timer_extensions))
    return persist_transition(db, offer, now, "extend_timer")


# --- downpayment and completion ------------------------------------------


def mark_downpayment_paid(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.MARK_DOWNPAYMENT_PAID, now)
    if offer.downpayment_status != DownpaymentStatus.AWAITING_PAYMENT.value:
        raise InvalidStateError("No downpayment is awaiting payment", code="downpayment_state")
    offer.downpayment_status = DownpaymentStatus.PAID.value
    offer.downpayment_paid_at = now
    # paused until the seller confirms; a paid trade never auto-expires
    _stop_timer(offer)
    notify(db, offer.seller_user_id, "DOWNPAYMENT_PAID", "Downpayment sent", "The buyer marked the downpayment as paid. Confirm once you receive it.", _payload(offer, downpayment_cents=offer.downpayment_cents))
    record_event(db, "offers.downpayment_paid", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "mark_downpayment_paid")


def confirm_downpayment(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.CONFIRM_DOWNPAYMENT, now)
    if offer.downpayment_status != DownpaymentStatus.PAID.value:
        raise InvalidStateError("The downpayment has not been marked as paid", code="downpayment_state")
    offer.downpayment_status = DownpaymentStatus.CONFIRMED.value
    offer.downpayment_confirmed_at = now
    notify(db, offer.buyer_user_id, "DOWNPAYMENT_CONFIRMED", "Downpayment confirmed", "The seller confirmed receipt of your downpayment.", _payload(offer))
    record_event(db, "offers.downpayment_confirmed", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "confirm_downpayment")


def confirm_trade(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    """Record this party's confirmation; the second one completes the trade."""
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.CONFIRM_TRADE, now)
    if DownpaymentStatus(offer.downpayment_status) in UNSETTLED_DOWNPAYMENT:
        raise InvalidStateError("The downpayment must be confirmed first", code="downpayment_pending")
    role = role_of(offer, caller.id)
    field = "buyer_confirmed_at" if role == BUYER else "seller_confirmed_at"
    if getattr(offer, field) is not None:
        return offer
    setattr(offer, field, now)
    if offer.buyer_confirmed_at is not None and offer.seller_confirmed_at is not None:
        _complete(db, offer, now)
        op = "complete"
    else:
        other = offer.seller_user_id if role == BUYER else offer.buyer_user_id
        notify(db, other, "TRADE_CONFIRMATION_REQUESTED", "Confirm your trade", "The other party confirmed the trade.", _payload(offer))
        op = "confirm_trade"
    record_event(db, "offers.confirm_trade", caller.id, _payload(offer, role=role, status=offer.status))
    return persist_transition(db, offer, now, op)


def lock_deal(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.LOCK, now)
    if DownpaymentStatus(offer.downpayment_status) in UNSETTLED_DOWNPAYMENT:
        raise InvalidStateError("The downpayment must be confirmed before locking", code="downpayment_pending")
    _move(offer, OfferStatus.LOCKED)
    offer.pickup_pin = f"{secrets.randbelow(10 ** 6):06d}"
    offer.locked_at = now
    offer.timer_expires_at = now + timedelta(hours=settings.MEETUP_WINDOW_HOURS)
    offer.timer_warned = False
    notify(db, offer.buyer_user_id, "DEAL_LOCKED", "Deal locked", "Show your pickup PIN to the seller when you meet.", _payload(offer))
    notify(db, offer.seller_user_id, "DEAL_LOCKED", "Deal locked", "Ask the buyer for the pickup PIN when you meet.", _payload(offer))
    record_event(db, "offers.lock", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "lock")


def verify_pickup(db: Session, caller: Caller, offer_id, pin: str, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    offer = _prepare(db, caller, offer_id, Operation.VERIFY_PICKUP, now)
    if not pin or not offer.pickup_pin or not hmac.compare_digest(str(pin).strip(), offer.pickup_pin):
        raise ForbiddenError("Invalid pickup PIN", code="invalid_pin")
    _complete(db, offer, now)
    record_event(db, "offers.verify_pickup", caller.id, _payload(offer))
    return persist_transition(db, offer, now, "verify_pickup")


# --- disputes ------------------------------------------------------------


def raise_dispute(db: Session, caller: Caller, offer_id, reason: str, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A dispute needs a reason")
    if len(reason) > MAX_MESSAGE_LEN:
        raise ValidationError(f"reason must be at most {MAX_MESSAGE_LEN} characters")
    offer = _prepare(db, caller, offer_id, Operation.RAISE_DISPUTE, now)
    _move(offer, OfferStatus.DISPUTED)
    _stop_timer(offer)
    offer.dispute_status = "opened"
    offer.dispute_reason = reason
    offer.disputed_by_id = caller.id
    offer.disputed_at = now
    other = offer.seller_user_id if caller.id == offer.buyer_user_id else offer.buyer_user_id
    notify(db, other, "DISPUTE_OPENED", "Dispute opened", "The other party opened a dispute on this trade.", _payload(offer))
    record_event(db, "offers.dispute", caller.id, _payload(offer, reason=reason))
    return persist_transition(db, offer, now, "raise_dispute")


def resolve_dispute(db: Session, caller: Caller, offer_id, outcome: str, note: str | None = None, now: datetime | None = None) -> Offer:
    now = now or utcnow()
    if outcome not in ("complete", "cancel"):
        raise ValidationError("outcome must be 'complete' or 'cancel'")
    offer = _prepare(db, caller, offer_id, Operation.RESOLVE_DISPUTE, now)
    if outcome == "complete":
        _complete(db, offer, now)
    else:
        _move(offer, OfferStatus.CANCELLED)
        _stop_timer(offer)
        for uid in (offer.buyer_user_id, offer.seller_user_id):
            notify(db, uid, "DISPUTE_RESOLVED", "Dispute resolved", "The trade was cancelled after review.", _payload(offer))
    offer.dispute_status = "resolved"
    offer.resolution = offer.status
    offer.resolved_at = now
    record_event(db, "offers.resolve_dispute", caller.id, _payload(offer, outcome=outcome, note=note))
    return persist_transition(db, offer, now, "resolve_dispute")


def list_offers_admin(db: Session, caller: Caller, status: str | None = None, now: datetime | None = None, limit: int = 100) -> list[Offer]:
    if not caller.is_admin:
        raise ForbiddenError("Admin only")
    now = now or utcnow()
    if status is not None:
        try:
            status = OfferStatus(status).value
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}")
    overdue = db.execute(
        select(Offer)
        .where(Offer.status.in_(_TIMED_STATUSES), Offer.timer_expires_at <= now)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    for o in overdue:
        apply_timer(db, o, now)

    qry = db.query(Offer)
    if status is not None:
        qry = qry.filter(Offer.status == status)
    return qry.order_by(Offer.updated_at.desc()).limit(limit).all()


# --- receipt -------------------------------------------------------------


def get_receipt(db: Session, caller: Caller, offer_id, now: datetime | None = None) -> dict:
    offer = _prepare(db, caller, offer_id, Operation.RECEIPT, now or utcnow())
    listing = db.get(Listing, offer.listing_id)
    items = []
    for it in offer.items:
        item_listing = db.get(Listing, it.listing_id)
        items.append({"listing_id": str(it.listing_id), "title": item_listing.title if item_listing else "", "quantity": it.quantity})
    return {
        "receipt_number": offer.receipt_number,
        "offer_id": str(offer.id),
        "listing_id": str(offer.listing_id),
        "listing_title": listing.title if listing else "",
        "buyer_user_id": str(offer.buyer_user_id),
        "seller_user_id": str(offer.seller_user_id),
        "currency_code": offer.currency_code,
        "offered_cash_cents": offer.offered_cash_cents,
        "offered_items": items,
        "downpayment_cents": offer.downpayment_cents if offer.downpayment_status == DownpaymentStatus.CONFIRMED.value else 0,
        "completed_at": offer.completed_at,
    }


# --- brand settings ------------------------------------------------------


def get_brand_settings(db: Session, caller: Caller) -> BrandSettings:
    """The caller's settings; an unsaved default row if never configured."""
    brand = _brand_for(db, caller.id)
    if brand is None:
        brand = BrandSettings(
            user_id=caller.id,
            require_downpayment=False,
            downpayment_type=FIXED,
            downpayment_value=0,
            default_timer_duration=settings.DEFAULT_TIMER_MINUTES,
        )
    return brand


def update_brand_settings(
    db: Session,
    caller: Caller,
    require_downpayment: bool | None = None,
    downpayment_type: str | None = None,
    downpayment_value: int | None = None,
    default_timer_duration: int | None = None,
    now: datetime | None = None,
) -> BrandSettings:
    now = now or utcnow()
    brand = _brand_for(db, caller.id)
    current = brand or get_brand_settings(db, caller)
    new_type = (downpayment_type or current.downpayment_type).upper()
    new_value = current.downpayment_value if downpayment_value is None else downpayment_value
    new_timer = current.default_timer_duration if default_timer_duration is None else default_timer_duration
    for name, value in (("downpayment_value", new_value), ("default_timer_duration", new_timer)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValidationError(f"{name} must be a whole number")
    validate_brand_settings(new_type, new_value, new_timer)

    if brand is None:
        brand = current
        db.add(brand)
    if require_downpayment is not None:
        brand.require_downpayment = bool(require_downpayment)
    brand.downpayment_type = new_type
    brand.downpayment_value = new_value
    brand.default_timer_duration = new_timer
    brand.updated_at = now
    db.flush()
    record_event(db, "brand_settings.update", caller.id, {
        "require_downpayment": brand.require_downpayment,
        "downpayment_type": new_type,
        "downpayment_value": new_value,
        "default_timer_duration": new_timer,
    })
    return brand


# --- timers --------------------------------------------------------------


def sweep_timers_once(db: Session, now: datetime | None = None, limit: int = 500) -> dict:
    """Persist overdue expirations/escalations and send one warning per deadline."""
    now = now or utcnow()
    counts = {"expired": 0, "escalated": 0, "warned": 0}
    overdue = db.execute(
        select(Offer)
        .where(Offer.status.in_(_TIMED_STATUSES), Offer.timer_expires_at <= now)
        .order_by(Offer.timer_expires_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalars().all()
    for offer in overdue:
        if apply_timer(db, offer, now):
            counts["expired" if offer.status == OfferStatus.EXPIRED.value else "escalated"] += 1

    horizon = now + timedelta(minutes=settings.TIMER_WARNING_MINUTES)
    warn_statuses = [s.value for s in NEGOTIATING] + [OfferStatus.ACCEPTED.value]
    due = db.execute(
        select(Offer)
        .where(
            Offer.status.in_(warn_statuses),
            Offer.timer_expires_at > now,
            Offer.timer_expires_at <= horizon,
            Offer.timer_warned.is_(False),
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalars().all()
    for offer in due:
        if offer.status == OfferStatus.ACCEPTED.value:
            targets = [offer.buyer_user_id, offer.seller_user_id]
        else:
            targets = [awaited_party_id(offer)]
        for uid in targets:
            notify(db, uid, "TIMER_WARNING", f"{settings.TIMER_WARNING_MINUTES} minutes left!", "Respond or request an extension before the deadline.", _payload(offer))
        offer.timer_warned = True
        persist_transition(db, offer, now, "warn")
        counts["warned"] += 1
    if any(counts.values()):
        log.info("timer sweep: %s", counts)
    return counts

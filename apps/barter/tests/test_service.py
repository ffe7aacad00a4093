import re
from datetime import timedelta
from types import SimpleNamespace

import pytest

from app import service
from app.database import SessionLocal
from app.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from app.lifecycle import Caller
from app.models import AuditEvent, Listing, Notification, Offer, utcnow


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def trade(make_user, make_listing):
    buyer = make_user(name="Buyer")
    seller = make_user(name="Seller")
    listing = make_listing(seller)
    item = make_listing(buyer, title="Samsung S21", price_cents=30_000_00, quantity=2)
    return SimpleNamespace(buyer=buyer, seller=seller, listing=listing, item=item)


def _offer(call, trade, now, cash=5000, items=None):
    return call(service.create_offer, trade.buyer, trade.listing.id, offered_items=items or [], offered_cash_cents=cash, now=now)


def _status(db, offer_id) -> str:
    db.expire_all()
    return db.get(Offer, offer_id).status


# --- create ---------------------------------------------------------------


def test_create_offer_persists_terms_timer_and_revision(db, call, trade, now):
    offer = _offer(call, trade, now, cash=10_000_00, items=[service.ItemTerm(trade.item.id, 1)])
    assert offer.status == "pending"
    assert offer.buyer_user_id == trade.buyer.id
    assert offer.seller_user_id == trade.seller.id
    assert offer.last_proposer_id == trade.buyer.id
    assert offer.currency_code == "NGN"
    assert offer.timer_expires_at == now + timedelta(minutes=60)
    assert [(i.listing_id, i.quantity) for i in offer.items] == [(trade.item.id, 1)]
    assert [r.round for r in offer.revisions] == [0]
    assert db.query(Notification).filter_by(user_id=trade.seller.id, type="NEW_OFFER").count() == 1
    assert db.query(AuditEvent).filter_by(type="offers.create", user_id=trade.buyer.id).count() == 1


def test_create_uses_seller_timer_setting(call, trade, set_brand, now):
    set_brand(trade.seller, default_timer_duration=15)
    offer = _offer(call, trade, now)
    assert offer.timer_expires_at == now + timedelta(minutes=15)


def test_negative_cash_rejected_and_nothing_persisted(db, call, trade, now):
    before = db.query(Offer).count()
    with pytest.raises(ValidationError):
        _offer(call, trade, now, cash=-100)
    assert db.query(Offer).count() == before


@pytest.mark.parametrize("cash,qty", [(0, None), (100, 0)])
def test_empty_terms_or_bad_quantity_rejected(call, trade, now, cash, qty):
    items = [service.ItemTerm(trade.item.id, qty)] if qty is not None else []
    with pytest.raises(ValidationError):
        _offer(call, trade, now, cash=cash, items=items)


def test_duplicate_items_rejected(call, trade, now):
    items = [service.ItemTerm(trade.item.id, 1), service.ItemTerm(str(trade.item.id), 1)]
    with pytest.raises(ValidationError):
        _offer(call, trade, now, items=items)


def test_cannot_offer_on_own_listing(call, trade, now):
    with pytest.raises(ForbiddenError):
        call(service.create_offer, trade.seller, trade.listing.id, offered_cash_cents=100, now=now)


def test_unknown_or_malformed_listing_is_not_found(call, trade, now):
    with pytest.raises(NotFoundError):
        call(service.create_offer, trade.buyer, "not-a-uuid", offered_cash_cents=100, now=now)
    with pytest.raises(NotFoundError):
        call(service.create_offer, trade.buyer, "00000000-0000-0000-0000-000000000000", offered_cash_cents=100, now=now)


def test_listing_closed_to_offers(call, trade, make_listing, now):
    sold = make_listing(trade.seller, status="sold")
    with pytest.raises(InvalidStateError):
        call(service.create_offer, trade.buyer, sold.id, offered_cash_cents=100, now=now)
    no_hybrid = make_listing(trade.seller, allow_cash_plus_barter=False)
    with pytest.raises(ValidationError):
        call(service.create_offer, trade.buyer, no_hybrid.id, offered_items=[service.ItemTerm(trade.item.id, 1)], offered_cash_cents=100, now=now)


def test_offered_items_must_belong_to_buyer_and_be_in_stock(call, trade, make_listing, now):
    foreign = make_listing(trade.seller, title="Seller's own thing")
    with pytest.raises(ForbiddenError):
        _offer(call, trade, now, items=[service.ItemTerm(foreign.id, 1)])
    with pytest.raises(ValidationError):
        _offer(call, trade, now, items=[service.ItemTerm(trade.item.id, 3)])


# --- negotiation ----------------------------------------------------------


def test_accept_without_downpayment(call, trade, now):
    offer = _offer(call, trade, now)
    offer = call(service.accept_offer, trade.seller, offer.id, now=now)
    assert offer.status == "accepted"
    assert offer.downpayment_status == "none"
    assert offer.downpayment_cents == 0


def test_counter_flips_turn_and_buyer_accepts(db, call, trade, now):
    offer = _offer(call, trade, now)
    offer = call(service.counter_offer, trade.seller, offer.id, offered_cash_cents=8000, message="Add a bit more", now=now)
    assert offer.status == "countered"
    assert offer.round == 1
    assert offer.offered_cash_cents == 8000
    assert offer.last_proposer_id == trade.seller.id

    with pytest.raises(ForbiddenError) as ei:
        call(service.counter_offer, trade.seller, offer.id, offered_cash_cents=9000, now=now)
    assert ei.value.code == "not_your_turn"

    offer = call(service.accept_offer, trade.buyer, offer.id, now=now)
    assert offer.status == "accepted"
    assert [r.round for r in service.list_revisions(db, trade.buyer, offer.id, now=now)] == [0, 1]
    assert db.query(Notification).filter_by(user_id=trade.buyer.id, type="COUNTER_OFFER").count() == 1


def test_counter_can_swap_items(call, trade, make_listing, now):
    other_item = make_listing(trade.buyer, title="PS5")
    offer = _offer(call, trade, now, cash=0, items=[service.ItemTerm(trade.item.id, 1)])
    offer = call(service.counter_offer, trade.seller, offer.id, offered_items=[{"listing_id": str(other_item.id), "quantity": 1}], now=now)
    assert [i.listing_id for i in offer.items] == [other_item.id]


def test_unverified_seller_cannot_accept(db, call, trade, make_user, make_listing, now):
    seller = make_user(verified=False)
    listing = make_listing(seller)
    offer = call(service.create_offer, trade.buyer, listing.id, offered_cash_cents=100, now=now)
    oid = offer.id
    with pytest.raises(ForbiddenError) as ei:
        call(service.accept_offer, seller, oid, now=now)
    assert ei.value.code == "verification_required"
    assert _status(db, oid) == "pending"


def test_reject_is_terminal(db, call, trade, now):
    offer = _offer(call, trade, now)
    offer = call(service.reject_offer, trade.seller, offer.id, now=now)
    assert offer.status == "rejected"
    assert offer.timer_expires_at is None
    with pytest.raises(InvalidStateError):
        call(service.accept_offer, trade.seller, offer.id, now=now)
    assert _status(db, offer.id) == "rejected"


def test_only_buyer_can_cancel(db, call, trade, now):
    offer = _offer(call, trade, now)
    oid = offer.id
    with pytest.raises(ForbiddenError):
        call(service.cancel_offer, trade.seller, oid, now=now)
    assert call(service.cancel_offer, trade.buyer, oid, now=now).status == "cancelled"


def test_extend_timer_is_capped(call, trade, now):
    offer = _offer(call, trade, now)
    deadline = offer.timer_expires_at
    offer = call(service.extend_timer, trade.buyer, offer.id, now=now)
    offer = call(service.extend_timer, trade.seller, offer.id, now=now)
    assert offer.timer_extensions == 2
    assert offer.timer_expires_at == deadline + timedelta(minutes=60)
    with pytest.raises(InvalidStateError) as ei:
        call(service.extend_timer, trade.buyer, offer.id, now=now)
    assert ei.value.code == "extension_limit"


def test_outsider_cannot_touch_offer(db, call, trade, make_user, now):
    outsider = make_user()
    offer = _offer(call, trade, now)
    oid = offer.id
    for fn in (service.get_offer, service.accept_offer, service.reject_offer, service.cancel_offer, service.extend_timer):
        with pytest.raises(ForbiddenError):
            call(fn, outsider, oid, now=now)
    assert _status(db, oid) == "pending"


def test_missing_offer_is_not_found(call, trade, now):
    with pytest.raises(NotFoundError):
        call(service.get_offer, trade.buyer, "00000000-0000-0000-0000-000000000000", now=now)
    with pytest.raises(NotFoundError):
        call(service.accept_offer, trade.seller, "garbage", now=now)


def test_list_offers_by_direction(call, trade, now):
    offer = _offer(call, trade, now)
    assert offer.id in [o.id for o in call(service.list_offers, trade.buyer, type="sent", now=now)]
    assert offer.id not in [o.id for o in call(service.list_offers, trade.buyer, type="received", now=now)]
    assert offer.id in [o.id for o in call(service.list_offers, trade.seller, type="received", status="pending", now=now)]
    with pytest.raises(ValidationError):
        call(service.list_offers, trade.buyer, type="everything", now=now)
    with pytest.raises(ValidationError):
        call(service.list_offers, trade.buyer, status="bogus", now=now)


# --- downpayment, confirmation, pickup ------------------------------------


def test_downpayment_gates_completion(db, call, trade, set_brand, now):
    set_brand(trade.seller, require_downpayment=True, downpayment_type="FIXED", downpayment_value=1000)
    offer = _offer(call, trade, now)
    oid = offer.id
    offer = call(service.accept_offer, trade.seller, oid, now=now)
    assert offer.downpayment_status == "awaiting_payment"
    assert offer.downpayment_cents == 1000

    with pytest.raises(InvalidStateError) as ei:
        call(service.confirm_trade, trade.buyer, oid, now=now)
    assert ei.value.code == "downpayment_pending"
    with pytest.raises(InvalidStateError):
        call(service.lock_deal, trade.buyer, oid, now=now)
    with pytest.raises(ForbiddenError):
        call(service.mark_downpayment_paid, trade.seller, oid, now=now)
    with pytest.raises(InvalidStateError):
        call(service.confirm_downpayment, trade.seller, oid, now=now)

    offer = call(service.mark_downpayment_paid, trade.buyer, oid, now=now)
    assert offer.downpayment_status == "paid"
    assert offer.timer_expires_at is None
    with pytest.raises(InvalidStateError):
        call(service.confirm_trade, trade.seller, oid, now=now)

    offer = call(service.confirm_downpayment, trade.seller, oid, now=now)
    assert offer.downpayment_status == "confirmed"

    offer = call(service.confirm_trade, trade.buyer, oid, now=now)
    assert offer.status == "accepted"
    offer = call(service.confirm_trade, trade.seller, oid, now=now)
    assert offer.status == "completed"
    assert re.fullmatch(r"BW-\d{8}-[0-9A-F]{8}", offer.receipt_number)


def test_percentage_downpayment_uses_listing_price(call, trade, set_brand, now):
    set_brand(trade.seller, require_downpayment=True, downpayment_type="PERCENTAGE", downpayment_value=10)
    offer = _offer(call, trade, now)
    offer = call(service.accept_offer, trade.seller, offer.id, now=now)
    assert offer.downpayment_cents == 5_000_00


def test_confirm_trade_is_idempotent_per_party(call, trade, now):
    offer = _offer(call, trade, now)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    first = call(service.confirm_trade, trade.buyer, oid, now=now).buyer_confirmed_at
    again = call(service.confirm_trade, trade.buyer, oid, now=now + timedelta(minutes=1))
    assert again.status == "accepted"
    assert again.buyer_confirmed_at == first
    assert again.seller_confirmed_at is None


def test_lock_and_verify_pickup(db, call, trade, now):
    offer = _offer(call, trade, now, cash=0, items=[service.ItemTerm(trade.item.id, 1)])
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    offer = call(service.lock_deal, trade.buyer, oid, now=now)
    assert offer.status == "locked"
    assert re.fullmatch(r"\d{6}", offer.pickup_pin)
    assert offer.timer_expires_at == now + timedelta(hours=168)
    pin = offer.pickup_pin
    wrong = "000000" if pin != "000000" else "111111"

    with pytest.raises(ForbiddenError) as ei:
        call(service.verify_pickup, trade.seller, oid, wrong, now=now)
    assert ei.value.code == "invalid_pin"
    assert _status(db, oid) == "locked"
    with pytest.raises(ForbiddenError):
        call(service.verify_pickup, trade.buyer, oid, pin, now=now)

    offer = call(service.verify_pickup, trade.seller, oid, pin, now=now)
    assert offer.status == "completed"
    assert offer.receipt_number
    db.expire_all()
    assert db.get(Listing, trade.listing.id).status == "sold"
    item = db.get(Listing, trade.item.id)
    assert item.status == "active" and item.quantity == 1


def test_listing_cannot_be_sold_twice(db, call, trade, make_user, now):
    other = make_user(name="Second buyer")
    first = _offer(call, trade, now).id
    second = call(service.create_offer, other, trade.listing.id, offered_cash_cents=6000, now=now).id
    call(service.accept_offer, trade.seller, first, now=now)
    call(service.accept_offer, trade.seller, second, now=now)

    call(service.confirm_trade, trade.buyer, first, now=now)
    assert call(service.confirm_trade, trade.seller, first, now=now).status == "completed"

    call(service.confirm_trade, other, second, now=now)
    with pytest.raises(InvalidStateError) as ei:
        call(service.confirm_trade, trade.seller, second, now=now)
    assert ei.value.code == "listing_closed"
    assert _status(db, second) == "accepted"
    assert db.get(Listing, trade.listing.id).status == "sold"


def test_completion_needs_offered_stock(db, call, trade, now):
    offer = _offer(call, trade, now, cash=0, items=[service.ItemTerm(trade.item.id, 2)])
    call(service.accept_offer, trade.seller, offer.id, now=now)
    item = db.get(Listing, trade.item.id)
    item.quantity = 1
    db.commit()
    call(service.confirm_trade, trade.buyer, offer.id, now=now)
    with pytest.raises(InvalidStateError) as ei:
        call(service.confirm_trade, trade.seller, offer.id, now=now)
    assert ei.value.code == "listing_closed"
    assert _status(db, offer.id) == "accepted"
    db.expire_all()
    assert db.get(Listing, trade.listing.id).status == "active"


def test_receipt_only_after_completion(call, trade, now):
    offer = _offer(call, trade, now)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    with pytest.raises(InvalidStateError):
        call(service.get_receipt, trade.buyer, oid, now=now)
    call(service.confirm_trade, trade.buyer, oid, now=now)
    call(service.confirm_trade, trade.seller, oid, now=now)
    receipt = call(service.get_receipt, trade.seller, oid, now=now)
    assert receipt["receipt_number"].startswith("BW-")
    assert receipt["listing_title"] == "iPhone 12"
    assert receipt["offered_cash_cents"] == 5000


# --- disputes -------------------------------------------------------------


def test_dispute_and_admin_cancel(db, call, trade, make_user, now):
    admin = make_user(role="admin")
    offer = _offer(call, trade, now)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    with pytest.raises(ValidationError):
        call(service.raise_dispute, trade.buyer, oid, "   ", now=now)
    offer = call(service.raise_dispute, trade.buyer, oid, "Item was not as described", now=now)
    assert offer.status == "disputed"
    assert offer.dispute_status == "opened"
    assert offer.disputed_by_id == trade.buyer.id

    with pytest.raises(ForbiddenError):
        call(service.resolve_dispute, trade.seller, oid, "complete", now=now)
    with pytest.raises(ValidationError):
        call(service.resolve_dispute, admin, oid, "refund", now=now)
    offer = call(service.resolve_dispute, admin, oid, "cancel", note="refund agreed", now=now)
    assert offer.status == "cancelled"
    assert offer.dispute_status == "resolved"
    assert offer.resolution == "cancelled"


def test_admin_cannot_complete_with_unpaid_downpayment(call, trade, set_brand, make_user, now):
    admin = make_user(role="admin")
    set_brand(trade.seller, require_downpayment=True, downpayment_value=500)
    offer = _offer(call, trade, now)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    call(service.raise_dispute, trade.seller, oid, "Buyer never paid", now=now)
    with pytest.raises(InvalidStateError):
        call(service.resolve_dispute, admin, oid, "complete", now=now)


def test_unverified_party_cannot_dispute(call, trade, make_user, now):
    buyer = make_user(verified=False)
    offer = call(service.create_offer, buyer, trade.listing.id, offered_cash_cents=100, now=now)
    call(service.accept_offer, trade.seller, offer.id, now=now)
    with pytest.raises(ForbiddenError):
        call(service.raise_dispute, buyer, offer.id, "no show", now=now)


# --- timers ---------------------------------------------------------------


def test_lazy_expiry_on_read_and_mutation(db, call, trade, now):
    offer = _offer(call, trade, now)
    oid = offer.id
    later = now + timedelta(minutes=61)
    with pytest.raises(InvalidStateError):
        call(service.accept_offer, trade.seller, oid, now=later)
    offer = call(service.get_offer, trade.buyer, oid, now=later)
    assert offer.status == "expired"
    assert offer.timer_expires_at is None
    assert db.query(Notification).filter_by(user_id=trade.buyer.id, type="OFFER_EXPIRED").count() == 1


def test_admin_list_settles_overdue_offers(db, call, trade, make_user, now):
    admin = make_user(role="admin")
    oid = _offer(call, trade, now).id
    later = now + timedelta(minutes=61)
    pending = call(service.list_offers_admin, admin, status="pending", now=later)
    assert oid not in [o.id for o in pending]
    assert all(o.status == "pending" for o in pending)
    assert _status(db, oid) == "expired"
    with pytest.raises(ValidationError):
        call(service.list_offers_admin, admin, status="bogus", now=later)
    with pytest.raises(ForbiddenError):
        call(service.list_offers_admin, trade.seller, now=later)


def test_paid_trade_never_expires(call, trade, set_brand, now):
    set_brand(trade.seller, require_downpayment=True, downpayment_value=1000)
    offer = _offer(call, trade, now)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=now)
    call(service.mark_downpayment_paid, trade.buyer, oid, now=now)
    offer = call(service.get_offer, trade.seller, oid, now=now + timedelta(days=30))
    assert offer.status == "accepted"


def test_sweep_warns_once_then_expires(db, call, trade):
    start = utcnow() + timedelta(days=3650)
    offer = _offer(call, trade, start)
    oid = offer.id

    counts = call(service.sweep_timers_once, start + timedelta(minutes=55))
    assert counts["warned"] >= 1
    assert db.query(Notification).filter_by(user_id=trade.seller.id, type="TIMER_WARNING").count() == 1
    call(service.sweep_timers_once, start + timedelta(minutes=56))
    assert db.query(Notification).filter_by(user_id=trade.seller.id, type="TIMER_WARNING").count() == 1

    counts = call(service.sweep_timers_once, start + timedelta(minutes=61))
    assert counts["expired"] >= 1
    assert _status(db, oid) == "expired"


def test_sweep_escalates_missed_meetup(db, call, trade):
    start = utcnow() + timedelta(days=7300)
    offer = _offer(call, trade, start)
    oid = offer.id
    call(service.accept_offer, trade.seller, oid, now=start)
    call(service.lock_deal, trade.seller, oid, now=start)
    call(service.sweep_timers_once, start + timedelta(hours=169))
    db.expire_all()
    offer = db.get(Offer, oid)
    assert offer.status == "disputed"
    assert offer.dispute_status == "opened"
    assert offer.disputed_by_id is None


# --- brand settings -------------------------------------------------------


def test_brand_settings_defaults_and_update(call, make_user):
    seller = make_user()
    brand = call(service.get_brand_settings, seller)
    assert (brand.require_downpayment, brand.downpayment_type, brand.downpayment_value, brand.default_timer_duration) == (False, "FIXED", 0, 60)

    brand = call(service.update_brand_settings, seller, require_downpayment=True, downpayment_type="percentage", downpayment_value=25)
    assert brand.downpayment_type == "PERCENTAGE"
    assert brand.downpayment_value == 25
    assert call(service.get_brand_settings, seller).require_downpayment is True

    with pytest.raises(ValidationError):
        call(service.update_brand_settings, seller, downpayment_value=60)
    with pytest.raises(ValidationError):
        call(service.update_brand_settings, seller, default_timer_duration=5)
    assert call(service.get_brand_settings, seller).downpayment_value == 25


# --- optimistic concurrency -----------------------------------------------


def test_stale_write_raises_conflict(call, trade, now):
    offer = _offer(call, trade, now)
    oid = offer.id
    other = SessionLocal()
    try:
        stale = other.get(Offer, oid)
        call(service.reject_offer, trade.seller, oid, now=now)
        stale.message = "late edit"
        with pytest.raises(ConflictError):
            service.persist_transition(other, stale, now, "edit")
        other.rollback()
    finally:
        other.close()


def test_caller_from_user_reads_flags(db, make_user):
    admin = make_user(role="admin", verified=False)
    assert isinstance(admin, Caller)
    assert admin.is_admin and not admin.is_verified

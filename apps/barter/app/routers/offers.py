from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import service
from ..auth import get_caller
from ..database import get_db
from ..lifecycle import BUYER, Caller, allowed_operations, awaited_party_id, effective_status, role_of, NEGOTIATING
from ..models import Offer, utcnow
from ..schemas import (
    OfferCreateIn, CounterOfferIn, VerifyPickupIn, DisputeIn,
    OfferOut, OffersListOut, OfferItemOut, RevisionOut, RevisionsListOut, ReceiptOut,
)


router = APIRouter(prefix="/barter/offers", tags=["offers"])


def _items(payload_items) -> list[service.ItemTerm] | None:
    if payload_items is None:
        return None
    return [service.ItemTerm(i.listing_id, i.quantity) for i in payload_items]


def _to_out(o: Offer, caller: Caller, now: datetime) -> OfferOut:
    status = effective_status(o, now)
    return OfferOut(
        id=str(o.id),
        listing_id=str(o.listing_id),
        buyer_user_id=str(o.buyer_user_id),
        seller_user_id=str(o.seller_user_id),
        status=status.value,
        currency_code=o.currency_code,
        offered_cash_cents=o.offered_cash_cents,
        offered_items=[OfferItemOut(listing_id=str(i.listing_id), quantity=i.quantity) for i in o.items],
        message=o.message,
        round=o.round,
        awaiting_user_id=str(awaited_party_id(o)) if status in NEGOTIATING else None,
        downpayment_status=o.downpayment_status,
        downpayment_cents=o.downpayment_cents,
        timer_expires_at=o.timer_expires_at,
        timer_extensions=o.timer_extensions,
        buyer_confirmed_at=o.buyer_confirmed_at,
        seller_confirmed_at=o.seller_confirmed_at,
        pickup_pin=o.pickup_pin if role_of(o, caller.id) == BUYER else None,
        locked_at=o.locked_at,
        dispute_status=o.dispute_status,
        dispute_reason=o.dispute_reason,
        resolution=o.resolution,
        receipt_number=o.receipt_number,
        completed_at=o.completed_at,
        allowed_operations=allowed_operations(o, caller, now),
        created_at=o.created_at,
        updated_at=o.updated_at,
    )


@router.post("", response_model=OfferOut)
def create_offer(payload: OfferCreateIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    o = service.create_offer(
        db, caller, payload.target_listing_id,
        offered_items=_items(payload.offered_items),
        offered_cash_cents=payload.offered_cash_cents,
        message=payload.message,
        currency_code=payload.currency_code,
        now=now,
    )
    return _to_out(o, caller, now)


@router.get("", response_model=OffersListOut)
def list_offers(type: str | None = None, status: str | None = None, listing_id: str | None = None, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    rows = service.list_offers(db, caller, type=type, status=status, listing_id=listing_id, now=now)
    return OffersListOut(offers=[_to_out(o, caller, now) for o in rows])


@router.get("/{offer_id}", response_model=OfferOut)
def get_offer(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.get_offer(db, caller, offer_id, now=now), caller, now)


@router.get("/{offer_id}/revisions", response_model=RevisionsListOut)
def list_revisions(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    revs = service.list_revisions(db, caller, offer_id)
    return RevisionsListOut(revisions=[
        RevisionOut(
            round=r.round,
            proposer_id=str(r.proposer_id),
            offered_cash_cents=r.offered_cash_cents,
            offered_items=[OfferItemOut(**i) for i in (r.items or [])],
            message=r.message,
            created_at=r.created_at,
        )
        for r in revs
    ])


@router.post("/{offer_id}/counter", response_model=OfferOut)
def counter_offer(offer_id: str, payload: CounterOfferIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    o = service.counter_offer(
        db, caller, offer_id,
        offered_items=_items(payload.offered_items),
        offered_cash_cents=payload.offered_cash_cents,
        message=payload.message,
        now=now,
    )
    return _to_out(o, caller, now)


@router.patch("/{offer_id}/accept", response_model=OfferOut)
def accept_offer(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.accept_offer(db, caller, offer_id, now=now), caller, now)


@router.patch("/{offer_id}/reject", response_model=OfferOut)
def reject_offer(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.reject_offer(db, caller, offer_id, now=now), caller, now)


@router.patch("/{offer_id}/cancel", response_model=OfferOut)
def cancel_offer(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.cancel_offer(db, caller, offer_id, now=now), caller, now)


@router.patch("/{offer_id}/extend", response_model=OfferOut)
def extend_timer(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.extend_timer(db, caller, offer_id, now=now), caller, now)


@router.patch("/{offer_id}/mark-paid", response_model=OfferOut)
def mark_downpayment_paid(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.mark_downpayment_paid(db, caller, offer_id, now=now), caller, now)


@router.patch("/{offer_id}/confirm-receipt", response_model=OfferOut)
def confirm_downpayment(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.confirm_downpayment(db, caller, offer_id, now=now), caller, now)


@router.post("/{offer_id}/confirm", response_model=OfferOut)
def confirm_trade(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.confirm_trade(db, caller, offer_id, now=now), caller, now)


@router.post("/{offer_id}/lock", response_model=OfferOut)
def lock_deal(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.lock_deal(db, caller, offer_id, now=now), caller, now)


@router.post("/{offer_id}/verify-pickup", response_model=OfferOut)
def verify_pickup(offer_id: str, payload: VerifyPickupIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.verify_pickup(db, caller, offer_id, payload.pin, now=now), caller, now)


@router.post("/{offer_id}/dispute", response_model=OfferOut)
def raise_dispute(offer_id: str, payload: DisputeIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    now = utcnow()
    return _to_out(service.raise_dispute(db, caller, offer_id, payload.reason, now=now), caller, now)


@router.get("/{offer_id}/receipt", response_model=ReceiptOut)
def get_receipt(offer_id: str, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return ReceiptOut(**service.get_receipt(db, caller, offer_id))

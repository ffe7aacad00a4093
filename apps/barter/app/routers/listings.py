from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import settings
from ..database import get_db
from ..errors import NotFoundError, ValidationError
from ..models import User, Listing
from ..schemas import ListingCreateIn, ListingOut, ListingsListOut
from ..service import parse_id


router = APIRouter(prefix="/listings", tags=["listings"])


def _to_out(l: Listing) -> ListingOut:
    return ListingOut(
        id=str(l.id),
        seller_user_id=str(l.seller_user_id),
        title=l.title,
        description=l.description,
        price_cents=l.price_cents,
        currency_code=l.currency_code,
        quantity=l.quantity,
        allow_barter=l.allow_barter,
        allow_cash_plus_barter=l.allow_cash_plus_barter,
        open_to_offers=l.open_to_offers,
        status=l.status,
    )


@router.post("", response_model=ListingOut)
def create_listing(payload: ListingCreateIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    currency = (payload.currency_code or settings.DEFAULT_CURRENCY).upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency_code must be a 3-letter ISO code")
    l = Listing(
        seller_user_id=user.id,
        title=payload.title,
        description=payload.description,
        price_cents=payload.price_cents,
        currency_code=currency,
        quantity=payload.quantity,
        allow_barter=payload.allow_barter,
        allow_cash_plus_barter=payload.allow_cash_plus_barter,
        status="active",
    )
    db.add(l)
    db.flush()
    return _to_out(l)


@router.get("", response_model=ListingsListOut)
def browse(db: Session = Depends(get_db)):
    rows = db.query(Listing).filter(Listing.status == "active").order_by(Listing.created_at.desc()).limit(100).all()
    return ListingsListOut(listings=[_to_out(l) for l in rows])


@router.get("/mine", response_model=ListingsListOut)
def my_listings(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = db.query(Listing).filter(Listing.seller_user_id == user.id).order_by(Listing.created_at.desc()).all()
    return ListingsListOut(listings=[_to_out(l) for l in rows])


@router.get("/{listing_id}", response_model=ListingOut)
def get_listing(listing_id: str, db: Session = Depends(get_db)):
    l = db.get(Listing, parse_id(listing_id, "Listing"))
    if l is None:
        raise NotFoundError("Listing not found")
    return _to_out(l)

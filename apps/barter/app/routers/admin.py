from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import service
from ..auth import get_admin_caller, require_admin
from ..database import get_db
from ..errors import NotFoundError, ValidationError
from ..lifecycle import Caller
from ..models import User, utcnow
from ..schemas import OffersListOut, OfferOut, ResolveDisputeIn, RoleIn, UserOut
from ..utils.audit import record_event
from .offers import _to_out


router = APIRouter(prefix="/admin", tags=["admin"])


def _user_out(u: User) -> UserOut:
    return UserOut(id=str(u.id), phone=u.phone, name=u.name, role=u.role, is_verified=bool(u.is_verified))


@router.get("/offers", response_model=OffersListOut)
def list_offers(status: str | None = None, caller: Caller = Depends(get_admin_caller), db: Session = Depends(get_db)):
    now = utcnow()
    rows = service.list_offers_admin(db, caller, status=status, now=now)
    return OffersListOut(offers=[_to_out(o, caller, now) for o in rows])


@router.post("/offers/{offer_id}/resolve", response_model=OfferOut)
def resolve_dispute(offer_id: str, payload: ResolveDisputeIn, caller: Caller = Depends(get_admin_caller), db: Session = Depends(get_db)):
    now = utcnow()
    o = service.resolve_dispute(db, caller, offer_id, payload.outcome, note=payload.note, now=now)
    return _to_out(o, caller, now)


def _load_user(db: Session, user_id: str) -> User:
    u = db.get(User, service.parse_id(user_id, "User"))
    if u is None:
        raise NotFoundError("User not found")
    return u


@router.post("/users/{user_id}/verify", response_model=UserOut)
def verify_user(user_id: str, _: None = Depends(require_admin), db: Session = Depends(get_db)):
    u = _load_user(db, user_id)
    u.is_verified = True
    db.flush()
    record_event(db, "admin.user_verified", u.id)
    return _user_out(u)


@router.post("/users/{user_id}/role", response_model=UserOut)
def set_role(user_id: str, payload: RoleIn, _: None = Depends(require_admin), db: Session = Depends(get_db)):
    if payload.role not in ("user", "admin"):
        raise ValidationError("role must be 'user' or 'admin'")
    u = _load_user(db, user_id)
    u.role = payload.role
    db.flush()
    record_event(db, "admin.user_role", u.id, {"role": payload.role})
    return _user_out(u)

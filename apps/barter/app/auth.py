import hashlib
import secrets
import uuid
from datetime import datetime, timezone

import jwt
from fastapi import Depends, HTTPException, status, Header
from sqlalchemy.orm import Session

from barterwave_shared import normalize_phone_e164
from .config import settings
from .database import get_db
from .errors import ForbiddenError
from .lifecycle import Caller
from .models import User


def _make_token(user_id: str, phone: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "phone": phone,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_delta).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def _verify_dev_otp(phone: str, otp: str) -> bool:
    if settings.ENV.lower() == "dev" and settings.OTP_MODE.lower() == "dev":
        return otp == "123456"
    return False


def ensure_user(db: Session, phone: str, name: str | None) -> User:
    phone = normalize_phone_e164(phone)
    u = db.query(User).filter(User.phone == phone).one_or_none()
    if u is None:
        u = User(phone=phone, name=name or None)
        db.add(u)
        db.flush()
    return u


def get_current_user(authorization: str | None = Header(default=None, alias="Authorization"), db: Session = Depends(get_db)) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
        uid = uuid.UUID(str(payload.get("sub")))
    except (jwt.PyJWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    u = db.get(User, uid)
    if u is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return u


def get_caller(user: User = Depends(get_current_user)) -> Caller:
    return Caller.from_user(user)


def get_admin_caller(user: User = Depends(get_current_user)) -> Caller:
    caller = Caller.from_user(user)
    if not caller.is_admin:
        raise ForbiddenError("Admin only")
    return caller


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    """Operator token for user management (plain list or SHA-256 digests)."""
    incoming = x_admin_token or ""
    for candidate in [t.strip() for t in (settings.ADMIN_TOKEN or "").split(",") if t.strip()]:
        if secrets.compare_digest(incoming, candidate):
            return
    digest = hashlib.sha256(incoming.encode()).hexdigest().lower()
    for h in settings.admin_token_hashes:
        if secrets.compare_digest(digest, h):
            return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token invalid")

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from barterwave_shared import mask_phone, normalize_phone_e164
from ..auth import _make_token, _verify_dev_otp, ensure_user, get_current_user
from ..config import settings
from ..database import get_db
from ..models import User
from ..schemas import RequestOtpIn, VerifyOtpIn, TokenOut, UserOut


router = APIRouter(prefix="/auth", tags=["auth"])
log = logging.getLogger("barter.auth")


@router.post("/request_otp")
def request_otp(payload: RequestOtpIn):
    phone = normalize_phone_e164(payload.phone)
    if not phone.startswith("+"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid phone")
    log.info("otp requested phone=%s", mask_phone(phone))
    response = {"detail": "OTP sent"}
    if settings.OTP_MODE == "dev":
        response["dev_code"] = "123456"
    return response


@router.post("/verify_otp", response_model=TokenOut)
def verify_otp(payload: VerifyOtpIn, db: Session = Depends(get_db)):
    phone = normalize_phone_e164(payload.phone)
    if not _verify_dev_otp(phone, payload.otp):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OTP")
    user = ensure_user(db, phone, payload.name)
    return TokenOut(access_token=_make_token(str(user.id), user.phone))


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return UserOut(id=str(user.id), phone=user.phone, name=user.name, role=user.role, is_verified=bool(user.is_verified))

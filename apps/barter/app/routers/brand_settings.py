from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import service
from ..auth import get_caller
from ..database import get_db
from ..lifecycle import Caller
from ..schemas import BrandSettingsIn, BrandSettingsOut


router = APIRouter(prefix="/barter/brand-settings", tags=["brand-settings"])


def _to_out(b) -> BrandSettingsOut:
    return BrandSettingsOut(
        require_downpayment=bool(b.require_downpayment),
        downpayment_type=b.downpayment_type,
        downpayment_value=int(b.downpayment_value),
        default_timer_duration=int(b.default_timer_duration),
    )


@router.get("", response_model=BrandSettingsOut)
def get_brand_settings(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    return _to_out(service.get_brand_settings(db, caller))


@router.patch("", response_model=BrandSettingsOut)
def update_brand_settings(payload: BrandSettingsIn, caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    b = service.update_brand_settings(db, caller, **payload.model_dump())
    return _to_out(b)

# barter
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RequestOtpIn(BaseModel):
    phone: str


class VerifyOtpIn(BaseModel):
    phone: str
    otp: str
    name: Optional[str] = None


class ListingCreateIn(BaseModel):
    title: str = Field(min_length=1, max_length=128)
    description: Optional[str] = Field(default=None, max_length=2048)
    price_cents: int = Field(ge=0)
    currency_code: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    allow_barter: bool = True
    allow_cash_plus_barter: bool = False


class ListingOut(BaseModel):
    id: str
    seller_user_id: str
    title: str
    description: Optional[str] = None
    price_cents: int
    currency_code: str
    quantity: int
    allow_barter: bool
    allow_cash_plus_barter: bool
    open_to_offers: bool
    status: str


class ListingsListOut(BaseModel):
    listings: List[ListingOut]


class OfferItemIn(BaseModel):
    listing_id: str
    quantity: int = 1


class OfferItemOut(BaseModel):
    listing_id: str
    quantity: int


class OfferCreateIn(BaseModel):
    target_listing_id: str
    offered_items: List[OfferItemIn] = []
    offered_cash_cents: int = 0
    currency_code: Optional[str] = None
    message: Optional[str] = None


class CounterOfferIn(BaseModel):
    offered_items: Optional[List[OfferItemIn]] = None
    offered_cash_cents: Optional[int] = None
    message: Optional[str] = None


class VerifyPickupIn(BaseModel):
    pin: str


class DisputeIn(BaseModel):
    reason: str


class ResolveDisputeIn(BaseModel):
    outcome: str  # complete|cancel
    note: Optional[str] = None


class OfferOut(BaseModel):
    id: str
    listing_id: str
    buyer_user_id: str
    seller_user_id: str
    status: str
    currency_code: str
    offered_cash_cents: int
    offered_items: List[OfferItemOut]
    message: Optional[str] = None
    round: int
    awaiting_user_id: Optional[str] = None
    downpayment_status: str
    downpayment_cents: int
    timer_expires_at: Optional[datetime] = None
    timer_extensions: int
    buyer_confirmed_at: Optional[datetime] = None
    seller_confirmed_at: Optional[datetime] = None
    # only ever filled in for the buyer
    pickup_pin: Optional[str] = None
    locked_at: Optional[datetime] = None
    dispute_status: str
    dispute_reason: Optional[str] = None
    resolution: Optional[str] = None
    receipt_number: Optional[str] = None
    completed_at: Optional[datetime] = None
    allowed_operations: List[str] = []
    created_at: datetime
    updated_at: datetime


class OffersListOut(BaseModel):
    offers: List[OfferOut]


class RevisionOut(BaseModel):
    round: int
    proposer_id: str
    offered_cash_cents: int
    offered_items: List[OfferItemOut]
    message: Optional[str] = None
    created_at: datetime


class RevisionsListOut(BaseModel):
    revisions: List[RevisionOut]


class ReceiptItemOut(BaseModel):
    listing_id: str
    title: str
    quantity: int


class ReceiptOut(BaseModel):
    receipt_number: str
    offer_id: str
    listing_id: str
    listing_title: str
    buyer_user_id: str
    seller_user_id: str
    currency_code: str
    offered_cash_cents: int
    offered_items: List[ReceiptItemOut]
    downpayment_cents: int
    completed_at: datetime


class BrandSettingsIn(BaseModel):
    require_downpayment: Optional[bool] = None
    downpayment_type: Optional[str] = None
    downpayment_value: Optional[int] = None
    default_timer_duration: Optional[int] = None


class BrandSettingsOut(BaseModel):
    require_downpayment: bool
    downpayment_type: str
    downpayment_value: int
    default_timer_duration: int


class NotificationOut(BaseModel):
    id: str
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    read_at: Optional[datetime] = None
    created_at: datetime


class NotificationsListOut(BaseModel):
    notifications: List[NotificationOut]


class RoleIn(BaseModel):
    role: str  # user|admin


class UserOut(BaseModel):
    id: str
    phone: str
    name: Optional[str] = None
    role: str
    is_verified: bool

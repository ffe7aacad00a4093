from .errors import ValidationError
from .lifecycle import DownpaymentStatus


FIXED = "FIXED"
PERCENTAGE = "PERCENTAGE"
MAX_PERCENTAGE = 50
TIMER_MIN_MINUTES = 10
TIMER_MAX_MINUTES = 1440


def compute_downpayment(brand, price_cents: int) -> tuple[DownpaymentStatus, int]:
    """Downpayment state and amount an accepted offer starts with.

    ``brand`` is a BrandSettings row or None (seller never configured one).
    A computed amount of zero means nothing is owed.
    """
    if brand is None or not brand.require_downpayment:
        return DownpaymentStatus.NONE, 0
    value = int(brand.downpayment_value or 0)
    if brand.downpayment_type == PERCENTAGE:
        cents = int(round(max(0, price_cents) * value / 100.0))
    else:
        cents = value
    if cents <= 0:
        return DownpaymentStatus.NONE, 0
    return DownpaymentStatus.AWAITING_PAYMENT, cents


def validate_brand_settings(downpayment_type: str, downpayment_value: int, timer_minutes: int) -> None:
    if downpayment_type not in (FIXED, PERCENTAGE):
        raise ValidationError("downpayment_type must be FIXED or PERCENTAGE")
    if downpayment_value < 0:
        raise ValidationError("downpayment_value must be >= 0")
    if downpayment_type == PERCENTAGE and downpayment_value > MAX_PERCENTAGE:
        raise ValidationError(f"Percentage downpayment cannot exceed {MAX_PERCENTAGE}%")
    if not TIMER_MIN_MINUTES <= timer_minutes <= TIMER_MAX_MINUTES:
        raise ValidationError(f"default_timer_duration must be between {TIMER_MIN_MINUTES} and {TIMER_MAX_MINUTES} minutes")

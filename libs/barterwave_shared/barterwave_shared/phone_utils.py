import re


def normalize_phone_e164(phone: str, default_country_code: str = "+234") -> str:
    """Normalize phone numbers to a basic E.164 form.

    Local numbers with a leading zero get the default country code (Nigeria);
    falls back to the digits as given if we cannot infer.
    """
    if not phone:
        return ""
    raw = re.sub(r"[^\d+]", "", phone)
    if raw.startswith("+"):
        return raw
    if raw.startswith("00"):
        return "+" + raw[2:]
    if raw.startswith("0") and len(raw) >= 9 and default_country_code.startswith("+"):
        # 0803xxxxxxx -> +234803xxxxxxx
        return default_country_code + raw[1:]
    return raw


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    normalized = normalize_phone_e164(phone)
    if len(normalized) <= visible_digits:
        return normalized
    return "*" * (len(normalized) - visible_digits) + normalized[-visible_digits:]

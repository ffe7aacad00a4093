import uuid


def unique_phone(prefix: str = "0803", digits: int = 7) -> str:
    """Return a unique Nigerian-style phone number in E.164 form."""
    suffix = str(uuid.uuid4().int % (10 ** digits)).zfill(digits)
    if prefix.startswith("+"):
        return f"{prefix}{suffix}"
    return f"+234{prefix.lstrip('0')}{suffix}"

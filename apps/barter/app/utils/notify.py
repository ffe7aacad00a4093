from typing import Any, Dict

from sqlalchemy.orm import Session

from ..models import Notification
from .events import publish


def notify(db: Session, user_id, type: str, title: str, message: str, data: Dict[str, Any] | None = None) -> Notification:
    n = Notification(user_id=user_id, type=type, title=title, message=message, data=data or {})
    db.add(n)
    publish("notification." + type.lower(), {"user_id": str(user_id), "title": title, **(data or {})})
    return n

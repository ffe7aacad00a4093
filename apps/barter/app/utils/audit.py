from typing import Optional, Dict, Any
from sqlalchemy.orm import Session
from ..models import AuditEvent
from .events import publish


def record_event(db: Session, type: str, user_id, data: Optional[Dict[str, Any]] = None) -> AuditEvent:
    """Append an audit row in the caller's transaction and publish it.

    The row commits or rolls back together with the change it describes.
    """
    ev = AuditEvent(type=type, user_id=user_id, data=data or {})
    db.add(ev)
    publish(type, {"user_id": str(user_id) if user_id else None, **(data or {})})
    return ev

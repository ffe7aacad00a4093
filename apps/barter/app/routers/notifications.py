from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..errors import NotFoundError
from ..models import Notification, User, utcnow
from ..schemas import NotificationOut, NotificationsListOut
from ..service import parse_id


router = APIRouter(prefix="/notifications", tags=["notifications"])


def _to_out(n: Notification) -> NotificationOut:
    return NotificationOut(id=str(n.id), type=n.type, title=n.title, message=n.message, data=n.data, read_at=n.read_at, created_at=n.created_at)


@router.get("", response_model=NotificationsListOut)
def list_notifications(unread_only: bool = False, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    q = db.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        q = q.filter(Notification.read_at.is_(None))
    rows = q.order_by(Notification.created_at.desc()).limit(100).all()
    return NotificationsListOut(notifications=[_to_out(n) for n in rows])


@router.post("/{notification_id}/read", response_model=NotificationOut)
def mark_read(notification_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    n = db.get(Notification, parse_id(notification_id, "Notification"))
    if n is None or n.user_id != user.id:
        raise NotFoundError("Notification not found")
    if n.read_at is None:
        n.read_at = utcnow()
        db.flush()
    return _to_out(n)

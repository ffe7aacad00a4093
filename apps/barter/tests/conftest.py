import os
import tempfile


# Ensure sensible defaults for tests before app import
_TMP_DIR = tempfile.mkdtemp(prefix="barter-tests-")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'barter.db')}")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("OTP_MODE", "dev")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("EVENT_SINK", "log")
os.environ.setdefault("TIMER_SWEEP_INTERVAL_SECS", "0")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("ADMIN_TOKEN", "test_admin")

import pytest  # noqa: E402

from app.database import SessionLocal, engine  # noqa: E402
from app.lifecycle import Caller  # noqa: E402
from app.models import Base, BrandSettings, Listing, User  # noqa: E402
from .utils import unique_phone  # noqa: E402


Base.metadata.create_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def call(db):
    """Run a service operation the way a request does: commit on success, roll back on error."""
    def _call(fn, *args, **kwargs):
        try:
            out = fn(db, *args, **kwargs)
            db.commit()
            return out
        except Exception:
            db.rollback()
            raise
    return _call


@pytest.fixture
def make_user(db):
    def _make(verified: bool = True, role: str = "user", name: str = "Test") -> Caller:
        u = User(phone=unique_phone(), name=name, role=role, is_verified=verified)
        db.add(u)
        db.commit()
        return Caller.from_user(u)
    return _make


@pytest.fixture
def make_listing(db):
    def _make(seller: Caller, **kw) -> Listing:
        values = {
            "title": "iPhone 12",
            "price_cents": 50_000_00,
            "currency_code": "NGN",
            "quantity": 1,
            "allow_barter": True,
            "allow_cash_plus_barter": True,
            "status": "active",
        }
        values.update(kw)
        listing = Listing(seller_user_id=seller.id, **values)
        db.add(listing)
        db.commit()
        return listing
    return _make


@pytest.fixture
def set_brand(db):
    def _set(user: Caller, **kw) -> BrandSettings:
        values = {"require_downpayment": False, "downpayment_type": "FIXED", "downpayment_value": 0, "default_timer_duration": 60}
        values.update(kw)
        brand = BrandSettings(user_id=user.id, **values)
        db.add(brand)
        db.commit()
        return brand
    return _set

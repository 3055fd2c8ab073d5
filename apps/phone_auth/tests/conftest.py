import os
import re
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[3]
_SHARED_PATH = _ROOT / "libs" / "phoneguard_shared"
if _SHARED_PATH.exists():
    sys.path.insert(0, str(_SHARED_PATH))
sys.path.insert(0, str(_ROOT / "apps" / "phone_auth"))


# Configure settings before the app is imported
os.environ["ENV"] = "dev"
os.environ["DB_URL"] = "sqlite:///:memory:"
os.environ["AUTO_CREATE_SCHEMA"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "db"
os.environ["REQUIRE_RECAPTCHA"] = "false"
os.environ["INITIATE_LIMIT_PER_DAY"] = "0"
os.environ["OTP_SWEEP_INTERVAL_SECS"] = "0"
os.environ["OTP_DEV_ECHO"] = "false"
os.environ["OTP_SMS_PROVIDER"] = "log"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["JWT_SECRET"] = "test-secret-which-is-long-enough"
os.environ["BLOCK_DAY_TZ"] = "UTC"


class FakeClock:
    """Manually advanced clock; starts at noon UTC so day rollovers are explicit."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 10, 12, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, **kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class RecordingSms:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, phone: str, message: str) -> None:
        from phoneguard_shared import SmsDeliveryError

        if self.fail:
            raise SmsDeliveryError("gateway unavailable")
        self.sent.append((phone, message))

    def last_code(self, phone: str | None = None) -> str:
        for to, message in reversed(self.sent):
            if phone is None or to == phone:
                return re.search(r"\d{6}", message).group(0)
        raise AssertionError(f"no SMS sent to {phone}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def session_factory():
    from app.database import SessionLocal, engine
    from app.models import Base

    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def api(session_factory, clock, sms):
    from app.main import create_app

    return create_app(clock=clock, session_factory=session_factory, sms_backend=sms)


@pytest.fixture
def client(api):
    from fastapi.testclient import TestClient

    with TestClient(api) as c:
        yield c


@pytest.fixture
def service(api):
    return api.state.auth_service

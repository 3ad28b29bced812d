from typing import List

import pytest

from issuetrack.config import Settings
from issuetrack.core.database import create_db_engine, create_session_factory, init_db
from issuetrack.core.errors import DeliveryError
from issuetrack.integrations.email_transport import EmailMessage
from issuetrack.models import User


class FakeEmailTransport:
    """Records messages; the first ``fail_times`` sends raise DeliveryError."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.attempts = 0
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> dict:
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise DeliveryError("smtp relay unavailable", provider_response={"code": 421})
        self.sent.append(message)
        return {"accepted": [message.to], "messageId": f"<{len(self.sent)}@test>"}


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def app_settings():
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite://",
        public_base_url="https://errors.example.com",
        admin_email=None,
    )


@pytest.fixture
def email_transport():
    return FakeEmailTransport()


@pytest.fixture
def add_user(session_factory):
    def _add(email, *, name=None, role="admin"):
        with session_factory() as db:
            user = User(email=email, name=name, role=role)
            db.add(user)
            db.commit()
            return user.id

    return _add


@pytest.fixture
def make_email_transport():
    return FakeEmailTransport

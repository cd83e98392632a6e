"""Pytest configuration and fixtures for the accounts backend tests."""

import os
import tempfile
from datetime import timedelta
from unittest.mock import patch

import pytest

# Point settings at a throwaway SQLite database before importing the app
_TMP_DIR = tempfile.mkdtemp(prefix="accounts-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP_DIR, "uploads")
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"  # nosec B105
os.environ["SMTP_HOST"] = ""

from fastapi.testclient import TestClient  # noqa: E402

from accounts.core.database import Base, SessionLocal, engine  # noqa: E402
from accounts.core.security import get_password_hash, issue_access_token  # noqa: E402
from accounts.core.verification import now_in_code_tz  # noqa: E402
from accounts.main import app  # noqa: E402
from accounts.models.user import User  # noqa: E402

TEST_PASSWORD = "secret123"  # nosec B105


class FakeClock:
    """Controllable replacement for now_in_code_tz."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="session", autouse=True)
def create_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(now_in_code_tz().replace(microsecond=0))


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def sent_codes():
    """Capture outgoing code emails instead of talking to SMTP. Maps email -> last code."""
    codes = {}

    def fake_send(to_email, code, purpose, expire_minutes=None):
        codes[to_email] = code

    with patch("accounts.services.verification.send_verification_code_email", side_effect=fake_send):
        yield codes


@pytest.fixture
def make_user(db):
    def _make(email="user@example.com", password=TEST_PASSWORD, nickname=None):
        user = User(
            email=email,
            hashed_password=get_password_hash(password),
            nickname=nickname or email,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def auth_header():
    def _header(user) -> dict:
        return {"Authorization": f"Bearer {issue_access_token(user.id, user.email)}"}

    return _header

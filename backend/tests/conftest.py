"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, List, Optional
from unittest.mock import Mock, patch

import pytest

# Test configuration must be in place before mailqueue.core.config is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RESEND_API_KEY"] = "re_test_key"
os.environ["SERVICE_ROLE_KEY"] = "test-service-key"
os.environ["EMAIL_WEBHOOK_URL"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mailqueue.main import app
from mailqueue.db.session import get_db
from mailqueue.models import Base, EmailQueueItem, EmailStatus
from mailqueue.services.email_service import EmailNetworkError, SendResult, parse_recipients
from mailqueue.services.webhook_trigger import TriggerResult


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"

SERVICE_TOKEN = "test-service-key"

# Fixed clock for tests that reason about backoff and staleness
FIXED_NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {SERVICE_TOKEN}"}


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('mailqueue.services.email_service.resend') as mock_resend:
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend


@pytest.fixture
def make_email(db_session: Session):
    """Insert a queue row with explicit bookkeeping fields"""

    def _make_email(
        created_at: datetime,
        recipient_email: str = RESEND_TEST_DELIVERED,
        status: str = EmailStatus.PENDING.value,
        retry_count: int = 0,
        max_retries: int = 3,
        retry_reserved: bool = False,
        scheduled_at: Optional[datetime] = None,
        next_retry_at: Optional[datetime] = None,
        last_attempt_at: Optional[datetime] = None,
        sent_at: Optional[datetime] = None,
        subject: str = "Task assigned",
        body: str = "<p>You have a new task.</p>",
    ) -> EmailQueueItem:
        email = EmailQueueItem(
            recipient_email=recipient_email,
            subject=subject,
            body=body,
            status=status,
            scheduled_at=scheduled_at or created_at,
            retry_count=retry_count,
            max_retries=max_retries,
            retry_reserved=retry_reserved,
            next_retry_at=next_retry_at,
            last_attempt_at=last_attempt_at,
            sent_at=sent_at,
            created_at=created_at,
            updated_at=created_at,
        )
        db_session.add(email)
        db_session.commit()
        db_session.refresh(email)
        return email

    return _make_email


class FakeSender:
    """Sender adapter stand-in: records calls, raises queued errors in order"""

    def __init__(self, errors: Optional[List[Exception]] = None):
        self.errors = list(errors or [])
        self.calls: List[str] = []

    def __call__(self, email) -> SendResult:
        self.calls.append(email.id)
        if self.errors:
            raise self.errors.pop(0)
        return SendResult(message_id=f"msg-{len(self.calls)}", recipients=parse_recipients(email.recipient_email))


class FakeTrigger:
    """Webhook trigger stand-in that never runs the processor"""

    def __init__(self, success: bool = False, reached: bool = True, error: str = "webhook unavailable"):
        self.result = TriggerResult(success=success, reached=reached, error=None if success else error)
        self.calls = []

    def trigger(self, email_id, retry_count=None, manual_trigger=False):
        self.calls.append((email_id, retry_count, manual_trigger))
        return self.result


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def failing_sender() -> FakeSender:
    return FakeSender(errors=[EmailNetworkError("Request failed: Read timed out") for _ in range(10)])


def minutes_ago(now: datetime, minutes: float) -> datetime:
    return now - timedelta(minutes=minutes)

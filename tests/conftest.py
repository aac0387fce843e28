"""
Pytest configuration and shared fixtures for tests
"""

import pytest
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, Mock
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from slotfill import db_models  # noqa: F401  registers tables
from slotfill.booking_api import BookingApiClient
from slotfill.config import WaitlistConfig
from slotfill.db_models import TimePreference
from slotfill.repositories import CustomerRepository, WaitlistRepository
from slotfill.services.notification_service import NotificationService

START = datetime(2025, 6, 2, 9, 0)


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def service_name(service_id: str) -> str:
    return f"Service {service_id}"


@pytest.fixture(name="db_engine")
def db_engine_fixture():
    """Create in-memory SQLite database engine for testing"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,  # Keep single connection for in-memory DB
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(name="db_session")
def db_session_fixture(db_engine):
    """Create database session for testing"""
    with Session(db_engine, expire_on_commit=False) as session:
        yield session
        session.rollback()  # Rollback any uncommitted changes after test


def make_session_factory(engine):
    """Drop-in replacement for get_session bound to a test engine"""

    @contextmanager
    def factory():
        session = Session(engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return factory


@pytest.fixture(name="session_factory")
def session_factory_fixture(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture(name="file_engine")
def file_engine_fixture(tmp_path):
    """SQLite file database, for tests that need real concurrent connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="file_session_factory")
def file_session_factory_fixture(file_engine):
    return make_session_factory(file_engine)


@pytest.fixture(name="config")
def config_fixture():
    """Configuration with explicit values, independent of the environment"""
    return WaitlistConfig(
        _env_file=None,
        telegram_bot_token=None,
        admin_telegram_id=42,
        max_date_skew_days=3,
        max_candidates=10,
        match_time_preference=False,
        booking_timeout_seconds=1,
    )


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="notifier")
def notifier_fixture():
    """Notification gateway that records every message and always delivers"""
    notifier = Mock(spec=NotificationService)
    notifier.sent = []

    async def send_many(messages):
        messages = list(messages)
        notifier.sent.extend(messages)
        return len(messages), 0

    notifier.send_many = AsyncMock(side_effect=send_many)
    notifier.send_admin_alert = AsyncMock()
    return notifier


@pytest.fixture(name="booking_client")
def booking_client_fixture():
    """Booking service that accepts every appointment"""
    client = Mock(spec=BookingApiClient)
    client.create_appointment.return_value = "appt-1"
    return client


@pytest.fixture(name="make_entry")
def make_entry_fixture(db_session):
    """Create a waitlist entry plus its customer's contact"""
    created = {"count": 0}

    def make_entry(
        customer_id: str,
        service_id: str = "grooming",
        requested_date: date = START.date(),
        priority: int = 0,
        time_preference: TimePreference = TimePreference.ANY,
        phone: str = None,
        telegram_chat_id: int = None,
        created_at: datetime = None,
    ):
        if created_at is None:
            # Distinct, increasing creation times keep ordering deterministic
            created["count"] += 1
            created_at = START - timedelta(days=30) + timedelta(minutes=created["count"])

        CustomerRepository(db_session).upsert_contact(
            customer_id,
            name=customer_id.title(),
            phone=phone,
            telegram_chat_id=telegram_chat_id,
        )
        return WaitlistRepository(db_session).create_entry(
            customer_id=customer_id,
            pet_id=f"pet-{customer_id}",
            service_id=service_id,
            requested_date=requested_date,
            time_preference=time_preference,
            priority=priority,
            created_at=created_at,
        )

    return make_entry

"""
Pytest configuration and fixtures for medreports tests.
"""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import medreports.models  # noqa: F401
from medreports.core.config import settings
from medreports.db.base import Base
from medreports.db.session import get_db
from medreports.main import app
from medreports.models.booking import Appointment, Doctor, Hospital, Payment, User
from medreports.schemas.common import Identity

TEST_DATABASE_URL = "sqlite+aiosqlite://"


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def output_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, Path]:
    """Send generated report and export files to a per-test directory."""
    dirs = {
        "reports": tmp_path / "reports",
        "exports": tmp_path / "exports",
        "report_exports": tmp_path / "report-exports",
    }
    monkeypatch.setattr(settings, "report_output_dir", str(dirs["reports"]))
    monkeypatch.setattr(settings, "export_output_dir", str(dirs["exports"]))
    monkeypatch.setattr(settings, "report_export_dir", str(dirs["report_exports"]))
    return dirs


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create an in-memory database per test function."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# =============================================================================
# Users
# =============================================================================


@pytest_asyncio.fixture
async def agent(db_session: AsyncSession) -> User:
    """Create a corporate agent."""
    user = User(name="Alex Agent", email="alex@agency.example", role="AGENT")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def other_agent(db_session: AsyncSession) -> User:
    """Create a second agent who owns nothing of the first agent's."""
    user = User(name="Blair Booker", email="blair@agency.example", role="AGENT")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def admin(db_session: AsyncSession) -> User:
    """Create an admin user."""
    user = User(name="Ada Admin", email="ada@portal.example", role="ADMIN")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def agent_identity(agent: User) -> Identity:
    return Identity(user_id=agent.id, role="AGENT")


@pytest.fixture
def other_identity(other_agent: User) -> Identity:
    return Identity(user_id=other_agent.id, role="AGENT")


@pytest.fixture
def admin_identity(admin: User) -> Identity:
    return Identity(user_id=admin.id, role="ADMIN")


@pytest.fixture
def agent_headers(agent: User) -> dict[str, str]:
    return {"X-User-Id": agent.id, "X-User-Role": "AGENT"}


@pytest.fixture
def other_headers(other_agent: User) -> dict[str, str]:
    return {"X-User-Id": other_agent.id, "X-User-Role": "AGENT"}


@pytest.fixture
def admin_headers(admin: User) -> dict[str, str]:
    return {"X-User-Id": admin.id, "X-User-Role": "ADMIN"}


# =============================================================================
# Booking data
# =============================================================================


@dataclass
class BookingData:
    hospitals: list[Hospital]
    doctors: list[Doctor]
    appointments: list[Appointment]
    payments: list[Payment]


@pytest_asyncio.fixture
async def booking_data(
    db_session: AsyncSession,
    agent: User,
    other_agent: User,
) -> BookingData:
    """
    Five appointments spread over the weeks of January 2024.

    | # | session    | doctor     | status    | amount | payment  |
    |---|------------|------------|-----------|--------|----------|
    | 1 | 2024-01-03 | cardiology | COMPLETED | 100.00 | PAID     |
    | 2 | 2024-01-10 | cardiology | CONFIRMED | 150.00 | PAID     |
    | 3 | 2024-01-17 | dermatology| CANCELLED |  80.00 | REFUNDED |
    | 4 | 2024-01-24 | dermatology| COMPLETED | 120.00 | PAID     |
    | 5 | 2024-01-31 | cardiology | NO_SHOW   |  90.00 | PENDING  |

    Appointments 1 and 3 belong to the same patient (same email).
    """
    city = Hospital(name="City General", city="Colombo")
    lakeside = Hospital(name="Lakeside Clinic", city="Kandy")
    db_session.add_all([city, lakeside])
    await db_session.flush()

    cardiologist = Doctor(
        name="Dr. Perera", email="perera@city.example", specialization="Cardiology",
        hospital_id=city.id,
    )
    dermatologist = Doctor(
        name="Dr. Silva", email="silva@lakeside.example", specialization="Dermatology",
        hospital_id=lakeside.id,
    )
    db_session.add_all([cardiologist, dermatologist])
    await db_session.flush()

    rows = [
        ("APT-001", "Alice", "alice@mail.example", "555-0001", cardiologist, city, agent,
         utc(2024, 1, 3, 10), "COMPLETED", "100.00", 5),
        ("APT-002", "Bob", "bob@mail.example", "555-0002", cardiologist, city, agent,
         utc(2024, 1, 10, 10), "CONFIRMED", "150.00", None),
        ("APT-003", "Alice", "alice@mail.example", "555-0001", dermatologist, lakeside,
         other_agent, utc(2024, 1, 17, 10), "CANCELLED", "80.00", None),
        ("APT-004", "Carol", "carol@mail.example", "555-0003", dermatologist, lakeside, agent,
         utc(2024, 1, 24, 10), "COMPLETED", "120.00", 4),
        ("APT-005", "Dan", None, "555-0004", cardiologist, city, other_agent,
         utc(2024, 1, 31, 10), "NO_SHOW", "90.00", None),
    ]
    appointments = []
    for number, name, email, phone, doctor, hospital, booker, session, status, amount, rating in rows:
        appointments.append(
            Appointment(
                appointment_number=number,
                patient_name=name,
                patient_email=email,
                patient_phone=phone,
                doctor_id=doctor.id,
                hospital_id=hospital.id,
                booked_by_id=booker.id,
                session_date=session,
                status=status,
                amount=Decimal(amount),
                rating=rating,
                created_at=session.replace(hour=8),
            )
        )
    db_session.add_all(appointments)
    await db_session.flush()

    payment_rows = [("PAID", "CARD"), ("PAID", "CASH"), ("REFUNDED", "CARD"), ("PAID", "CARD"), ("PENDING", "CARD")]
    payments = [
        Payment(
            appointment_id=appointment.id,
            processed_by_id=appointment.booked_by_id,
            amount=appointment.amount,
            status=status,
            payment_method=method,
            created_at=appointment.session_date,
        )
        for appointment, (status, method) in zip(appointments, payment_rows)
    ]
    db_session.add_all(payments)
    await db_session.commit()

    return BookingData(
        hospitals=[city, lakeside],
        doctors=[cardiologist, dermatologist],
        appointments=appointments,
        payments=payments,
    )


# =============================================================================
# Payloads
# =============================================================================


@pytest.fixture
def january_params() -> dict:
    """Report parameters covering January 2024, grouped by week."""
    return {"dateFrom": "2024-01-01", "dateTo": "2024-01-31", "groupBy": "week"}

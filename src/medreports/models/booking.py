"""
Booking data store models.

Read models for the records owned by the booking platform: portal users,
hospitals, doctors, appointments and payments. The reporting core only
queries these tables; their CRUD lives elsewhere.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from medreports.db.base import BaseModel, UTCDateTime


# =============================================================================
# Enums
# =============================================================================


class UserRole(str, Enum):
    """Portal user roles."""

    AGENT = "AGENT"
    SUPERVISOR = "SUPERVISOR"
    ADMIN = "ADMIN"
    VIEWER = "VIEWER"


# Roles that count as an agent in report filters
AGENT_ROLES = (UserRole.AGENT.value, UserRole.SUPERVISOR.value, UserRole.ADMIN.value)


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# =============================================================================
# Models
# =============================================================================


class User(BaseModel):
    """Portal user (agent, supervisor, admin)."""

    __tablename__ = "users"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserRole.AGENT.value, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Hospital(BaseModel):
    __tablename__ = "hospitals"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Hospital {self.name}>"


class Doctor(BaseModel):
    __tablename__ = "doctors"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    specialization: Mapped[str] = mapped_column(String(100), nullable=False)
    hospital_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("hospitals.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Doctor {self.name} ({self.specialization})>"


class Appointment(BaseModel):
    """A booked doctor session."""

    __tablename__ = "appointments"

    appointment_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    patient_phone: Mapped[str] = mapped_column(String(50), nullable=False)

    doctor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("doctors.id"), nullable=False, index=True
    )
    hospital_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("hospitals.id"), nullable=False, index=True
    )
    booked_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )

    session_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    # 1-5 patient feedback, null when not collected
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (Index("ix_appointments_booked_by_created", "booked_by_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<Appointment {self.appointment_number}>"


class Payment(BaseModel):
    __tablename__ = "payments"

    appointment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("appointments.id"), nullable=False, index=True
    )
    processed_by_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="CARD")

    def __repr__(self) -> str:
        return f"<Payment {self.amount} {self.status}>"

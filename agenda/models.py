"""
Database models for the scheduling core.

Tables:
    - businesses: service businesses (salons, clinics, workshops)
    - services: bookable services with duration and price
    - employees / employee_services: who can perform what
    - appointments / appointment_services: booked visits and their service sequence
    - business_closed_dates: dates the business closed after opening them
    - client_unblocks: operator overrides of the cancellation penalty

Appointments are never deleted; they only change status.
"""

import uuid
from datetime import date, datetime, time, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.db import Base
from .state_machine import AppointmentStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Business(Base):
    __tablename__ = "businesses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/Guayaquil")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allow_overlapping_appointments: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_monthly_cancellations: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    enable_cancellation_blocking: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    opens_at: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    closes_at: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Service(Base):
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("business_id", "name", name="uq_service_business_name"),)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class EmployeeService(Base):
    __tablename__ = "employee_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    service_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("services.id"), nullable=False, index=True)

    __table_args__ = (UniqueConstraint("employee_id", "service_id", name="uq_employee_service"),)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    client_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    walk_in_client_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    walk_in_client_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SqlEnum(AppointmentStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=AppointmentStatus.PENDING,
    )
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reschedule_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reschedule_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_appointment_business_client_status", "business_id", "client_id", "status"),
    )

    def is_active(self) -> bool:
        return self.status.blocks_time


class AppointmentService(Base):
    __tablename__ = "appointment_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("appointments.id"), nullable=False, index=True)
    service_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("services.id"), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("employees.id"), nullable=False, index=True)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Cleared when the appointment is cancelled so the slot frees up for the unique constraint
    active: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True, default=True)

    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "appointment_date",
            "start_time",
            "active",
            name="uq_appointment_service_employee_slot",
        ),
    )


class BusinessClosedDate(Base):
    __tablename__ = "business_closed_dates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    closed_date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("business_id", "closed_date", name="uq_business_closed_date"),)


class ClientUnblock(Base):
    __tablename__ = "client_unblocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("businesses.id"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    unblocked_by: Mapped[str] = mapped_column(String(64), nullable=False)
    unblocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

"""Request and response models for the HTTP surface."""

import uuid
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .core.errors import ParseError
from .state_machine import AppointmentStatus
from .time_utils import parse_local_date, parse_time


def _check_date(value: str) -> str:
    try:
        parse_local_date(value)
    except ParseError:
        raise ValueError("Date must be in YYYY-MM-DD format")
    return value


def _check_time(value: str) -> str:
    try:
        parse_time(value)
    except ParseError:
        raise ValueError("Time must be in HH:MM format (24-hour)")
    return value


# ────────────────────────────────────────────────────────────────
# Booking
# ────────────────────────────────────────────────────────────────

class ServiceSelectionIn(BaseModel):
    service_id: uuid.UUID
    employee_id: Optional[uuid.UUID] = Field(None, description="Omit to let the business assign someone")


class BookingCreate(BaseModel):
    """
    Request to book one or more services back-to-back.

    Either client_id (registered client) or walk_in_client_name must be provided.
    """
    business_id: uuid.UUID
    date: str = Field(..., description="Date in YYYY-MM-DD format (business local)")
    start_time: str = Field(..., description="Time in HH:MM format 24-hour")
    services: list[ServiceSelectionIn] = Field(..., min_length=1)
    client_id: Optional[str] = Field(None, max_length=64)
    client_email: Optional[str] = Field(None, max_length=255)
    walk_in_client_name: Optional[str] = Field(None, max_length=255)
    walk_in_client_phone: Optional[str] = Field(None, max_length=32)
    client_notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return _check_date(v)

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        return _check_time(v)

    @field_validator("walk_in_client_name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip() or None

    @model_validator(mode="after")
    def validate_client(self):
        if not self.client_id and not self.walk_in_client_name:
            raise ValueError("client_id or walk_in_client_name is required.")
        return self


class ServiceWindowOut(BaseModel):
    service_id: str
    employee_id: str
    start_time: str
    end_time: str
    price_cents: int
    sequence_order: int


class BookingOut(BaseModel):
    appointment_id: str
    date: str
    start_time: str
    end_time: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    total_price_cents: int
    windows: list[ServiceWindowOut]


# ────────────────────────────────────────────────────────────────
# Employees / availability
# ────────────────────────────────────────────────────────────────

class EmployeeOut(BaseModel):
    id: uuid.UUID
    name: str


class EligibleEmployeesOut(BaseModel):
    service_ids: list[uuid.UUID]
    employees: list[EmployeeOut]
    has_no_eligible_employees: bool
    degraded: bool = False


class SlotOut(BaseModel):
    employee_id: str
    start_time: str
    end_time: str


class AvailabilityOut(BaseModel):
    date: str
    slots: list[SlotOut]


# ────────────────────────────────────────────────────────────────
# Clients
# ────────────────────────────────────────────────────────────────

class ClientBookingStatusOut(BaseModel):
    allowed: bool
    is_blocked: bool
    cancellations_this_month: int
    max_allowed: int
    reason: Optional[str] = None


class UnblockRequest(BaseModel):
    unblocked_by: str = Field(..., min_length=1, max_length=64)


# ────────────────────────────────────────────────────────────────
# Appointments
# ────────────────────────────────────────────────────────────────

class StatusChangeRequest(BaseModel):
    status: AppointmentStatus
    actor: Optional[str] = Field(None, max_length=64)
    reason: Optional[str] = Field(None, max_length=500)


class AppointmentOut(BaseModel):
    id: uuid.UUID
    business_id: uuid.UUID
    employee_id: uuid.UUID
    date: str
    start_time: str
    end_time: str
    status: AppointmentStatus
    reschedule_required: bool
    total_price_cents: int
    time_status: str  # "Starts in 2 hours", "Started 5 minutes ago"


class ClosedDateCreate(BaseModel):
    date: str = Field(..., description="Date in YYYY-MM-DD format")
    reason: Optional[str] = Field(None, max_length=255)

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return _check_date(v)


class ClosureOut(BaseModel):
    business_id: str
    closed_date: str
    affected_appointment_ids: list[str]
    notified: int


class RescheduleConfirmRequest(BaseModel):
    """
    Client's answer to a reschedule-required notice.

    `date` is required: the appointment's current date is the one the business
    closed, so there is no date to fall back to. Only the time may be omitted,
    in which case the original start time is kept. To give up on the
    appointment the client uses the decline endpoint instead.
    """
    token: str = Field(..., min_length=1, max_length=512)
    date: str = Field(..., description="New date in YYYY-MM-DD format")
    start_time: Optional[str] = Field(None, description="New time in HH:MM; defaults to the original time")

    @field_validator("date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        return _check_date(v)

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _check_time(v)


class RescheduleDeclineRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)

"""
Booking policy rules and outcomes.

Rules evaluated before a booking is written:
    1. Business must be active (checked first, short-circuits everything).
    2. Date must not be closed by the business.
    3. Registered clients with cancellations this calendar month >= the
       business limit are blocked (platform default when the business has no
       limit; skipped when the business disabled blocking).

A blocked client can still call or message the business; that channel is not
governed by these rules.

Outcomes are plain values, not exceptions. Each rejection carries the data a
client needs to render an actionable message.
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Optional, Union

from .core.config import get_settings
from .models import Business


@dataclass(frozen=True)
class CancellationStatus:
    allowed: bool
    is_blocked: bool
    cancellations_this_month: int
    max_allowed: int
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def effective_cancellation_limit(business: Business) -> int:
    """The business's monthly limit, or the platform default when unset."""
    if business.max_monthly_cancellations is not None and business.max_monthly_cancellations > 0:
        return business.max_monthly_cancellations
    return get_settings().default_max_monthly_cancellations


def evaluate_cancellation_limit(cancellations_this_month: int, max_allowed: int) -> CancellationStatus:
    """Block once the count reaches the limit (count >= max_allowed)."""
    if cancellations_this_month >= max_allowed:
        return CancellationStatus(
            allowed=False,
            is_blocked=True,
            cancellations_this_month=cancellations_this_month,
            max_allowed=max_allowed,
            reason=(
                f"You have cancelled {cancellations_this_month} appointments this month "
                f"(limit {max_allowed}). Contact the business directly to book."
            ),
        )
    return CancellationStatus(
        allowed=True,
        is_blocked=False,
        cancellations_this_month=cancellations_this_month,
        max_allowed=max_allowed,
    )


def business_cancellation_status(business: Business, cancellations_this_month: int) -> CancellationStatus:
    limit = effective_cancellation_limit(business)
    if not business.enable_cancellation_blocking:
        return CancellationStatus(
            allowed=True,
            is_blocked=False,
            cancellations_this_month=cancellations_this_month,
            max_allowed=limit,
        )
    return evaluate_cancellation_limit(cancellations_this_month, limit)


# ============================================================================
# OUTCOMES
# ============================================================================

@dataclass(frozen=True)
class BookingAccepted:
    appointment_id: str
    appointment_date: date
    start_time: str
    end_time: str
    total_price_cents: int
    windows: list[dict] = field(default_factory=list)
    kind: str = "accepted"


@dataclass(frozen=True)
class BusinessUnavailable:
    business_id: str
    business_name: Optional[str] = None
    kind: str = "business_unavailable"

    @property
    def message(self) -> str:
        name = self.business_name or "This business"
        return f"{name} is not accepting bookings right now."


@dataclass(frozen=True)
class ClientBlocked:
    cancellations_this_month: int
    max_allowed: int
    business_name: str
    business_phone: Optional[str] = None
    kind: str = "client_blocked"

    @property
    def message(self) -> str:
        text = (
            f"You have reached the limit of {self.max_allowed} cancellations this month "
            f"with {self.business_name}."
        )
        if self.business_phone:
            text += f" Please contact them at {self.business_phone} to book."
        return text


@dataclass(frozen=True)
class DateClosed:
    business_name: str
    closed_date: date
    kind: str = "date_closed"

    @property
    def message(self) -> str:
        return f"{self.business_name} is closed on {self.closed_date.isoformat()}."


@dataclass(frozen=True)
class NoEligibleEmployee:
    service_id: str
    employee_id: Optional[str] = None
    kind: str = "no_eligible_employee"

    @property
    def message(self) -> str:
        if self.employee_id:
            return "The selected employee cannot perform this service."
        return "No employee can perform the selected services."


@dataclass(frozen=True)
class SlotConflict:
    conflicting_appointment_id: Optional[str] = None
    kind: str = "conflict"

    @property
    def message(self) -> str:
        return "This time slot is no longer available. Please pick another time."


@dataclass(frozen=True)
class InvalidRequest:
    reason: str
    kind: str = "invalid_request"

    @property
    def message(self) -> str:
        return self.reason


BookingOutcome = Union[
    BookingAccepted,
    BusinessUnavailable,
    ClientBlocked,
    DateClosed,
    NoEligibleEmployee,
    SlotConflict,
    InvalidRequest,
]

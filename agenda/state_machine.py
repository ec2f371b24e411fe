"""
Appointment status state machine.

Status Flow:
    PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED
    PENDING | CONFIRMED -> CANCELLED
    CONFIRMED | IN_PROGRESS -> NO_SHOW

COMPLETED, CANCELLED and NO_SHOW are terminal. The only way back to PENDING
is an explicit reschedule of an appointment flagged reschedule_required,
which keeps the appointment id (see agenda.reschedule).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .core.errors import InvalidTransitionError


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    @property
    def blocks_time(self) -> bool:
        """Whether an appointment in this status occupies the employee's time."""
        return self is not AppointmentStatus.CANCELLED


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

# Statuses a reschedule-required appointment may be in when the client picks a new date
RESCHEDULABLE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


@dataclass(frozen=True)
class TransitionResult:
    current: AppointmentStatus
    target: AppointmentStatus
    allowed: bool
    reason: Optional[str] = None


def transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> TransitionResult:
    """Check whether `current` may move to `target`."""
    current = AppointmentStatus(current)
    target = AppointmentStatus(target)

    if target in ALLOWED_TRANSITIONS[current]:
        return TransitionResult(current=current, target=target, allowed=True)
    if current.is_terminal:
        reason = f"Appointment is already {current.value}"
    else:
        reason = f"Cannot move from {current.value} to {target.value}"
    return TransitionResult(current=current, target=target, allowed=False, reason=reason)


def apply_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> AppointmentStatus:
    """Return the new status or raise InvalidTransitionError."""
    result = transition(current, target)
    if not result.allowed:
        raise InvalidTransitionError(result.current.value, result.target.value)
    return result.target

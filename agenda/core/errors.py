"""
Error taxonomy for the scheduling core.

Exceptions are reserved for conditions the caller cannot treat as a normal
outcome: malformed input, missing configuration, an unreachable store, or a
lost race on the appointment insert. Policy rejections (blocked client,
inactive business, conflicting slot during booking) are returned as values
from agenda.booking instead.
"""

from typing import Optional


class AgendaError(Exception):
    """Base class for all scheduling core errors."""


class ParseError(AgendaError, ValueError):
    """Raised when a date or time string is missing or malformed."""

    def __init__(self, message: str, value: object = None):
        super().__init__(message)
        self.value = value


class ConfigurationError(AgendaError):
    """Raised when required configuration (e.g. the token secret) is missing."""


class DataAccessError(AgendaError):
    """Raised when the backing store cannot be reached or fails."""


class StoreTimeoutError(DataAccessError):
    """Raised when a store call exceeds its time budget."""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(f"Store operation '{operation}' timed out after {timeout_seconds}s")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class SlotConflictError(AgendaError):
    """Raised by the store when the atomic insert finds an overlapping appointment."""

    def __init__(self, conflicting_appointment_id: Optional[str] = None):
        super().__init__("Requested time overlaps an existing appointment")
        self.conflicting_appointment_id = conflicting_appointment_id


class InvalidTransitionError(AgendaError):
    """Raised when an appointment status change is not allowed."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move appointment from '{current}' to '{target}'")
        self.current = current
        self.target = target


class NotFoundError(AgendaError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, identifier: object):
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class StaleAppointmentError(AgendaError):
    """Raised by a conditional write when the locked appointment no longer matches what the caller read."""

    def __init__(self, appointment_id: object, current_status: str):
        super().__init__(f"Appointment {appointment_id} changed concurrently (now '{current_status}')")
        self.appointment_id = appointment_id
        self.current_status = current_status

"""
Core module - configuration, database, errors, and response formatting.
"""
from .config import Settings, get_settings
from .db import AsyncSessionLocal, Base, engine, get_session
from .errors import (
    AgendaError,
    ConfigurationError,
    DataAccessError,
    InvalidTransitionError,
    NotFoundError,
    ParseError,
    SlotConflictError,
    StaleAppointmentError,
    StoreTimeoutError,
)
from .responses import (
    ErrorDetail,
    ErrorCodes,
    success_response,
    error_response,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    # Errors
    "AgendaError",
    "ConfigurationError",
    "DataAccessError",
    "InvalidTransitionError",
    "NotFoundError",
    "ParseError",
    "SlotConflictError",
    "StaleAppointmentError",
    "StoreTimeoutError",
    # Responses
    "ErrorDetail",
    "ErrorCodes",
    "success_response",
    "error_response",
]

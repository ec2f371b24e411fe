"""
Response envelope shared by every endpoint.

    {"data": ..., "status": "success"}
    {"error": {"code": ..., "message": ..., "details": {...}}, "status": "error"}

Booking rejections carry structured details (limits, conflicting appointment)
so a client can explain them. Link failures never do.
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


# ============================================================================
# ERROR CODES
# ============================================================================

class ErrorCodes:
    """Machine-readable codes; the HTTP status each maps to is noted."""

    INVALID_LINK = "INVALID_LINK"                  # 403
    CLIENT_BLOCKED = "CLIENT_BLOCKED"              # 403
    BUSINESS_UNAVAILABLE = "BUSINESS_UNAVAILABLE"  # 403

    NOT_FOUND = "NOT_FOUND"                        # 404

    DATE_CLOSED = "DATE_CLOSED"                    # 409
    SLOT_CONFLICT = "SLOT_CONFLICT"                # 409
    INVALID_TRANSITION = "INVALID_TRANSITION"      # 409

    VALIDATION_ERROR = "VALIDATION_ERROR"          # 422, request body/query shape
    INVALID_INPUT = "INVALID_INPUT"                # 422, unparseable date/time
    NO_ELIGIBLE_EMPLOYEE = "NO_ELIGIBLE_EMPLOYEE"  # 422

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"    # 500
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"        # 503


def success_response(data: Any) -> dict:
    return {"data": data, "status": "success"}


def error_response(code: str, message: str, details: Optional[dict] = None) -> dict:
    """Error envelope; ``details`` is left out entirely when empty."""
    error = ErrorDetail(code=code, message=message, details=details or None)
    return {"error": error.model_dump(exclude_none=True), "status": "error"}

"""
Signed appointment tokens for emailed reschedule links.

Format: "<appointment_id>.<hex HMAC-SHA256(secret, appointment_id)>"

Tokens are stateless: nothing is stored and nothing can be revoked. Whether a
token may still be acted on is decided by the referenced appointment's state
(see agenda.reschedule), not by the token itself.
"""

import hashlib
import hmac
import logging
from functools import lru_cache

from .core.config import get_settings
from .core.errors import ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_DELIMITER = "."


def compute_signature(secret: str, appointment_id: str) -> str:
    """Compute HMAC-SHA256 of the appointment id, hex encoded."""
    return hmac.new(secret.encode("utf-8"), appointment_id.encode("utf-8"), hashlib.sha256).hexdigest()


class AppointmentTokenService:
    """Issues and validates reschedule-confirmation tokens."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigurationError("APPOINTMENT_TOKEN_SECRET is not configured")
        self._secret = secret

    def issue(self, appointment_id: str) -> str:
        appointment_id = str(appointment_id)
        if not appointment_id:
            raise ValueError("appointment_id is required")
        return f"{appointment_id}{TOKEN_DELIMITER}{compute_signature(self._secret, appointment_id)}"

    def validate(self, appointment_id: str, token: str) -> bool:
        """
        Check that `token` was issued for exactly `appointment_id`.

        Never raises; any malformed input is simply invalid. The log line does
        not say which part failed.
        """
        try:
            if not token or not appointment_id:
                return False

            appointment_id = str(appointment_id)
            token_id, delimiter, signature = str(token).partition(TOKEN_DELIMITER)
            if not delimiter or token_id != appointment_id:
                logger.warning("Rejected appointment token for %s", appointment_id)
                return False

            expected = compute_signature(self._secret, appointment_id)
            valid = hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))
        except Exception:
            logger.warning("Error validating appointment token for %s", appointment_id, exc_info=True)
            return False

        if not valid:
            logger.warning("Rejected appointment token for %s", appointment_id)
        return valid


@lru_cache
def get_token_service() -> AppointmentTokenService:
    """Token service built from APPOINTMENT_TOKEN_SECRET; raises if unset."""
    return AppointmentTokenService(get_settings().appointment_token_secret)

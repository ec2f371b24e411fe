"""
Reschedule-required flow.

1. The business closes a date (close_business_date). Every pending or
   confirmed appointment on it is flagged reschedule_required, a signed token
   is issued and a RescheduleNotification is handed to the dispatcher.
2. The client follows the emailed link and picks a new date
   (confirm_reschedule) or gives up (decline_reschedule).

A token is only honored while its appointment is still flagged. Once the
appointment has been rescheduled, cancelled or otherwise moved on, the same
link is rejected with the same generic answer as a forged token, so the
response never reveals whether the id or the signature was wrong.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Callable, Optional, Union

import httpx

from .booking import hours_message, within_business_hours
from .core.errors import NotFoundError, SlotConflictError, StaleAppointmentError
from .notifications import (
    NotificationDispatcher,
    RescheduleNotification,
    build_confirmation_url,
    format_payload_date,
)
from .policy import BusinessUnavailable, DateClosed, InvalidRequest, NoEligibleEmployee, SlotConflict
from .slots import WindowRequest, build_service_windows, span
from .state_machine import RESCHEDULABLE_STATUSES, AppointmentStatus, apply_transition
from .store import AppointmentStore
from .time_utils import format_time_string, has_started, minutes_between, parse_local_date, parse_time
from .tokens import AppointmentTokenService

logger = logging.getLogger(__name__)

GENERIC_LINK_ERROR = "This link is invalid or has expired."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ClosureReport:
    business_id: str
    closed_date: date
    affected_appointment_ids: list[str]
    notified: int

    def to_dict(self) -> dict:
        return {
            "business_id": self.business_id,
            "closed_date": self.closed_date.isoformat(),
            "affected_appointment_ids": self.affected_appointment_ids,
            "notified": self.notified,
        }


@dataclass(frozen=True)
class RescheduleRejected:
    kind: str = "rejected"
    message: str = GENERIC_LINK_ERROR


@dataclass(frozen=True)
class RescheduleAccepted:
    appointment_id: str
    appointment_date: date
    start_time: str
    end_time: str
    status: str = AppointmentStatus.PENDING.value
    kind: str = "accepted"


@dataclass(frozen=True)
class RescheduleDeclined:
    appointment_id: str
    status: str = AppointmentStatus.CANCELLED.value
    kind: str = "declined"


RescheduleOutcome = Union[
    RescheduleAccepted,
    RescheduleDeclined,
    RescheduleRejected,
    BusinessUnavailable,
    DateClosed,
    InvalidRequest,
    NoEligibleEmployee,
    SlotConflict,
]


@dataclass
class RescheduleService:
    store: AppointmentStore
    token_service: AppointmentTokenService
    dispatcher: NotificationDispatcher
    clock: Callable[[], datetime] = field(default=_utc_now)

    async def close_business_date(
        self,
        business_id: uuid.UUID,
        closed_date: date | str,
        reason: Optional[str] = None,
    ) -> ClosureReport:
        closed_date = parse_local_date(closed_date)
        business = await self.store.get_business(business_id)
        if business is None:
            raise NotFoundError("Business", business_id)

        # Plain values; a refused conditional write rolls back and expires loaded rows
        business_id, business_name = business.id, business.name
        await self.store.close_date(business_id, closed_date, reason)
        scheduled = await self.store.list_appointments_on_date(business_id, closed_date, RESCHEDULABLE_STATUSES)
        candidates = [(a.id, a.status) for a in scheduled if not a.reschedule_required]

        affected: list[str] = []
        notified = 0
        for appointment_id, status in candidates:
            try:
                appointment = await self.store.update_appointment(
                    appointment_id,
                    expected_status=status,
                    reschedule_required=True,
                    reschedule_requested_at=self.clock(),
                )
            except StaleAppointmentError as exc:
                logger.info("Skipping appointment %s on closed date: now %s", exc.appointment_id, exc.current_status)
                continue
            affected.append(str(appointment.id))
            token = self.token_service.issue(str(appointment.id))
            notification = await self._build_notification(business_name, closed_date, appointment, token)
            try:
                if await self.dispatcher.dispatch(notification):
                    notified += 1
            except httpx.HTTPError:
                # The flag stays set; the client can still be contacted by the business
                logger.error("Failed to dispatch reschedule notice for %s", appointment.id, exc_info=True)

        logger.info(
            "Business %s closed %s: %d appointment(s) need rescheduling, %d notified",
            business_id,
            closed_date,
            len(affected),
            notified,
        )
        return ClosureReport(
            business_id=str(business_id),
            closed_date=closed_date,
            affected_appointment_ids=affected,
            notified=notified,
        )

    async def _build_notification(self, business_name, closed_date, appointment, token) -> RescheduleNotification:
        rows = await self.store.get_appointment_services(appointment.id)
        services = await self.store.get_services(appointment.business_id, [r.service_id for r in rows])
        names = {s.id: s.name for s in services}
        first = rows[0] if rows else None
        return RescheduleNotification(
            appointment_id=str(appointment.id),
            recipient_email=appointment.client_email,
            recipient_phone=appointment.walk_in_client_phone,
            recipient_name=appointment.walk_in_client_name,
            business_name=business_name,
            closed_date=format_payload_date(closed_date),
            original_date=format_payload_date(appointment.appointment_date),
            original_time=format_time_string(appointment.start_time),
            service_name=names.get(first.service_id, "") if first else "",
            service_price_cents=first.price_cents if first else appointment.total_price_cents,
            token=token,
            confirmation_url=build_confirmation_url(str(appointment.id), token),
        )

    async def _load_flagged(self, appointment_id: uuid.UUID, token: str):
        """The appointment if the token is valid and it still awaits rescheduling, else None."""
        if not self.token_service.validate(str(appointment_id), token):
            return None
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            return None
        if not appointment.reschedule_required or appointment.status not in RESCHEDULABLE_STATUSES:
            logger.info("Stale reschedule link used for appointment %s (%s)", appointment_id, appointment.status.value)
            return None
        return appointment

    async def confirm_reschedule(
        self,
        appointment_id: uuid.UUID,
        token: str,
        new_date: date | str,
        new_start_time: Optional[time | str] = None,
    ) -> RescheduleOutcome:
        appointment = await self._load_flagged(appointment_id, token)
        if appointment is None:
            return RescheduleRejected()

        on_date = parse_local_date(new_date)
        start = parse_time(new_start_time) if new_start_time is not None else appointment.start_time

        business = await self.store.get_business(appointment.business_id)
        if business is None or not business.is_active:
            return BusinessUnavailable(
                business_id=str(appointment.business_id),
                business_name=business.name if business else None,
            )
        if has_started(on_date, start, now=self.clock(), tz=business.timezone):
            return InvalidRequest("Pick a date and time in the future.")
        if await self.store.is_date_closed(business.id, on_date):
            return DateClosed(business_name=business.name, closed_date=on_date)

        rows = await self.store.get_appointment_services(appointment.id)
        if not rows:
            return InvalidRequest("This appointment has no services to reschedule.")
        active_ids = {e.id for e in await self.store.list_employees(business.id, active_only=True)}
        for row in rows:
            if row.employee_id not in active_ids:
                return NoEligibleEmployee(service_id=str(row.service_id), employee_id=str(row.employee_id))

        items = [
            WindowRequest(
                service_id=row.service_id,
                employee_id=row.employee_id,
                duration_minutes=minutes_between(row.start_time, row.end_time),
                price_cents=row.price_cents,
            )
            for row in rows
        ]
        if not within_business_hours(business, start, sum(item.duration_minutes for item in items)):
            return InvalidRequest(hours_message(business))
        windows = build_service_windows(start, items)
        first_start, last_end = span(windows)

        try:
            appointment = await self.store.reschedule_appointment(
                appointment.id, on_date, windows, business.allow_overlapping_appointments
            )
        except SlotConflictError as exc:
            return SlotConflict(conflicting_appointment_id=exc.conflicting_appointment_id)
        except StaleAppointmentError as exc:
            logger.info("Reschedule link for %s used after it moved on (%s)", appointment_id, exc.current_status)
            return RescheduleRejected()

        logger.info("Appointment %s rescheduled to %s %s", appointment.id, on_date, format_time_string(first_start))
        return RescheduleAccepted(
            appointment_id=str(appointment.id),
            appointment_date=on_date,
            start_time=format_time_string(first_start),
            end_time=format_time_string(last_end),
        )

    async def decline_reschedule(self, appointment_id: uuid.UUID, token: str) -> RescheduleOutcome:
        appointment = await self._load_flagged(appointment_id, token)
        if appointment is None:
            return RescheduleRejected()

        status = apply_transition(appointment.status, AppointmentStatus.CANCELLED)
        try:
            await self.store.update_appointment(
                appointment.id,
                expected_status=appointment.status,
                require_flagged=True,
                status=status,
                reschedule_required=False,
                cancelled_at=self.clock(),
                cancelled_by=appointment.client_id or "client",
            )
        except StaleAppointmentError as exc:
            logger.info("Decline link for %s used after it moved on (%s)", appointment_id, exc.current_status)
            return RescheduleRejected()
        logger.info("Client declined reschedule; appointment %s cancelled", appointment.id)
        return RescheduleDeclined(appointment_id=str(appointment.id))

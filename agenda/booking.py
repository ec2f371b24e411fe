"""
Booking pipeline.

BookingService.book() runs a request through, in order:
    business active -> request sanity -> date open -> cancellation limit ->
    services -> employee compatibility -> windows/hours -> conflict pre-check ->
    atomic insert

and returns a BookingOutcome (agenda.policy). Expected rejections are values;
only malformed input (ParseError), unknown ids (NotFoundError) and store
failures (DataAccessError) raise. The pipeline fails closed: if the store
cannot answer, no appointment is written.

The cancellation count is a fresh read taken just before the atomic insert
but outside its transaction. A cancellation committed by the same client in
that gap is not seen; the next booking attempt will be blocked. Slot
integrity is never relaxed this way; it lives inside the insert transaction.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Sequence

from .compatibility import filter_employees, resolve_eligible_employees
from .core.config import get_settings
from .core.errors import InvalidTransitionError, NotFoundError, SlotConflictError, StaleAppointmentError
from .models import Appointment, Business
from .policy import (
    BookingAccepted,
    BookingOutcome,
    BusinessUnavailable,
    CancellationStatus,
    ClientBlocked,
    DateClosed,
    InvalidRequest,
    NoEligibleEmployee,
    SlotConflict,
    business_cancellation_status,
)
from .slots import (
    WindowRequest,
    available_start_times,
    build_service_windows,
    find_conflict,
    intervals_overlap,
    span,
)
from .state_machine import AppointmentStatus, apply_transition
from .store import AppointmentStore
from .time_utils import (
    add_minutes,
    format_time_string,
    has_started,
    minutes_between,
    month_bounds,
    parse_local_date,
    parse_time,
    resolve_timezone,
    today_in,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ServiceSelection:
    service_id: uuid.UUID
    employee_id: Optional[uuid.UUID] = None


@dataclass
class BookingRequest:
    business_id: uuid.UUID
    appointment_date: date | str
    start_time: time | str
    services: list[ServiceSelection]
    client_id: Optional[str] = None
    client_email: Optional[str] = None
    walk_in_client_name: Optional[str] = None
    walk_in_client_phone: Optional[str] = None
    client_notes: Optional[str] = None


@dataclass(frozen=True)
class AvailableSlot:
    employee_id: uuid.UUID
    start_time: time
    end_time: time

    def to_dict(self) -> dict:
        return {
            "employee_id": str(self.employee_id),
            "start_time": format_time_string(self.start_time),
            "end_time": format_time_string(self.end_time),
        }


def business_hours(business: Business) -> tuple[time, time]:
    default_open, default_close = get_settings().business_hours
    return business.opens_at or default_open, business.closes_at or default_close


def within_business_hours(business: Business, start: time, total_minutes: int) -> bool:
    """Whether `total_minutes` of back-to-back work starting at `start` fits the opening hours."""
    opens_at, closes_at = business_hours(business)
    return opens_at <= start and minutes_between(start, closes_at) >= total_minutes


def hours_message(business: Business) -> str:
    opens_at, closes_at = business_hours(business)
    return f"Time is outside business hours ({format_time_string(opens_at)} - {format_time_string(closes_at)})."


@dataclass
class BookingService:
    store: AppointmentStore
    clock: Callable[[], datetime] = field(default=_utc_now)

    # ------------------------------------------------------------------
    # Cancellation penalty
    # ------------------------------------------------------------------

    async def _cancellation_status(self, business: Business, client_id: str) -> CancellationStatus:
        tz = resolve_timezone(business.timezone)
        first, next_first = month_bounds(today_in(tz, self.clock()))
        start_utc = datetime.combine(first, time(0), tzinfo=tz).astimezone(timezone.utc)
        end_utc = datetime.combine(next_first, time(0), tzinfo=tz).astimezone(timezone.utc)

        unblocked_at = await self.store.latest_unblock(business.id, client_id)
        if unblocked_at is not None and unblocked_at >= start_utc:
            # Only cancellations after the operator's unblock count
            start_utc = unblocked_at + timedelta(microseconds=1)

        count = await self.store.count_client_cancellations(business.id, client_id, start_utc, end_utc)
        return business_cancellation_status(business, count)

    async def client_booking_status(self, business_id: uuid.UUID, client_id: str) -> CancellationStatus:
        business = await self._require_business(business_id)
        return await self._cancellation_status(business, client_id)

    async def unblock_client(self, business_id: uuid.UUID, client_id: str, unblocked_by: str) -> CancellationStatus:
        business = await self._require_business(business_id)
        await self.store.record_unblock(business.id, client_id, unblocked_by, self.clock())
        logger.info("Client %s unblocked at business %s by %s", client_id, business.id, unblocked_by)
        return await self._cancellation_status(business, client_id)

    async def _require_business(self, business_id: uuid.UUID) -> Business:
        business = await self.store.get_business(business_id)
        if business is None:
            raise NotFoundError("Business", business_id)
        return business

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(self, request: BookingRequest) -> BookingOutcome:
        on_date = parse_local_date(request.appointment_date)
        start = parse_time(request.start_time)

        business = await self._require_business(request.business_id)
        if not business.is_active:
            logger.info("Booking rejected: business %s is inactive", business.id)
            return BusinessUnavailable(business_id=str(business.id), business_name=business.name)

        if not request.services:
            return InvalidRequest("Select at least one service.")
        if not request.client_id and not request.walk_in_client_name:
            return InvalidRequest("A registered client or a walk-in client name is required.")
        if has_started(on_date, start, now=self.clock(), tz=business.timezone):
            return InvalidRequest("Cannot book appointments in the past.")

        if await self.store.is_date_closed(business.id, on_date):
            return DateClosed(business_name=business.name, closed_date=on_date)

        if request.client_id:
            status = await self._cancellation_status(business, request.client_id)
            if status.is_blocked:
                logger.info(
                    "Booking rejected: client %s blocked at business %s (%s/%s cancellations)",
                    request.client_id,
                    business.id,
                    status.cancellations_this_month,
                    status.max_allowed,
                )
                return ClientBlocked(
                    cancellations_this_month=status.cancellations_this_month,
                    max_allowed=status.max_allowed,
                    business_name=business.name,
                    business_phone=business.phone,
                )

        service_ids = [s.service_id for s in request.services]
        services = {s.id: s for s in await self.store.get_services(business.id, service_ids)}
        for service_id in service_ids:
            service = services.get(service_id)
            if service is None or not service.is_active:
                return InvalidRequest(f"Service {service_id} is not available.")

        # Before window layout; add_minutes refuses spans past midnight
        if not within_business_hours(business, start, sum(services[sid].duration_minutes for sid in service_ids)):
            return InvalidRequest(hours_message(business))

        employees = await self.store.list_employees(business.id, active_only=True)
        employees_by_id = {e.id: e for e in employees}
        capabilities = await self.store.get_capabilities(list(employees_by_id))
        busy = await self.store.list_busy_intervals(business.id, on_date)

        items: list[WindowRequest] = []
        cursor = start
        for selection in request.services:
            service = services[selection.service_id]
            employee_id = selection.employee_id
            if employee_id is None:
                employee_id = self._auto_assign(
                    service.id, service.duration_minutes, cursor, employees, capabilities, busy
                )
                if employee_id is None:
                    return NoEligibleEmployee(service_id=str(service.id))
            elif employee_id not in employees_by_id or service.id not in capabilities.get(employee_id, set()):
                return NoEligibleEmployee(service_id=str(service.id), employee_id=str(employee_id))
            items.append(
                WindowRequest(
                    service_id=service.id,
                    employee_id=employee_id,
                    duration_minutes=service.duration_minutes,
                    price_cents=service.price_cents,
                )
            )
            cursor = add_minutes(cursor, service.duration_minutes)

        windows = build_service_windows(start, items)
        first_start, last_end = span(windows)

        precheck = find_conflict(windows, busy, business.allow_overlapping_appointments)
        if not precheck.accepted:
            return SlotConflict(conflicting_appointment_id=precheck.conflicting_appointment_id)

        appointment = Appointment(
            id=uuid.uuid4(),
            business_id=business.id,
            employee_id=windows[0].employee_id,
            client_id=request.client_id,
            client_email=request.client_email,
            walk_in_client_name=request.walk_in_client_name,
            walk_in_client_phone=request.walk_in_client_phone,
            appointment_date=on_date,
            start_time=first_start,
            end_time=last_end,
            status=AppointmentStatus.PENDING,
            total_price_cents=sum(w.price_cents for w in windows),
            client_notes=request.client_notes,
            reschedule_required=False,
        )
        allow_overlapping = business.allow_overlapping_appointments
        try:
            appointment = await self.store.insert_appointment(appointment, windows, allow_overlapping)
        except SlotConflictError as exc:
            logger.info("Booking lost slot race on %s at %s", on_date, format_time_string(first_start))
            return SlotConflict(conflicting_appointment_id=exc.conflicting_appointment_id)

        logger.info(
            "Booked appointment %s on %s %s-%s",
            appointment.id,
            on_date,
            format_time_string(first_start),
            format_time_string(last_end),
        )
        return BookingAccepted(
            appointment_id=str(appointment.id),
            appointment_date=on_date,
            start_time=format_time_string(first_start),
            end_time=format_time_string(last_end),
            total_price_cents=appointment.total_price_cents,
            windows=[w.to_dict() for w in windows],
        )

    @staticmethod
    def _auto_assign(service_id, duration_minutes, window_start, employees, capabilities, busy) -> Optional[uuid.UUID]:
        """First compatible employee free for the window; else first compatible one."""
        candidates = filter_employees([service_id], employees, capabilities)
        if not candidates:
            return None
        window_end = add_minutes(window_start, duration_minutes)
        for employee in candidates:
            taken = any(
                b.employee_id == employee.id
                and intervals_overlap(window_start, window_end, b.start_time, b.end_time)
                for b in busy
            )
            if not taken:
                return employee.id
        return candidates[0].id

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def change_status(
        self,
        appointment_id: uuid.UUID,
        target: AppointmentStatus | str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)

        previous = appointment.status
        new_status = apply_transition(previous, target)
        changes: dict = {"status": new_status}
        if new_status == AppointmentStatus.CANCELLED:
            changes["cancelled_at"] = self.clock()
            changes["cancelled_by"] = actor
            changes["reschedule_required"] = False
            if reason:
                prefix = f"{appointment.notes}\n\n" if appointment.notes else ""
                changes["notes"] = f"{prefix}Cancellation reason: {reason}".strip()

        try:
            appointment = await self.store.update_appointment(appointment_id, expected_status=previous, **changes)
        except StaleAppointmentError as exc:
            logger.info(
                "Appointment %s moved to %s before %s was applied",
                appointment_id,
                exc.current_status,
                new_status.value,
            )
            raise InvalidTransitionError(exc.current_status, new_status.value) from exc
        logger.info("Appointment %s: %s -> %s", appointment_id, previous.value, new_status.value)
        return appointment

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def available_slots(
        self,
        business_id: uuid.UUID,
        on_date: date | str,
        service_ids: Sequence[uuid.UUID],
        employee_id: Optional[uuid.UUID] = None,
        client_id: Optional[str] = None,
    ) -> list[AvailableSlot]:
        """
        Start times at which one employee can perform all selected services
        back-to-back. Excludes times overlapping the client's own active
        appointments that day.
        """
        on_date = parse_local_date(on_date)
        business = await self._require_business(business_id)
        if not business.is_active or not service_ids:
            return []

        tz = resolve_timezone(business.timezone)
        today = today_in(tz, self.clock())
        if on_date < today or await self.store.is_date_closed(business.id, on_date):
            return []
        not_before = self.clock().astimezone(tz).time() if on_date == today else None

        services = await self.store.get_services(business.id, service_ids)
        if len(services) != len(set(service_ids)) or not all(s.is_active for s in services):
            return []
        duration = sum(s.duration_minutes for s in services)

        eligible = await resolve_eligible_employees(self.store, business.id, list(service_ids))
        employees = eligible.employees
        if employee_id is not None:
            employees = [e for e in employees if e.id == employee_id]
        if not employees:
            return []

        shared = not business.allow_overlapping_appointments
        busy = await self.store.list_busy_intervals(
            business.id, on_date, None if shared else [e.id for e in employees]
        )
        own: list[tuple[time, time]] = []
        if client_id:
            own = [(a.start_time, a.end_time) for a in await self.store.list_client_appointments(business.id, client_id, on_date)]

        opens_at, closes_at = business_hours(business)
        step = get_settings().slot_step_minutes
        slots = []
        for employee in employees:
            blocked = [(b.start_time, b.end_time) for b in busy if shared or b.employee_id == employee.id] + own
            for slot_start in available_start_times(opens_at, closes_at, duration, blocked, step, not_before):
                slots.append(
                    AvailableSlot(
                        employee_id=employee.id,
                        start_time=slot_start,
                        end_time=add_minutes(slot_start, duration),
                    )
                )

        slots.sort(key=lambda s: (s.start_time, str(s.employee_id)))
        return slots

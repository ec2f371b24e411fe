"""
Data access for the scheduling core.

`AppointmentStore` is the contract the booking pipeline depends on.
`SqlAppointmentStore` implements it on an async SQLAlchemy session;
tests/fakes.py holds an in-process one for tests.

Concurrency:
    insert_appointment() and reschedule_appointment() re-check overlaps and
    write inside one transaction. The SQL store locks the involved employee
    rows (or the business row when the business forbids overlapping
    appointments) with SELECT ... FOR UPDATE before the re-check, and the
    unique constraint on appointment_services(employee_id, appointment_date,
    start_time, active) backs it up. Losing either way raises
    SlotConflictError; callers must recompute availability, not resubmit.

State changes are conditional writes: the row is locked and re-read, and if
it no longer matches what the caller read (expected status, still flagged
for rescheduling) the write is refused with StaleAppointmentError. Two
concurrent transitions from the same status cannot both land.

Every public call is bounded by STORE_TIMEOUT_SECONDS and raises
StoreTimeoutError on expiry.
"""

import asyncio
import functools
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.errors import DataAccessError, SlotConflictError, StaleAppointmentError, StoreTimeoutError
from .models import (
    Appointment,
    AppointmentService,
    Business,
    BusinessClosedDate,
    ClientUnblock,
    Employee,
    EmployeeService,
    Service,
    utc_now,
)
from .slots import BusyInterval, ServiceWindow, find_conflict, span
from .state_machine import RESCHEDULABLE_STATUSES, AppointmentStatus

logger = logging.getLogger(__name__)


def bounded(func_):
    """Run a store coroutine under the store's timeout and normalize failures."""

    @functools.wraps(func_)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.wait_for(func_(self, *args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Store call %s timed out after %ss", func_.__name__, self.timeout_seconds)
            raise StoreTimeoutError(func_.__name__, self.timeout_seconds)
        except SQLAlchemyError as exc:
            logger.error("Store call %s failed", func_.__name__, exc_info=True)
            raise DataAccessError(f"Store call '{func_.__name__}' failed") from exc

    return wrapper


def ensure_expected_state(appointment, expected_status=None, require_flagged=False) -> None:
    """Raise StaleAppointmentError if a locked appointment moved on since it was read."""
    if expected_status is not None and appointment.status != expected_status:
        raise StaleAppointmentError(appointment.id, appointment.status.value)
    if require_flagged and not (appointment.reschedule_required and appointment.status in RESCHEDULABLE_STATUSES):
        raise StaleAppointmentError(appointment.id, appointment.status.value)


class AppointmentStore(ABC):
    """Read/write operations the scheduling core needs from persistence."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds or get_settings().store_timeout_seconds

    @abstractmethod
    async def get_business(self, business_id: uuid.UUID) -> Optional[Business]: ...

    @abstractmethod
    async def get_services(self, business_id: uuid.UUID, service_ids: Sequence[uuid.UUID]) -> list[Service]: ...

    @abstractmethod
    async def list_employees(self, business_id: uuid.UUID, active_only: bool = True) -> list[Employee]: ...

    @abstractmethod
    async def get_capabilities(self, employee_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, set[uuid.UUID]]: ...

    @abstractmethod
    async def get_appointment(self, appointment_id: uuid.UUID) -> Optional[Appointment]: ...

    @abstractmethod
    async def get_appointment_services(self, appointment_id: uuid.UUID) -> list[AppointmentService]: ...

    @abstractmethod
    async def list_busy_intervals(
        self,
        business_id: uuid.UUID,
        on_date: date,
        employee_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> list[BusyInterval]: ...

    @abstractmethod
    async def list_client_appointments(
        self, business_id: uuid.UUID, client_id: str, on_date: date
    ) -> list[Appointment]: ...

    @abstractmethod
    async def list_appointments_on_date(
        self, business_id: uuid.UUID, on_date: date, statuses: Iterable[AppointmentStatus]
    ) -> list[Appointment]: ...

    @abstractmethod
    async def count_client_cancellations(
        self,
        business_id: uuid.UUID,
        client_id: str,
        start_utc: datetime,
        end_utc: datetime,
    ) -> int:
        """Cancelled appointments of the client with cancelled_at in [start_utc, end_utc)."""

    @abstractmethod
    async def latest_unblock(self, business_id: uuid.UUID, client_id: str) -> Optional[datetime]: ...

    @abstractmethod
    async def record_unblock(
        self,
        business_id: uuid.UUID,
        client_id: str,
        unblocked_by: str,
        unblocked_at: Optional[datetime] = None,
    ) -> ClientUnblock: ...

    @abstractmethod
    async def is_date_closed(self, business_id: uuid.UUID, on_date: date) -> bool: ...

    @abstractmethod
    async def close_date(self, business_id: uuid.UUID, on_date: date, reason: Optional[str]) -> None: ...

    @abstractmethod
    async def insert_appointment(
        self,
        appointment: Appointment,
        windows: Sequence[ServiceWindow],
        allow_overlapping_appointments: bool,
    ) -> Appointment:
        """Atomically check for overlaps and insert. Raises SlotConflictError."""

    @abstractmethod
    async def reschedule_appointment(
        self,
        appointment_id: uuid.UUID,
        new_date: date,
        windows: Sequence[ServiceWindow],
        allow_overlapping_appointments: bool,
    ) -> Appointment:
        """
        Atomically move a reschedule-required appointment to new windows, back
        to pending. Raises SlotConflictError, or StaleAppointmentError if the
        appointment is no longer flagged or no longer pending/confirmed.
        """

    @abstractmethod
    async def update_appointment(
        self,
        appointment_id: uuid.UUID,
        expected_status: Optional[AppointmentStatus] = None,
        require_flagged: bool = False,
        **changes,
    ) -> Appointment:
        """
        Apply column changes under a row lock. With expected_status or
        require_flagged, raises StaleAppointmentError instead of writing when
        the appointment changed since the caller read it.
        """


class SqlAppointmentStore(AppointmentStore):
    """AppointmentStore backed by an async SQLAlchemy session."""

    def __init__(self, session: AsyncSession, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.session = session

    @bounded
    async def get_business(self, business_id):
        return await self.session.get(Business, business_id)

    @bounded
    async def get_services(self, business_id, service_ids):
        if not service_ids:
            return []
        result = await self.session.execute(
            select(Service).where(Service.business_id == business_id, Service.id.in_(list(service_ids)))
        )
        return list(result.scalars().all())

    @bounded
    async def list_employees(self, business_id, active_only=True):
        query = select(Employee).where(Employee.business_id == business_id)
        if active_only:
            query = query.where(Employee.is_active.is_(True))
        result = await self.session.execute(query.order_by(Employee.created_at, Employee.first_name))
        return list(result.scalars().all())

    @bounded
    async def get_capabilities(self, employee_ids):
        capabilities: dict[uuid.UUID, set[uuid.UUID]] = {employee_id: set() for employee_id in employee_ids}
        if not employee_ids:
            return capabilities
        result = await self.session.execute(
            select(EmployeeService.employee_id, EmployeeService.service_id).where(
                EmployeeService.employee_id.in_(list(employee_ids))
            )
        )
        for employee_id, service_id in result.all():
            capabilities.setdefault(employee_id, set()).add(service_id)
        return capabilities

    @bounded
    async def get_appointment(self, appointment_id):
        return await self.session.get(Appointment, appointment_id)

    @bounded
    async def get_appointment_services(self, appointment_id):
        result = await self.session.execute(
            select(AppointmentService)
            .where(
                AppointmentService.appointment_id == appointment_id,
                AppointmentService.active.is_(True),
            )
            .order_by(AppointmentService.sequence_order)
        )
        return list(result.scalars().all())

    async def _busy_intervals(self, business_id, on_date, employee_ids=None) -> list[BusyInterval]:
        query = (
            select(
                AppointmentService.appointment_id,
                AppointmentService.employee_id,
                AppointmentService.start_time,
                AppointmentService.end_time,
            )
            .join(Appointment, Appointment.id == AppointmentService.appointment_id)
            .where(
                Appointment.business_id == business_id,
                AppointmentService.appointment_date == on_date,
                AppointmentService.active.is_(True),
                Appointment.status != AppointmentStatus.CANCELLED,
            )
        )
        if employee_ids is not None:
            query = query.where(AppointmentService.employee_id.in_(list(employee_ids)))
        result = await self.session.execute(query)
        return [
            BusyInterval(appointment_id=row[0], employee_id=row[1], start_time=row[2], end_time=row[3])
            for row in result.all()
        ]

    @bounded
    async def list_busy_intervals(self, business_id, on_date, employee_ids=None):
        return await self._busy_intervals(business_id, on_date, employee_ids)

    @bounded
    async def list_client_appointments(self, business_id, client_id, on_date):
        result = await self.session.execute(
            select(Appointment).where(
                Appointment.business_id == business_id,
                Appointment.client_id == client_id,
                Appointment.appointment_date == on_date,
                Appointment.status.in_(
                    [AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS]
                ),
            )
        )
        return list(result.scalars().all())

    @bounded
    async def list_appointments_on_date(self, business_id, on_date, statuses):
        result = await self.session.execute(
            select(Appointment)
            .where(
                Appointment.business_id == business_id,
                Appointment.appointment_date == on_date,
                Appointment.status.in_(list(statuses)),
            )
            .order_by(Appointment.start_time)
        )
        return list(result.scalars().all())

    @bounded
    async def count_client_cancellations(self, business_id, client_id, start_utc, end_utc):
        result = await self.session.execute(
            select(func.count(Appointment.id)).where(
                Appointment.business_id == business_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.CANCELLED,
                Appointment.cancelled_at >= start_utc,
                Appointment.cancelled_at < end_utc,
            )
        )
        return int(result.scalar_one())

    @bounded
    async def latest_unblock(self, business_id, client_id):
        result = await self.session.execute(
            select(func.max(ClientUnblock.unblocked_at)).where(
                ClientUnblock.business_id == business_id,
                ClientUnblock.client_id == client_id,
            )
        )
        latest = result.scalar_one_or_none()
        if latest is not None and latest.tzinfo is None:
            # SQLite drops the offset; values are always written as UTC
            latest = latest.replace(tzinfo=timezone.utc)
        return latest

    @bounded
    async def record_unblock(self, business_id, client_id, unblocked_by, unblocked_at=None):
        unblock = ClientUnblock(
            business_id=business_id,
            client_id=client_id,
            unblocked_by=unblocked_by,
            unblocked_at=unblocked_at or utc_now(),
        )
        self.session.add(unblock)
        await self.session.commit()
        return unblock

    @bounded
    async def is_date_closed(self, business_id, on_date):
        result = await self.session.execute(
            select(BusinessClosedDate.id).where(
                BusinessClosedDate.business_id == business_id,
                BusinessClosedDate.closed_date == on_date,
            )
        )
        return result.first() is not None

    @bounded
    async def close_date(self, business_id, on_date, reason):
        existing = await self.session.execute(
            select(BusinessClosedDate).where(
                BusinessClosedDate.business_id == business_id,
                BusinessClosedDate.closed_date == on_date,
            )
        )
        if existing.scalar_one_or_none() is None:
            self.session.add(BusinessClosedDate(business_id=business_id, closed_date=on_date, reason=reason))
            await self.session.commit()

    async def _lock_for_booking(self, business_id, windows, allow_overlapping_appointments) -> None:
        if allow_overlapping_appointments:
            employee_ids = sorted({w.employee_id for w in windows})
            await self.session.execute(
                select(Employee.id).where(Employee.id.in_(employee_ids)).order_by(Employee.id).with_for_update()
            )
        else:
            await self.session.execute(select(Business.id).where(Business.id == business_id).with_for_update())

    async def _check_windows(self, business_id, on_date, windows, allow_overlapping_appointments, exclude=None):
        employee_ids = None if not allow_overlapping_appointments else {w.employee_id for w in windows}
        busy = await self._busy_intervals(business_id, on_date, employee_ids)
        result = find_conflict(windows, busy, allow_overlapping_appointments, exclude_appointment_id=exclude)
        if not result.accepted:
            raise SlotConflictError(result.conflicting_appointment_id)

    def _add_service_rows(self, appointment_id, on_date, windows) -> None:
        for window in windows:
            self.session.add(
                AppointmentService(
                    appointment_id=appointment_id,
                    service_id=window.service_id,
                    employee_id=window.employee_id,
                    appointment_date=on_date,
                    start_time=window.start_time,
                    end_time=window.end_time,
                    price_cents=window.price_cents,
                    sequence_order=window.sequence_order,
                    active=True,
                )
            )

    @bounded
    async def insert_appointment(self, appointment, windows, allow_overlapping_appointments):
        try:
            await self._lock_for_booking(appointment.business_id, windows, allow_overlapping_appointments)
            await self._check_windows(
                appointment.business_id,
                appointment.appointment_date,
                windows,
                allow_overlapping_appointments,
            )
            if appointment.id is None:
                appointment.id = uuid.uuid4()
            self.session.add(appointment)
            await self.session.flush()
            self._add_service_rows(appointment.id, appointment.appointment_date, windows)
            await self.session.commit()
        except SlotConflictError:
            await self.session.rollback()
            raise
        except IntegrityError:
            await self.session.rollback()
            logger.info("Unique slot constraint rejected appointment for %s", appointment.appointment_date)
            raise SlotConflictError()
        return appointment

    @bounded
    async def reschedule_appointment(self, appointment_id, new_date, windows, allow_overlapping_appointments):
        appointment = await self.session.get(
            Appointment, appointment_id, with_for_update=True, populate_existing=True
        )
        if appointment is None:
            raise DataAccessError(f"Appointment {appointment_id} disappeared during reschedule")
        try:
            ensure_expected_state(appointment, require_flagged=True)
            await self._lock_for_booking(appointment.business_id, windows, allow_overlapping_appointments)
            await self._check_windows(
                appointment.business_id,
                new_date,
                windows,
                allow_overlapping_appointments,
                exclude=appointment.id,
            )
            await self.session.execute(
                update(AppointmentService)
                .where(AppointmentService.appointment_id == appointment.id)
                .values(active=None)
            )
            self._add_service_rows(appointment.id, new_date, windows)
            start, end = span(windows)
            appointment.appointment_date = new_date
            appointment.start_time = start
            appointment.end_time = end
            appointment.employee_id = windows[0].employee_id
            appointment.status = AppointmentStatus.PENDING
            appointment.reschedule_required = False
            await self.session.commit()
        except (SlotConflictError, StaleAppointmentError):
            await self.session.rollback()
            raise
        except IntegrityError:
            await self.session.rollback()
            raise SlotConflictError()
        return appointment

    @bounded
    async def update_appointment(self, appointment_id, expected_status=None, require_flagged=False, **changes):
        appointment = await self.session.get(
            Appointment, appointment_id, with_for_update=True, populate_existing=True
        )
        if appointment is None:
            raise DataAccessError(f"Appointment {appointment_id} not found for update")
        try:
            ensure_expected_state(appointment, expected_status, require_flagged)
        except StaleAppointmentError:
            await self.session.rollback()
            raise
        for key, value in changes.items():
            setattr(appointment, key, value)
        if changes.get("status") == AppointmentStatus.CANCELLED:
            await self.session.execute(
                update(AppointmentService)
                .where(AppointmentService.appointment_id == appointment.id)
                .values(active=None)
            )
        await self.session.commit()
        return appointment

"""
In-process AppointmentStore for tests.

Holds model instances in dicts. Writes are serialized by one asyncio.Lock,
which gives the same all-or-nothing behavior as SqlAppointmentStore within a
single process, including the conditional state checks.
"""

import asyncio
import uuid
from datetime import date, datetime
from typing import Optional

from agenda.core.errors import DataAccessError, SlotConflictError
from agenda.models import (
    Appointment,
    AppointmentService,
    Business,
    ClientUnblock,
    Employee,
    Service,
    utc_now,
)
from agenda.slots import BusyInterval, find_conflict, span
from agenda.state_machine import AppointmentStatus
from agenda.store import AppointmentStore, bounded, ensure_expected_state

ACTIVE_CLIENT_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
)


class InMemoryAppointmentStore(AppointmentStore):
    """In-process store; every write runs under one asyncio lock."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.businesses: dict[uuid.UUID, Business] = {}
        self.services: dict[uuid.UUID, Service] = {}
        self.employees: dict[uuid.UUID, Employee] = {}
        self.capabilities: dict[uuid.UUID, set[uuid.UUID]] = {}
        self.appointments: dict[uuid.UUID, Appointment] = {}
        self.appointment_services: dict[uuid.UUID, list[AppointmentService]] = {}
        self.closed_dates: dict[uuid.UUID, dict[date, Optional[str]]] = {}
        self.unblocks: list[ClientUnblock] = []
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Fixture helpers
    # ------------------------------------------------------------------

    def add_business(self, business: Business) -> Business:
        business.id = business.id or uuid.uuid4()
        self.businesses[business.id] = business
        return business

    def add_service(self, service: Service) -> Service:
        service.id = service.id or uuid.uuid4()
        self.services[service.id] = service
        return service

    def add_employee(self, employee: Employee, service_ids=()) -> Employee:
        employee.id = employee.id or uuid.uuid4()
        self.employees[employee.id] = employee
        self.capabilities.setdefault(employee.id, set()).update(service_ids)
        return employee

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @bounded
    async def get_business(self, business_id):
        return self.businesses.get(business_id)

    @bounded
    async def get_services(self, business_id, service_ids):
        wanted = set(service_ids)
        return [s for s in self.services.values() if s.id in wanted and s.business_id == business_id]

    @bounded
    async def list_employees(self, business_id, active_only=True):
        return [
            e
            for e in self.employees.values()
            if e.business_id == business_id and (e.is_active or not active_only)
        ]

    @bounded
    async def get_capabilities(self, employee_ids):
        return {employee_id: set(self.capabilities.get(employee_id, ())) for employee_id in employee_ids}

    @bounded
    async def get_appointment(self, appointment_id):
        return self.appointments.get(appointment_id)

    @bounded
    async def get_appointment_services(self, appointment_id):
        rows = self.appointment_services.get(appointment_id, [])
        return sorted((r for r in rows if r.active), key=lambda r: r.sequence_order)

    def _busy_intervals(self, business_id, on_date, employee_ids=None) -> list[BusyInterval]:
        wanted = set(employee_ids) if employee_ids is not None else None
        busy = []
        for appointment in self.appointments.values():
            if appointment.business_id != business_id or appointment.status == AppointmentStatus.CANCELLED:
                continue
            for row in self.appointment_services.get(appointment.id, []):
                if not row.active or row.appointment_date != on_date:
                    continue
                if wanted is not None and row.employee_id not in wanted:
                    continue
                busy.append(
                    BusyInterval(
                        appointment_id=appointment.id,
                        employee_id=row.employee_id,
                        start_time=row.start_time,
                        end_time=row.end_time,
                    )
                )
        return busy

    @bounded
    async def list_busy_intervals(self, business_id, on_date, employee_ids=None):
        return self._busy_intervals(business_id, on_date, employee_ids)

    @bounded
    async def list_client_appointments(self, business_id, client_id, on_date):
        return [
            a
            for a in self.appointments.values()
            if a.business_id == business_id
            and a.client_id == client_id
            and a.appointment_date == on_date
            and a.status in ACTIVE_CLIENT_STATUSES
        ]

    @bounded
    async def list_appointments_on_date(self, business_id, on_date, statuses):
        wanted = set(statuses)
        found = [
            a
            for a in self.appointments.values()
            if a.business_id == business_id and a.appointment_date == on_date and a.status in wanted
        ]
        return sorted(found, key=lambda a: a.start_time)

    @bounded
    async def count_client_cancellations(self, business_id, client_id, start_utc, end_utc):
        return sum(
            1
            for a in self.appointments.values()
            if a.business_id == business_id
            and a.client_id == client_id
            and a.status == AppointmentStatus.CANCELLED
            and a.cancelled_at is not None
            and start_utc <= a.cancelled_at < end_utc
        )

    @bounded
    async def latest_unblock(self, business_id, client_id):
        times = [u.unblocked_at for u in self.unblocks if u.business_id == business_id and u.client_id == client_id]
        return max(times) if times else None

    @bounded
    async def is_date_closed(self, business_id, on_date):
        return on_date in self.closed_dates.get(business_id, {})

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @bounded
    async def record_unblock(self, business_id, client_id, unblocked_by, unblocked_at=None):
        unblock = ClientUnblock(
            business_id=business_id,
            client_id=client_id,
            unblocked_by=unblocked_by,
            unblocked_at=unblocked_at or utc_now(),
        )
        self.unblocks.append(unblock)
        return unblock

    @bounded
    async def close_date(self, business_id, on_date, reason):
        self.closed_dates.setdefault(business_id, {}).setdefault(on_date, reason)

    def _check_windows(self, business_id, on_date, windows, allow_overlapping_appointments, exclude=None):
        employee_ids = {w.employee_id for w in windows} if allow_overlapping_appointments else None
        busy = self._busy_intervals(business_id, on_date, employee_ids)
        result = find_conflict(windows, busy, allow_overlapping_appointments, exclude_appointment_id=exclude)
        if not result.accepted:
            raise SlotConflictError(result.conflicting_appointment_id)

    def _service_rows(self, appointment_id, on_date, windows) -> list[AppointmentService]:
        return [
            AppointmentService(
                appointment_id=appointment_id,
                service_id=w.service_id,
                employee_id=w.employee_id,
                appointment_date=on_date,
                start_time=w.start_time,
                end_time=w.end_time,
                price_cents=w.price_cents,
                sequence_order=w.sequence_order,
                active=True,
            )
            for w in windows
        ]

    @bounded
    async def insert_appointment(self, appointment, windows, allow_overlapping_appointments):
        async with self._write_lock:
            self._check_windows(
                appointment.business_id,
                appointment.appointment_date,
                windows,
                allow_overlapping_appointments,
            )
            now = utc_now()
            appointment.id = appointment.id or uuid.uuid4()
            appointment.created_at = appointment.created_at or now
            appointment.updated_at = now
            if appointment.reschedule_required is None:
                appointment.reschedule_required = False
            self.appointments[appointment.id] = appointment
            self.appointment_services[appointment.id] = self._service_rows(
                appointment.id, appointment.appointment_date, windows
            )
            return appointment

    @bounded
    async def reschedule_appointment(self, appointment_id, new_date, windows, allow_overlapping_appointments):
        async with self._write_lock:
            appointment = self.appointments.get(appointment_id)
            if appointment is None:
                raise DataAccessError(f"Appointment {appointment_id} disappeared during reschedule")
            ensure_expected_state(appointment, require_flagged=True)
            self._check_windows(
                appointment.business_id,
                new_date,
                windows,
                allow_overlapping_appointments,
                exclude=appointment.id,
            )
            for row in self.appointment_services.get(appointment.id, []):
                row.active = None
            self.appointment_services.setdefault(appointment.id, []).extend(
                self._service_rows(appointment.id, new_date, windows)
            )
            start, end = span(windows)
            appointment.appointment_date = new_date
            appointment.start_time = start
            appointment.end_time = end
            appointment.employee_id = windows[0].employee_id
            appointment.status = AppointmentStatus.PENDING
            appointment.reschedule_required = False
            appointment.updated_at = utc_now()
            return appointment

    @bounded
    async def update_appointment(self, appointment_id, expected_status=None, require_flagged=False, **changes):
        async with self._write_lock:
            appointment = self.appointments.get(appointment_id)
            if appointment is None:
                raise DataAccessError(f"Appointment {appointment_id} not found for update")
            ensure_expected_state(appointment, expected_status, require_flagged)
            for key, value in changes.items():
                setattr(appointment, key, value)
            if changes.get("status") == AppointmentStatus.CANCELLED:
                for row in self.appointment_services.get(appointment.id, []):
                    row.active = None
            appointment.updated_at = utc_now()
            return appointment

    def seed_appointment(
        self,
        appointment: Appointment,
        windows=None,
        cancelled_at: Optional[datetime] = None,
    ) -> Appointment:
        """Insert without checks; for arranging test fixtures."""
        appointment.id = appointment.id or uuid.uuid4()
        if cancelled_at is not None:
            appointment.cancelled_at = cancelled_at
        if appointment.reschedule_required is None:
            appointment.reschedule_required = False
        self.appointments[appointment.id] = appointment
        self.appointment_services[appointment.id] = self._service_rows(
            appointment.id, appointment.appointment_date, windows or []
        )
        return appointment


class InterleavingStore(InMemoryAppointmentStore):
    """
    Same data as another store, but yields to the event loop before every
    state write, so callers gathered together all finish reading before any
    of them writes.
    """

    @classmethod
    def sharing(cls, other: InMemoryAppointmentStore) -> "InterleavingStore":
        store = cls(timeout_seconds=other.timeout_seconds)
        store.__dict__.update(other.__dict__)
        return store

    async def reschedule_appointment(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().reschedule_appointment(*args, **kwargs)

    async def update_appointment(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().update_appointment(*args, **kwargs)

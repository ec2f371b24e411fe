"""
Slot and conflict computation.

A booking is an ordered sequence of services, each with an assigned employee.
Windows are laid out back-to-back from the requested start time. Each window
conflicts with an existing appointment of the same employee when the
half-open intervals intersect: [a, b) and [c, d) overlap iff a < d and c < b.
Adjacent windows ([10:00, 10:30) and [10:30, 11:00)) do not overlap.

These functions are pure; the authoritative check runs again inside the
store's atomic insert (agenda.store).
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Sequence

from .time_utils import add_minutes, format_time_string


def intervals_overlap(start_a, end_a, start_b, end_b) -> bool:
    """Check if two half-open ranges overlap."""
    return start_a < end_b and start_b < end_a


@dataclass(frozen=True)
class WindowRequest:
    """One service in the requested sequence."""
    service_id: uuid.UUID
    employee_id: uuid.UUID
    duration_minutes: int
    price_cents: int = 0


@dataclass(frozen=True)
class ServiceWindow:
    service_id: uuid.UUID
    employee_id: uuid.UUID
    start_time: time
    end_time: time
    price_cents: int
    sequence_order: int

    def to_dict(self) -> dict:
        return {
            "service_id": str(self.service_id),
            "employee_id": str(self.employee_id),
            "start_time": format_time_string(self.start_time),
            "end_time": format_time_string(self.end_time),
            "price_cents": self.price_cents,
            "sequence_order": self.sequence_order,
        }


@dataclass(frozen=True)
class BusyInterval:
    """An existing non-cancelled booking segment for one employee."""
    appointment_id: uuid.UUID
    employee_id: uuid.UUID
    start_time: time
    end_time: time


@dataclass(frozen=True)
class SlotResult:
    accepted: bool
    conflicting_appointment_id: Optional[str] = None


def build_service_windows(start_time: time, items: Sequence[WindowRequest]) -> list[ServiceWindow]:
    """
    Lay out contiguous windows starting at `start_time`.

    Example: 09:00 with durations 30 and 20 gives [09:00, 09:30) and
    [09:30, 09:50).
    """
    if not items:
        raise ValueError("At least one service is required")

    windows = []
    cursor = start_time
    for order, item in enumerate(items):
        if item.duration_minutes <= 0:
            raise ValueError(f"Service {item.service_id} has an invalid duration")
        end = add_minutes(cursor, item.duration_minutes)
        windows.append(
            ServiceWindow(
                service_id=item.service_id,
                employee_id=item.employee_id,
                start_time=cursor,
                end_time=end,
                price_cents=item.price_cents,
                sequence_order=order,
            )
        )
        cursor = end
    return windows


def span(windows: Sequence[ServiceWindow]) -> tuple[time, time]:
    """Overall [start, end) of a window sequence."""
    return windows[0].start_time, windows[-1].end_time


def find_conflict(
    windows: Sequence[ServiceWindow],
    existing: Iterable[BusyInterval],
    allow_overlapping_appointments: bool = True,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> SlotResult:
    """
    Check the candidate windows against existing busy intervals on the same date.

    The same employee can never be double-booked. When the business does not
    allow overlapping appointments, an overlap with any employee conflicts.
    """
    for busy in existing:
        if exclude_appointment_id is not None and busy.appointment_id == exclude_appointment_id:
            continue
        for window in windows:
            same_employee = busy.employee_id == window.employee_id
            if not same_employee and allow_overlapping_appointments:
                continue
            if intervals_overlap(window.start_time, window.end_time, busy.start_time, busy.end_time):
                return SlotResult(accepted=False, conflicting_appointment_id=str(busy.appointment_id))
    return SlotResult(accepted=True)


def available_start_times(
    opens_at: time,
    closes_at: time,
    duration_minutes: int,
    busy: Iterable[tuple[time, time]],
    step_minutes: int = 30,
    not_before: Optional[time] = None,
) -> list[time]:
    """
    Candidate start times within business hours that fit `duration_minutes`
    without touching any busy interval.
    """
    if step_minutes <= 0:
        raise ValueError("step_minutes must be positive")
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")

    blocked = list(busy)
    day = date.min
    cursor = datetime.combine(day, opens_at)
    day_end = datetime.combine(day, closes_at)
    step = timedelta(minutes=step_minutes)
    duration = timedelta(minutes=duration_minutes)

    slots = []
    while cursor + duration <= day_end:
        slot_start = cursor.time()
        slot_end = (cursor + duration).time()
        cursor += step

        # Skip past slots
        if not_before is not None and slot_start <= not_before:
            continue

        if any(intervals_overlap(slot_start, slot_end, b_start, b_end) for b_start, b_end in blocked):
            continue
        slots.append(slot_start)
    return slots

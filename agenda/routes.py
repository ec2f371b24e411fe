"""
HTTP routes for the scheduling core.

Policy rejections come back from the services as values and are rendered
here with the standard error envelope (agenda.core.responses). Exceptions
(bad input, unknown ids, store failures) are rendered by the handlers in
agenda.main.
"""

import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .booking import BookingRequest, BookingService, ServiceSelection
from .compatibility import resolve_eligible_employees
from .core.db import get_session
from .core.errors import NotFoundError
from .core.responses import ErrorCodes, error_response, success_response
from .models import Appointment
from .notifications import NotificationDispatcher, get_dispatcher
from .policy import BookingAccepted
from .reschedule import RescheduleAccepted, RescheduleDeclined, RescheduleService
from .schemas import (
    AppointmentOut,
    AvailabilityOut,
    BookingCreate,
    BookingOut,
    ClientBookingStatusOut,
    ClosedDateCreate,
    ClosureOut,
    EligibleEmployeesOut,
    EmployeeOut,
    RescheduleConfirmRequest,
    RescheduleDeclineRequest,
    SlotOut,
    StatusChangeRequest,
    UnblockRequest,
)
from .store import AppointmentStore, SqlAppointmentStore
from .time_utils import describe_time_status, format_date_string, format_time_string
from .tokens import AppointmentTokenService, get_token_service

router = APIRouter(tags=["agenda"])


# ────────────────────────────────────────────────────────────────
# Dependencies
# ────────────────────────────────────────────────────────────────

async def get_store(session: AsyncSession = Depends(get_session)) -> AppointmentStore:
    return SqlAppointmentStore(session)


def get_clock() -> Callable[[], datetime]:
    return lambda: datetime.now(timezone.utc)


def get_booking_service(
    store: AppointmentStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingService:
    return BookingService(store=store, clock=clock)


def get_reschedule_service(
    store: AppointmentStore = Depends(get_store),
    token_service: AppointmentTokenService = Depends(get_token_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> RescheduleService:
    return RescheduleService(store=store, token_service=token_service, dispatcher=dispatcher, clock=clock)


# ────────────────────────────────────────────────────────────────
# Outcome rendering
# ────────────────────────────────────────────────────────────────

REJECTIONS = {
    "business_unavailable": (status.HTTP_403_FORBIDDEN, ErrorCodes.BUSINESS_UNAVAILABLE),
    "client_blocked": (status.HTTP_403_FORBIDDEN, ErrorCodes.CLIENT_BLOCKED),
    "date_closed": (status.HTTP_409_CONFLICT, ErrorCodes.DATE_CLOSED),
    "conflict": (status.HTTP_409_CONFLICT, ErrorCodes.SLOT_CONFLICT),
    "no_eligible_employee": (status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCodes.NO_ELIGIBLE_EMPLOYEE),
    "invalid_request": (status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCodes.INVALID_INPUT),
    "rejected": (status.HTTP_403_FORBIDDEN, ErrorCodes.INVALID_LINK),
}


def rejection_response(outcome) -> JSONResponse:
    status_code, code = REJECTIONS[outcome.kind]
    details = None
    if outcome.kind not in ("rejected", "invalid_request"):
        details = jsonable_encoder({k: v for k, v in asdict(outcome).items() if k != "kind"})
    return JSONResponse(status_code=status_code, content=error_response(code, outcome.message, details))


def appointment_out(appointment: Appointment, business_timezone: Optional[str], now: datetime) -> dict:
    return AppointmentOut(
        id=appointment.id,
        business_id=appointment.business_id,
        employee_id=appointment.employee_id,
        date=format_date_string(appointment.appointment_date),
        start_time=format_time_string(appointment.start_time),
        end_time=format_time_string(appointment.end_time),
        status=appointment.status,
        reschedule_required=bool(appointment.reschedule_required),
        total_price_cents=appointment.total_price_cents,
        time_status=describe_time_status(
            appointment.appointment_date, appointment.start_time, now=now, tz=business_timezone
        ),
    ).model_dump(mode="json")


# ────────────────────────────────────────────────────────────────
# Businesses
# ────────────────────────────────────────────────────────────────

@router.get("/businesses/{business_id}/eligible-employees")
async def eligible_employees(
    business_id: uuid.UUID,
    service_ids: list[uuid.UUID] = Query(default=[]),
    store: AppointmentStore = Depends(get_store),
):
    """Active employees able to perform every selected service."""
    if await store.get_business(business_id) is None:
        raise NotFoundError("Business", business_id)

    result = await resolve_eligible_employees(store, business_id, service_ids)
    return success_response(
        EligibleEmployeesOut(
            service_ids=service_ids,
            employees=[EmployeeOut(id=e.id, name=e.full_name) for e in result.employees],
            has_no_eligible_employees=result.has_no_eligible_employees,
            degraded=result.degraded,
        ).model_dump(mode="json")
    )


@router.get("/businesses/{business_id}/availability")
async def availability(
    business_id: uuid.UUID,
    date: str = Query(..., description="Date in YYYY-MM-DD format"),
    service_ids: list[uuid.UUID] = Query(default=[]),
    employee_id: Optional[uuid.UUID] = Query(None),
    client_id: Optional[str] = Query(None),
    booking: BookingService = Depends(get_booking_service),
):
    slots = await booking.available_slots(business_id, date, service_ids, employee_id, client_id)
    return success_response(
        AvailabilityOut(date=date, slots=[SlotOut(**slot.to_dict()) for slot in slots]).model_dump(mode="json")
    )


@router.get("/businesses/{business_id}/clients/{client_id}/booking-status")
async def client_booking_status(
    business_id: uuid.UUID,
    client_id: str,
    booking: BookingService = Depends(get_booking_service),
):
    result = await booking.client_booking_status(business_id, client_id)
    return success_response(ClientBookingStatusOut(**result.to_dict()).model_dump(mode="json"))


@router.post("/businesses/{business_id}/clients/{client_id}/unblock")
async def unblock_client(
    business_id: uuid.UUID,
    client_id: str,
    payload: UnblockRequest,
    booking: BookingService = Depends(get_booking_service),
):
    result = await booking.unblock_client(business_id, client_id, payload.unblocked_by)
    return success_response(ClientBookingStatusOut(**result.to_dict()).model_dump(mode="json"))


@router.post("/businesses/{business_id}/closed-dates", status_code=status.HTTP_201_CREATED)
async def close_date(
    business_id: uuid.UUID,
    payload: ClosedDateCreate,
    reschedule: RescheduleService = Depends(get_reschedule_service),
):
    report = await reschedule.close_business_date(business_id, payload.date, payload.reason)
    return success_response(ClosureOut(**report.to_dict()).model_dump(mode="json"))


# ────────────────────────────────────────────────────────────────
# Bookings & appointments
# ────────────────────────────────────────────────────────────────

@router.post("/bookings", status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    booking: BookingService = Depends(get_booking_service),
):
    outcome = await booking.book(
        BookingRequest(
            business_id=payload.business_id,
            appointment_date=payload.date,
            start_time=payload.start_time,
            services=[ServiceSelection(s.service_id, s.employee_id) for s in payload.services],
            client_id=payload.client_id,
            client_email=payload.client_email,
            walk_in_client_name=payload.walk_in_client_name,
            walk_in_client_phone=payload.walk_in_client_phone,
            client_notes=payload.client_notes,
        )
    )
    if not isinstance(outcome, BookingAccepted):
        return rejection_response(outcome)

    return success_response(
        BookingOut(
            appointment_id=outcome.appointment_id,
            date=format_date_string(outcome.appointment_date),
            start_time=outcome.start_time,
            end_time=outcome.end_time,
            total_price_cents=outcome.total_price_cents,
            windows=outcome.windows,
        ).model_dump(mode="json")
    )


@router.get("/appointments/{appointment_id}")
async def get_appointment(
    appointment_id: uuid.UUID,
    store: AppointmentStore = Depends(get_store),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    appointment = await store.get_appointment(appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment", appointment_id)
    business = await store.get_business(appointment.business_id)
    return success_response(appointment_out(appointment, business.timezone if business else None, clock()))


@router.post("/appointments/{appointment_id}/status")
async def change_status(
    appointment_id: uuid.UUID,
    payload: StatusChangeRequest,
    booking: BookingService = Depends(get_booking_service),
):
    appointment = await booking.change_status(appointment_id, payload.status, payload.actor, payload.reason)
    business = await booking.store.get_business(appointment.business_id)
    return success_response(appointment_out(appointment, business.timezone if business else None, booking.clock()))


@router.post("/appointments/{appointment_id}/reschedule/confirm")
async def confirm_reschedule(
    appointment_id: uuid.UUID,
    payload: RescheduleConfirmRequest,
    reschedule: RescheduleService = Depends(get_reschedule_service),
):
    outcome = await reschedule.confirm_reschedule(appointment_id, payload.token, payload.date, payload.start_time)
    if not isinstance(outcome, RescheduleAccepted):
        return rejection_response(outcome)
    return success_response(jsonable_encoder(asdict(outcome)))


@router.post("/appointments/{appointment_id}/reschedule/decline")
async def decline_reschedule(
    appointment_id: uuid.UUID,
    payload: RescheduleDeclineRequest,
    reschedule: RescheduleService = Depends(get_reschedule_service),
):
    outcome = await reschedule.decline_reschedule(appointment_id, payload.token)
    if not isinstance(outcome, RescheduleDeclined):
        return rejection_response(outcome)
    return success_response(jsonable_encoder(asdict(outcome)))

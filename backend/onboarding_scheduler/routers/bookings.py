from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from ..deps import get_scheduling_service
from ..errors import (
    DirectoryVersionConflict,
    InvalidRequest,
    MerchantNotFound,
    NoAssigneeAvailable,
    SchedulingError,
    SlotNoLongerAvailable,
    WriteFailed,
)
from ..models import Booking, BookingType, Candidate
from ..services.crm import CrmStoreError
from ..services.scheduling import SchedulingService


router = APIRouter()
logger = logging.getLogger(__name__)


class VendorResponse(BaseModel):
    person_id: str
    name: str
    email: str


class SlotResponse(BaseModel):
    start: datetime
    end: datetime
    label: str
    available: bool
    eligible_candidate_ids: List[str] = []
    ineligible_reasons: Dict[str, str] = {}


class DayResponse(BaseModel):
    date: date
    slots: List[SlotResponse] = []


class AvailabilityResponse(BaseModel):
    merchant_id: str
    booking_type: BookingType
    service_type: str
    location: List[str] = []
    use_external_vendor: bool = False
    external_vendors: List[VendorResponse] = []
    days: List[DayResponse] = []


class BookRequest(BaseModel):
    merchant_id: str
    booking_type: BookingType
    slot_start: datetime
    assignee_email: str | None = None
    include_weekends: bool = False


class RescheduleRequest(BaseModel):
    merchant_id: str
    booking_type: BookingType
    slot_start: datetime
    include_weekends: bool = False


class CancelRequest(BaseModel):
    merchant_id: str
    booking_type: BookingType


class BookingResponse(BaseModel):
    merchant_id: str
    booking_type: BookingType
    date: date
    slot_start: datetime
    slot_end: datetime
    slot_label: str
    assignee_id: str
    assignee_email: str | None = None
    event_id: str
    status: str
    assignment_method: str | None = None


class CancelResponse(BaseModel):
    merchant_id: str
    booking_type: BookingType
    cancelled_event_id: str | None = None
    already_absent: bool


def _error_detail(exc: Exception, **extra: Any) -> Dict[str, Any]:
    detail: Dict[str, Any] = {
        "code": getattr(exc, "code", "crm_unavailable"),
        "message": getattr(exc, "message", str(exc)),
    }
    detail.update(extra)
    return detail


def http_error(exc: Exception) -> HTTPException:
    """Translate an engine failure into the HTTP error clients see."""
    if isinstance(exc, MerchantNotFound):
        return HTTPException(status.HTTP_404_NOT_FOUND, _error_detail(exc))
    if isinstance(exc, SlotNoLongerAvailable):
        return HTTPException(
            status.HTTP_409_CONFLICT, _error_detail(exc, slot=exc.slot_label)
        )
    if isinstance(exc, NoAssigneeAvailable):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            _error_detail(exc, use_external_vendor=exc.use_external_vendor),
        )
    if isinstance(exc, DirectoryVersionConflict):
        return HTTPException(
            status.HTTP_409_CONFLICT,
            _error_detail(exc, expected_version=exc.expected, current_version=exc.actual),
        )
    if isinstance(exc, InvalidRequest):
        return HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, _error_detail(exc))
    if isinstance(exc, WriteFailed):
        return HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            _error_detail(
                exc,
                side=exc.side,
                retryable=exc.retryable,
                orphaned_event_id=exc.orphaned_event_id,
            ),
        )
    if isinstance(exc, CrmStoreError):
        return HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            _error_detail(exc, side="crm", retryable=True),
        )
    if isinstance(exc, SchedulingError) and exc.retryable:
        return HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE, _error_detail(exc, retryable=True)
        )
    return HTTPException(status.HTTP_400_BAD_REQUEST, _error_detail(exc))


def _vendor(candidate: Candidate) -> VendorResponse:
    return VendorResponse(
        person_id=candidate.person_id, name=candidate.name, email=candidate.email
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        merchant_id=booking.merchant_id,
        booking_type=booking.booking_type,
        date=booking.date,
        slot_start=booking.slot.start,
        slot_end=booking.slot.end,
        slot_label=booking.slot.label,
        assignee_id=booking.assigned_person_id,
        assignee_email=booking.assignee_email,
        event_id=booking.calendar_event_id,
        status=booking.status.value,
        assignment_method=booking.assignment_method,
    )


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    merchant_id: str = Query(..., min_length=1),
    booking_type: BookingType = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    include_weekends: bool = Query(default=False),
    service: SchedulingService = Depends(get_scheduling_service),
) -> AvailabilityResponse:
    try:
        report = await service.get_availability(
            merchant_id,
            booking_type,
            start_date,
            end_date,
            include_weekends=include_weekends,
        )
    except (SchedulingError, CrmStoreError) as exc:
        raise http_error(exc) from exc
    return AvailabilityResponse(
        merchant_id=report.merchant_id,
        booking_type=report.booking_type,
        service_type=report.service_type.value,
        location=report.location,
        use_external_vendor=report.use_external_vendor,
        external_vendors=[_vendor(v) for v in report.external_vendors],
        days=[
            DayResponse(
                date=day.day,
                slots=[
                    SlotResponse(
                        start=r.slot.start,
                        end=r.slot.end,
                        label=r.slot.label,
                        available=r.available,
                        eligible_candidate_ids=r.eligible_candidate_ids,
                        ineligible_reasons=r.ineligible_reasons,
                    )
                    for r in day.slots
                ],
            )
            for day in report.days
        ],
    )


@router.post("/book", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book(
    payload: BookRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> BookingResponse:
    try:
        booking = await service.book(
            payload.merchant_id,
            payload.booking_type,
            payload.slot_start,
            assignee_preference=payload.assignee_email,
            include_weekends=payload.include_weekends,
        )
    except (SchedulingError, CrmStoreError) as exc:
        logger.info(
            "book_request_failed",
            extra={"merchant_id": payload.merchant_id, "code": getattr(exc, "code", None)},
        )
        raise http_error(exc) from exc
    return _booking_response(booking)


@router.post("/reschedule", response_model=BookingResponse)
async def reschedule(
    payload: RescheduleRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> BookingResponse:
    try:
        booking = await service.reschedule(
            payload.merchant_id,
            payload.booking_type,
            payload.slot_start,
            include_weekends=payload.include_weekends,
        )
    except (SchedulingError, CrmStoreError) as exc:
        logger.info(
            "reschedule_request_failed",
            extra={"merchant_id": payload.merchant_id, "code": getattr(exc, "code", None)},
        )
        raise http_error(exc) from exc
    return _booking_response(booking)


@router.post("/cancel", response_model=CancelResponse)
async def cancel(
    payload: CancelRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> CancelResponse:
    try:
        outcome = await service.cancel(payload.merchant_id, payload.booking_type)
    except (SchedulingError, CrmStoreError) as exc:
        raise http_error(exc) from exc
    return CancelResponse(
        merchant_id=outcome.merchant_id,
        booking_type=outcome.booking_type,
        cancelled_event_id=outcome.cancelled_event_id,
        already_absent=outcome.already_absent,
    )

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import List

from ..config import AppSettings
from ..errors import InvalidRequest, NoAssigneeAvailable, SlotNoLongerAvailable
from ..metrics import metrics
from ..models import (
    Booking,
    BookingType,
    Candidate,
    DayAvailability,
    MerchantRecord,
    Role,
    ServiceType,
    TimeSlot,
)
from .assignment import (
    METHOD_EXPLICIT,
    METHOD_ROUND_ROBIN,
    AssignmentCursorStore,
    AssignmentOutcome,
    resolve_assignee,
)
from .availability import AvailabilityEngine
from .booking_coordinator import BookingCoordinator, CancelOutcome
from .booking_events import BookingEventPublisher, booking_events
from .busy_time import BusyTimeAggregator
from .calendar import CalendarProvider, build_calendar_provider
from .calendar_identity import CalendarIdentityResolver
from .candidate_filter import FilterResult, detect_service_type, filter_candidates
from .crm import CrmRecordStore, build_crm_store
from .oauth_tokens import InMemoryOAuthStore, oauth_store
from .personnel import PersonnelDirectory
from .slots import template_for

logger = logging.getLogger(__name__)

_ROLE_FOR_BOOKING = {
    BookingType.TRAINING: Role.TRAINER,
    BookingType.INSTALLATION: Role.INSTALLER,
}


@dataclass
class AvailabilityReport:
    merchant_id: str
    booking_type: BookingType
    service_type: ServiceType
    location: List[str] = field(default_factory=list)
    use_external_vendor: bool = False
    external_vendors: List[Candidate] = field(default_factory=list)
    days: List[DayAvailability] = field(default_factory=list)


@dataclass
class _SlotContext:
    merchant: MerchantRecord
    slot: TimeSlot
    filtered: FilterResult
    eligible: List[Candidate]


class SchedulingService:
    """Availability and booking operations exposed to the HTTP layer."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        directory: PersonnelDirectory,
        crm: CrmRecordStore,
        provider: CalendarProvider,
        identity: CalendarIdentityResolver,
        engine: AvailabilityEngine,
        coordinator: BookingCoordinator,
        cursors: AssignmentCursorStore | None = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.crm = crm
        self.provider = provider
        self.identity = identity
        self.engine = engine
        self.coordinator = coordinator
        self.cursors = cursors or AssignmentCursorStore()

    def _filter(self, merchant: MerchantRecord, booking_type: BookingType) -> FilterResult:
        pool = self.directory.list_candidates(_ROLE_FOR_BOOKING[booking_type])
        return filter_candidates(
            pool,
            booking_type,
            merchant.address,
            merchant.language,
            detect_service_type(merchant.services_bought),
        )

    def _check_range(self, start_day: date, end_day: date) -> None:
        if end_day < start_day:
            raise InvalidRequest("end date must not be before start date")
        span = (end_day - start_day).days + 1
        if span > self.settings.scheduling.max_range_days:
            raise InvalidRequest(
                f"date range may span at most {self.settings.scheduling.max_range_days} days"
            )

    async def get_availability(
        self,
        merchant_id: str,
        booking_type: BookingType,
        start_day: date,
        end_day: date,
        *,
        include_weekends: bool = False,
    ) -> AvailabilityReport:
        self._check_range(start_day, end_day)
        metrics.availability_queries += 1
        merchant = await self.crm.read_merchant(merchant_id)
        filtered = self._filter(merchant, booking_type)
        report = AvailabilityReport(
            merchant_id=merchant_id,
            booking_type=booking_type,
            service_type=detect_service_type(merchant.services_bought),
            location=sorted(loc.value for loc in filtered.location),
        )
        if filtered.use_external_vendor:
            metrics.external_vendor_signals += 1
            report.use_external_vendor = True
            report.external_vendors = [
                c
                for c in self.directory.list_candidates(Role.EXTERNAL_VENDOR)
                if c.active
            ]
            return report

        template = template_for(booking_type, merchant, self.settings.scheduling)
        report.days = await self.engine.compute_availability(
            filtered.candidates,
            start_day,
            end_day,
            template,
            include_weekends=include_weekends,
            excluded=filtered.excluded,
        )
        return report

    async def _slot_context(
        self,
        merchant: MerchantRecord,
        booking_type: BookingType,
        slot_start: datetime,
        include_weekends: bool,
    ) -> _SlotContext:
        template = template_for(booking_type, merchant, self.settings.scheduling)
        slot = template.find(slot_start)
        if slot is None:
            raise InvalidRequest(f"{slot_start.isoformat()} is not a bookable slot start")
        day = slot.start.astimezone(template.tz).date()
        if day.weekday() >= 5 and not include_weekends:
            raise InvalidRequest("weekend slots are not bookable")

        filtered = self._filter(merchant, booking_type)
        if filtered.use_external_vendor:
            metrics.external_vendor_signals += 1
            raise NoAssigneeAvailable(
                "Merchant location is served by an external vendor",
                use_external_vendor=True,
            )
        if not filtered.candidates:
            raise NoAssigneeAvailable()

        grid = await self.engine.compute_availability(
            filtered.candidates, day, day, template, include_weekends=True
        )
        result = next(
            (r for d in grid for r in d.slots if r.slot.start == slot.start), None
        )
        by_id = {c.person_id: c for c in filtered.candidates}
        eligible = [by_id[pid] for pid in (result.eligible_candidate_ids if result else [])]
        return _SlotContext(merchant=merchant, slot=slot, filtered=filtered, eligible=eligible)

    def _assign(
        self,
        ctx: _SlotContext,
        booking_type: BookingType,
        explicit: List[str | None],
    ) -> AssignmentOutcome:
        if not ctx.eligible:
            raise SlotNoLongerAvailable(ctx.slot.label)
        key = booking_type.value
        outcome = resolve_assignee(
            ctx.eligible,
            ctx.merchant,
            explicit=explicit,
            rules=self.directory.mapping_rules(),
            cursor=self.cursors.get(key),
            preferred_ids=ctx.filtered.language_matches,
            booking_type=booking_type,
        )
        if outcome.method == METHOD_ROUND_ROBIN:
            self.cursors.set(key, outcome.cursor)
        logger.info(
            "assignee_resolved",
            extra={
                "merchant_id": ctx.merchant.merchant_id,
                "assignee": outcome.candidate.email,
                "method": outcome.method,
            },
        )
        return outcome

    async def book(
        self,
        merchant_id: str,
        booking_type: BookingType,
        slot_start: datetime,
        *,
        assignee_preference: str | None = None,
        include_weekends: bool = False,
    ) -> Booking:
        merchant = await self.crm.read_merchant(merchant_id)
        existing = await self.crm.read_booking_fields(merchant_id, booking_type)
        if existing.event_id:
            raise InvalidRequest(
                "merchant already has a live booking of this type; reschedule it instead"
            )
        ctx = await self._slot_context(merchant, booking_type, slot_start, include_weekends)
        outcome = self._assign(ctx, booking_type, [assignee_preference, existing.assignee])
        return await self.coordinator.create(
            merchant,
            booking_type,
            ctx.slot,
            outcome.candidate,
            assignment_method=outcome.method,
        )

    async def reschedule(
        self,
        merchant_id: str,
        booking_type: BookingType,
        slot_start: datetime,
        *,
        include_weekends: bool = False,
    ) -> Booking:
        merchant = await self.crm.read_merchant(merchant_id)
        existing = await self.crm.read_booking_fields(merchant_id, booking_type)
        ctx = await self._slot_context(merchant, booking_type, slot_start, include_weekends)

        current = next(
            (
                c
                for c in ctx.filtered.candidates
                if existing.assignee and c.email.casefold() == existing.assignee.casefold()
            ),
            None,
        )
        keep_current = current is not None and (
            current.person_id in {c.person_id for c in ctx.eligible}
            or (
                existing.event_id is not None
                and await self.coordinator.is_free(
                    current, ctx.slot, ignore_event_id=existing.event_id
                )
            )
        )
        if keep_current:
            assignee, method = current, METHOD_EXPLICIT
        else:
            outcome = self._assign(ctx, booking_type, [])
            assignee, method = outcome.candidate, outcome.method
        return await self.coordinator.reschedule(
            merchant,
            booking_type,
            ctx.slot,
            assignee,
            assignment_method=method,
            existing=existing,
        )

    async def cancel(self, merchant_id: str, booking_type: BookingType) -> CancelOutcome:
        return await self.coordinator.cancel(merchant_id, booking_type)


def build_scheduling_service(
    settings: AppSettings,
    *,
    provider: CalendarProvider | None = None,
    crm: CrmRecordStore | None = None,
    directory: PersonnelDirectory | None = None,
    credentials: InMemoryOAuthStore | None = None,
    events: BookingEventPublisher | None = None,
) -> SchedulingService:
    tz = settings.scheduling.timezone
    calendar = settings.calendar
    provider = provider or build_calendar_provider(calendar, timezone=tz)
    crm = crm or build_crm_store(settings.crm, timezone=tz)
    directory = directory or PersonnelDirectory(settings.directory.path)
    credentials = credentials if credentials is not None else oauth_store
    identity = CalendarIdentityResolver(
        provider, credentials, timeout_seconds=calendar.request_timeout_seconds
    )
    aggregator = BusyTimeAggregator(
        provider,
        identity,
        timezone=tz,
        timeout_seconds=calendar.request_timeout_seconds,
        read_attempts=calendar.read_attempts,
        retry_backoff_seconds=calendar.retry_backoff_seconds,
    )
    coordinator = BookingCoordinator(
        provider,
        identity,
        aggregator,
        crm,
        events=events if events is not None else booking_events,
        timeout_seconds=calendar.request_timeout_seconds,
        delete_attempts=calendar.delete_attempts,
        retry_backoff_seconds=calendar.retry_backoff_seconds,
    )
    return SchedulingService(
        settings=settings,
        directory=directory,
        crm=crm,
        provider=provider,
        identity=identity,
        engine=AvailabilityEngine(aggregator),
        coordinator=coordinator,
    )

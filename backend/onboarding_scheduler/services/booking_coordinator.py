from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import List, Sequence

from ..errors import (
    BusyTimeUnavailable,
    CalendarWriteFailed,
    CrmWriteFailed,
    IdentityNotFound,
    SlotNoLongerAvailable,
    StaleReference,
)
from ..metrics import metrics
from ..models import (
    Booking,
    BookingFields,
    BookingStatus,
    BookingType,
    BusyInterval,
    BusySource,
    Candidate,
    MerchantRecord,
    TimeSlot,
)
from .booking_events import (
    BOOKED,
    CANCELLED,
    FAILED,
    RESCHEDULED,
    BookingEventPublisher,
    BookingOutcomeEvent,
    booking_events,
)
from .busy_time import BusyTimeAggregator
from .calendar import CalendarProvider, CalendarProviderError, EventDraft, EventNotFound
from .calendar_identity import CalendarIdentityResolver
from .crm import CrmRecordStore
from .oauth_tokens import OAuthToken

logger = logging.getLogger(__name__)

_CALENDAR_ERRORS = (CalendarProviderError, asyncio.TimeoutError)


class BookingState(str, Enum):
    REQUESTED = "requested"
    CALENDAR_WRITTEN = "calendar_written"
    CRM_WRITTEN = "crm_written"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_TRANSITIONS = {
    BookingState.REQUESTED: {BookingState.CALENDAR_WRITTEN, BookingState.FAILED},
    BookingState.CALENDAR_WRITTEN: {BookingState.CRM_WRITTEN, BookingState.FAILED},
    BookingState.CRM_WRITTEN: {BookingState.CONFIRMED},
    BookingState.CONFIRMED: set(),
    BookingState.FAILED: set(),
}


@dataclass
class BookingAttempt:
    merchant_id: str
    booking_type: BookingType
    state: BookingState = BookingState.REQUESTED
    history: List[BookingState] = field(
        default_factory=lambda: [BookingState.REQUESTED]
    )
    event_id: str | None = None

    def advance(self, state: BookingState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid booking transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class CancelOutcome:
    merchant_id: str
    booking_type: BookingType
    cancelled_event_id: str | None
    already_absent: bool


@dataclass(frozen=True)
class _CalendarTarget:
    calendar_id: str
    credential: OAuthToken


def _event_draft(
    merchant: MerchantRecord,
    booking_type: BookingType,
    assignee: Candidate,
    slot: TimeSlot,
) -> EventDraft:
    kind = "Training" if booking_type == BookingType.TRAINING else "Installation"
    lines = [
        f"Merchant: {merchant.name} ({merchant.merchant_id})",
        f"Assigned: {assignee.name} <{assignee.email}>",
    ]
    if merchant.contact_name or merchant.contact_phone:
        lines.append(
            "Contact: "
            + " ".join(p for p in (merchant.contact_name, merchant.contact_phone) if p)
        )
    if merchant.address:
        lines.append(f"Address: {merchant.address}")
    if merchant.language:
        lines.append(f"Language: {merchant.language}")
    return EventDraft(
        summary=f"{kind}: {merchant.name}",
        start=slot.start,
        end=slot.end,
        description="\n".join(lines),
        location=merchant.address,
        attendees=[assignee.email],
    )


class BookingCoordinator:
    """Apply create, reschedule and cancel to the calendar and the CRM.

    The calendar is always written before the CRM. A create whose CRM write
    fails deletes its calendar event before reporting failure. Deletes are
    retried (they are idempotent); event creation is never retried.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        identity: CalendarIdentityResolver,
        aggregator: BusyTimeAggregator,
        crm: CrmRecordStore,
        *,
        events: BookingEventPublisher | None = None,
        timeout_seconds: float = 8.0,
        delete_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._provider = provider
        self._identity = identity
        self._aggregator = aggregator
        self._crm = crm
        self._events = events if events is not None else booking_events
        self._timeout = timeout_seconds
        self._delete_attempts = max(1, delete_attempts)
        self._backoff = retry_backoff_seconds

    async def _target(self, person_email: str, preferred: str | None = None) -> _CalendarTarget:
        credential = self._identity.credential_for(person_email)
        calendar_id = await self._identity.resolve(person_email, preferred=preferred)
        return _CalendarTarget(calendar_id=calendar_id, credential=credential)

    async def _blocking_interval(
        self,
        assignee: Candidate,
        slot: TimeSlot,
        ignore_event_id: str | None = None,
    ) -> BusyInterval | None:
        """Return the first busy interval overlapping ``slot``, if any.

        ``ignore_event_id`` exempts the booking being moved: its own event
        interval, and free/busy blocks lying wholly inside it. Any other
        event in that window still shows up as its own event interval.
        """
        intervals = await self._aggregator.get_busy_intervals(
            assignee, slot.start, slot.end
        )
        own = [
            i
            for i in intervals
            if ignore_event_id
            and i.source == BusySource.EVENT
            and i.event_id == ignore_event_id
        ]
        for interval in intervals:
            if interval in own:
                continue
            if interval.source == BusySource.FREEBUSY and any(
                o.start <= interval.start and interval.end <= o.end for o in own
            ):
                continue
            if interval.overlaps(slot.start, slot.end):
                return interval
        return None

    async def is_free(
        self, assignee: Candidate, slot: TimeSlot, *, ignore_event_id: str | None = None
    ) -> bool:
        try:
            return await self._blocking_interval(assignee, slot, ignore_event_id) is None
        except (IdentityNotFound, BusyTimeUnavailable):
            return False

    async def _guard(
        self,
        assignee: Candidate,
        slot: TimeSlot,
        ignore_event_id: str | None = None,
    ) -> None:
        """Re-read the assignee's busy time right before writing."""
        try:
            interval = await self._blocking_interval(assignee, slot, ignore_event_id)
        except (IdentityNotFound, BusyTimeUnavailable) as exc:
            metrics.booking_conflicts += 1
            logger.warning(
                "booking_guard_unverifiable",
                extra={"person_id": assignee.person_id, "reason": exc.code},
            )
            raise SlotNoLongerAvailable(slot.label, assignee.email) from exc
        if interval is not None:
            metrics.booking_conflicts += 1
            logger.info(
                "booking_slot_taken",
                extra={
                    "person_id": assignee.person_id,
                    "slot": slot.label,
                    "source": interval.source.value,
                },
            )
            raise SlotNoLongerAvailable(slot.label, assignee.email)

    async def _delete_with_retries(self, target: _CalendarTarget, event_id: str) -> None:
        """Delete an event, retrying transient failures.

        A missing event raises ``StaleReference`` at once; callers treat it
        as already deleted.
        """
        last_exc: BaseException | None = None
        for attempt in range(self._delete_attempts):
            try:
                await asyncio.wait_for(
                    self._provider.delete_event(
                        target.calendar_id, event_id, target.credential
                    ),
                    timeout=self._timeout,
                )
                return
            except EventNotFound as exc:
                raise StaleReference(event_id) from exc
            except _CALENDAR_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "calendar_delete_retry",
                    extra={"event_id": event_id, "attempt": attempt + 1},
                )
                if attempt + 1 < self._delete_attempts and self._backoff > 0:
                    await asyncio.sleep(self._backoff * (attempt + 1))
        raise last_exc  # type: ignore[misc]

    async def _compensate(self, target: _CalendarTarget, event_id: str) -> bool:
        metrics.compensation_attempts += 1
        try:
            await self._delete_with_retries(target, event_id)
        except StaleReference:
            return True
        except _CALENDAR_ERRORS:
            metrics.compensation_failures += 1
            logger.error(
                "booking_compensation_failed",
                exc_info=True,
                extra={"event_id": event_id, "calendar_id": target.calendar_id},
            )
            return False
        logger.info("booking_compensated", extra={"event_id": event_id})
        return True

    async def _lost_race(
        self,
        target: _CalendarTarget,
        event_id: str,
        slot: TimeSlot,
        ignore_event_ids: Sequence[str] = (),
    ) -> bool:
        """Return True when an earlier event now overlaps the booked slot.

        Concurrent attempts that passed the guard at the same time both see
        each other here; the event created first keeps the slot.
        """
        try:
            events = await asyncio.wait_for(
                self._provider.list_events(
                    target.calendar_id, slot.start, slot.end, target.credential
                ),
                timeout=self._timeout,
            )
        except _CALENDAR_ERRORS:
            logger.warning(
                "booking_post_write_check_failed",
                exc_info=True,
                extra={"event_id": event_id},
            )
            return False
        ours = next((e for e in events if e.event_id == event_id), None)
        if ours is None or ours.created is None:
            return False
        our_key = (ours.created, ours.event_id)
        for event in events:
            if event.event_id == event_id or event.event_id in ignore_event_ids:
                continue
            if not event.blocks_time or not (
                event.start < slot.end and event.end > slot.start
            ):
                continue
            if event.created is None or (event.created, event.event_id) < our_key:
                return True
        return False

    async def _write(
        self,
        attempt: BookingAttempt,
        merchant: MerchantRecord,
        booking_type: BookingType,
        slot: TimeSlot,
        assignee: Candidate,
        status: BookingStatus,
        ignore_event_ids: Sequence[str] = (),
    ) -> str:
        try:
            target = await self._target(assignee.email, assignee.calendar_id)
        except (IdentityNotFound, *_CALENDAR_ERRORS) as exc:
            attempt.advance(BookingState.FAILED)
            raise CalendarWriteFailed(
                f"Calendar for {assignee.email} is not reachable"
            ) from exc

        draft = _event_draft(merchant, booking_type, assignee, slot)
        try:
            event_id = await asyncio.wait_for(
                self._provider.create_event(target.calendar_id, draft, target.credential),
                timeout=self._timeout,
            )
        except _CALENDAR_ERRORS as exc:
            attempt.advance(BookingState.FAILED)
            logger.warning(
                "calendar_create_event_failed",
                exc_info=True,
                extra={"merchant_id": merchant.merchant_id, "slot": slot.label},
            )
            raise CalendarWriteFailed("Calendar event could not be created") from exc
        attempt.event_id = event_id
        attempt.advance(BookingState.CALENDAR_WRITTEN)

        if await self._lost_race(target, event_id, slot, ignore_event_ids):
            attempt.advance(BookingState.FAILED)
            metrics.booking_conflicts += 1
            await self._compensate(target, event_id)
            raise SlotNoLongerAvailable(slot.label, assignee.email)

        fields = BookingFields(
            date=slot.start,
            assignee=assignee.email,
            event_id=event_id,
            status=status.value,
        )
        try:
            await asyncio.wait_for(
                self._crm.write_booking_fields(merchant.merchant_id, booking_type, fields),
                timeout=self._timeout,
            )
        except Exception as exc:
            attempt.advance(BookingState.FAILED)
            logger.warning(
                "crm_write_failed",
                exc_info=True,
                extra={"merchant_id": merchant.merchant_id, "event_id": event_id},
            )
            compensated = await self._compensate(target, event_id)
            raise CrmWriteFailed(
                "CRM update failed; calendar event "
                + ("removed" if compensated else "could not be removed"),
                orphaned_event_id=None if compensated else event_id,
            ) from exc
        attempt.advance(BookingState.CRM_WRITTEN)
        attempt.advance(BookingState.CONFIRMED)
        return event_id

    def _booking(
        self,
        merchant: MerchantRecord,
        booking_type: BookingType,
        slot: TimeSlot,
        assignee: Candidate,
        event_id: str,
        status: BookingStatus,
        method: str | None,
    ) -> Booking:
        return Booking(
            merchant_id=merchant.merchant_id,
            booking_type=booking_type,
            date=slot.start.date(),
            slot=slot,
            assigned_person_id=assignee.person_id,
            calendar_event_id=event_id,
            crm_record_id=merchant.merchant_id,
            status=status,
            assignee_email=assignee.email,
            assignment_method=method,
        )

    async def _publish_failure(
        self, merchant: MerchantRecord, booking_type: BookingType, slot: TimeSlot, exc: Exception
    ) -> None:
        metrics.bookings_failed += 1
        await self._events.publish(
            BookingOutcomeEvent(
                kind=FAILED,
                merchant_id=merchant.merchant_id,
                booking_type=booking_type,
                slot_start=slot.start,
                slot_end=slot.end,
                detail=getattr(exc, "code", type(exc).__name__),
            )
        )

    async def create(
        self,
        merchant: MerchantRecord,
        booking_type: BookingType,
        slot: TimeSlot,
        assignee: Candidate,
        *,
        assignment_method: str | None = None,
    ) -> Booking:
        attempt = BookingAttempt(merchant.merchant_id, booking_type)
        try:
            await self._guard(assignee, slot)
            event_id = await self._write(
                attempt, merchant, booking_type, slot, assignee, BookingStatus.SCHEDULED
            )
        except (SlotNoLongerAvailable, CalendarWriteFailed, CrmWriteFailed) as exc:
            await self._publish_failure(merchant, booking_type, slot, exc)
            raise

        metrics.bookings_confirmed += 1
        logger.info(
            "booking_confirmed",
            extra={
                "merchant_id": merchant.merchant_id,
                "booking_type": booking_type.value,
                "event_id": event_id,
                "assignee": assignee.email,
                "states": [s.value for s in attempt.history],
            },
        )
        await self._events.publish(
            BookingOutcomeEvent(
                kind=BOOKED,
                merchant_id=merchant.merchant_id,
                booking_type=booking_type,
                assignee_email=assignee.email,
                event_id=event_id,
                slot_start=slot.start,
                slot_end=slot.end,
            )
        )
        return self._booking(
            merchant,
            booking_type,
            slot,
            assignee,
            event_id,
            BookingStatus.SCHEDULED,
            assignment_method,
        )

    async def _previous_target(self, existing: BookingFields) -> _CalendarTarget | None:
        if not (existing.event_id and existing.assignee):
            return None
        try:
            return await self._target(existing.assignee)
        except (IdentityNotFound, *_CALENDAR_ERRORS):
            logger.warning(
                "previous_assignee_calendar_unreachable",
                exc_info=True,
                extra={"assignee": existing.assignee, "event_id": existing.event_id},
            )
            return None

    async def reschedule(
        self,
        merchant: MerchantRecord,
        booking_type: BookingType,
        slot: TimeSlot,
        assignee: Candidate,
        *,
        assignment_method: str | None = None,
        existing: BookingFields | None = None,
    ) -> Booking:
        attempt = BookingAttempt(merchant.merchant_id, booking_type)
        if existing is None:
            existing = await self._crm.read_booking_fields(merchant.merchant_id, booking_type)
        old_target = await self._previous_target(existing)
        same_person = (existing.assignee or "").casefold() == assignee.email.casefold()
        own_event_id = existing.event_id if same_person else None

        try:
            await self._guard(assignee, slot, own_event_id)
        except SlotNoLongerAvailable as exc:
            await self._publish_failure(merchant, booking_type, slot, exc)
            raise

        previous_event_id = existing.event_id
        if previous_event_id and old_target is not None:
            try:
                await self._delete_with_retries(old_target, previous_event_id)
            except StaleReference:
                logger.info(
                    "reschedule_previous_event_missing",
                    extra={"event_id": previous_event_id},
                )
            except _CALENDAR_ERRORS:
                logger.warning(
                    "reschedule_previous_event_delete_failed",
                    exc_info=True,
                    extra={"event_id": previous_event_id},
                )
        elif previous_event_id:
            logger.warning(
                "reschedule_previous_event_not_deleted",
                extra={"event_id": previous_event_id},
            )

        try:
            event_id = await self._write(
                attempt,
                merchant,
                booking_type,
                slot,
                assignee,
                BookingStatus.RESCHEDULED,
                ignore_event_ids=[previous_event_id] if previous_event_id else [],
            )
        except (SlotNoLongerAvailable, CalendarWriteFailed, CrmWriteFailed) as exc:
            await self._publish_failure(merchant, booking_type, slot, exc)
            raise

        metrics.reschedules_confirmed += 1
        logger.info(
            "booking_rescheduled",
            extra={
                "merchant_id": merchant.merchant_id,
                "booking_type": booking_type.value,
                "previous_event_id": previous_event_id,
                "event_id": event_id,
            },
        )
        await self._events.publish(
            BookingOutcomeEvent(
                kind=RESCHEDULED,
                merchant_id=merchant.merchant_id,
                booking_type=booking_type,
                assignee_email=assignee.email,
                event_id=event_id,
                slot_start=slot.start,
                slot_end=slot.end,
                previous_event_id=previous_event_id,
            )
        )
        return self._booking(
            merchant,
            booking_type,
            slot,
            assignee,
            event_id,
            BookingStatus.RESCHEDULED,
            assignment_method,
        )

    async def cancel(self, merchant_id: str, booking_type: BookingType) -> CancelOutcome:
        existing = await self._crm.read_booking_fields(merchant_id, booking_type)
        already_absent = True
        if existing.event_id:
            if not existing.assignee:
                raise CalendarWriteFailed(
                    f"Event {existing.event_id} has no assignee to locate its calendar"
                )
            try:
                target = await self._target(existing.assignee)
            except (IdentityNotFound, *_CALENDAR_ERRORS) as exc:
                raise CalendarWriteFailed(
                    f"Calendar for {existing.assignee} is not reachable"
                ) from exc
            try:
                await self._delete_with_retries(target, existing.event_id)
                already_absent = False
            except StaleReference:
                logger.info(
                    "cancel_event_already_absent",
                    extra={"merchant_id": merchant_id, "event_id": existing.event_id},
                )
            except _CALENDAR_ERRORS as exc:
                logger.warning(
                    "calendar_delete_event_failed",
                    exc_info=True,
                    extra={"merchant_id": merchant_id, "event_id": existing.event_id},
                )
                raise CalendarWriteFailed("Calendar event could not be deleted") from exc

        cleared = BookingFields(status=BookingStatus.CANCELLED.value)
        try:
            await asyncio.wait_for(
                self._crm.write_booking_fields(merchant_id, booking_type, cleared),
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning(
                "crm_cancel_write_failed",
                exc_info=True,
                extra={"merchant_id": merchant_id},
            )
            raise CrmWriteFailed("CRM record could not be cleared") from exc

        metrics.cancellations_confirmed += 1
        await self._events.publish(
            BookingOutcomeEvent(
                kind=CANCELLED,
                merchant_id=merchant_id,
                booking_type=booking_type,
                assignee_email=existing.assignee,
                event_id=existing.event_id,
            )
        )
        return CancelOutcome(
            merchant_id=merchant_id,
            booking_type=booking_type,
            cancelled_event_id=existing.event_id,
            already_absent=already_absent,
        )

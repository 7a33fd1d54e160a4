from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import inspect
import logging
from typing import Any, Callable, List

from ..models import BookingType

logger = logging.getLogger(__name__)

BOOKED = "booked"
RESCHEDULED = "rescheduled"
CANCELLED = "cancelled"
FAILED = "failed"


@dataclass(frozen=True)
class BookingOutcomeEvent:
    kind: str
    merchant_id: str
    booking_type: BookingType
    assignee_email: str | None = None
    event_id: str | None = None
    slot_start: datetime | None = None
    slot_end: datetime | None = None
    detail: str | None = None
    previous_event_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


Subscriber = Callable[[BookingOutcomeEvent], Any]


class BookingEventPublisher:
    """In-process fan-out of booking outcomes to external notifiers.

    Subscribers may be sync or async. A failing subscriber is logged and
    never changes the outcome of the booking that produced the event.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        if handler not in self._subscribers:
            self._subscribers.append(handler)

    def unsubscribe(self, handler: Subscriber) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def clear(self) -> None:
        self._subscribers.clear()

    async def publish(self, event: BookingOutcomeEvent) -> None:
        logger.info(
            "booking_outcome",
            extra={
                "kind": event.kind,
                "merchant_id": event.merchant_id,
                "booking_type": event.booking_type.value,
                "event_id": event.event_id,
            },
        )
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning(
                    "booking_event_subscriber_failed",
                    exc_info=True,
                    extra={"kind": event.kind, "merchant_id": event.merchant_id},
                )


booking_events = BookingEventPublisher()

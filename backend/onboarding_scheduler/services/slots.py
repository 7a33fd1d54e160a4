from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
import logging
from typing import List, Sequence
from zoneinfo import ZoneInfo

from ..config import SchedulingSettings
from ..models import BookingType, MerchantRecord, TimeSlot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotDefinition:
    start: time
    end: time

    @property
    def label(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


def parse_slot_definition(raw: str) -> SlotDefinition:
    start_raw, _, end_raw = raw.strip().partition("-")
    start = time.fromisoformat(start_raw.strip().zfill(5))
    end = time.fromisoformat(end_raw.strip().zfill(5))
    if start >= end:
        raise ValueError(f"slot {raw!r} must end after it starts")
    return SlotDefinition(start=start, end=end)


def parse_slot_definitions(raw: str) -> List[SlotDefinition]:
    definitions = []
    for part in raw.split(","):
        if not part.strip():
            continue
        try:
            definitions.append(parse_slot_definition(part))
        except ValueError:
            logger.warning("slot_definition_invalid", extra={"detail": part})
    return sorted(definitions, key=lambda d: d.start)


class SlotTemplate:
    """Fixed daily booking windows, evaluated in the business timezone."""

    def __init__(self, definitions: Sequence[SlotDefinition], timezone: str) -> None:
        self.definitions = list(definitions)
        self.tz = ZoneInfo(timezone)

    def slots_for(self, day: date) -> List[TimeSlot]:
        return [
            TimeSlot(
                start=datetime.combine(day, d.start, tzinfo=self.tz),
                end=datetime.combine(day, d.end, tzinfo=self.tz),
                label=d.label,
            )
            for d in self.definitions
        ]

    def localize(self, value: datetime) -> datetime:
        """Attach the business timezone to naive input; keep aware instants."""
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value

    def find(self, start: datetime) -> TimeSlot | None:
        start = self.localize(start)
        day = start.astimezone(self.tz).date()
        for slot in self.slots_for(day):
            if slot.start == start:
                return slot
        return None


def requires_extended_slot(required_features: str | None, features: str) -> bool:
    text = (required_features or "").casefold()
    if not text:
        return False
    return any(f.strip() and f.strip().casefold() in text for f in features.split(","))


def template_for(
    booking_type: BookingType,
    merchant: MerchantRecord | None,
    settings: SchedulingSettings,
) -> SlotTemplate:
    """Return the slot template for a booking type and merchant.

    Training merchants that bought features needing longer sessions get
    the extended slot in place of the last regular training slot.
    """
    if booking_type == BookingType.INSTALLATION:
        return SlotTemplate(
            parse_slot_definitions(settings.installation_slots), settings.timezone
        )

    definitions = parse_slot_definitions(settings.training_slots)
    if merchant is not None and requires_extended_slot(
        merchant.required_features, settings.extended_features
    ):
        try:
            extended = parse_slot_definition(settings.extended_slot)
        except ValueError:
            logger.warning(
                "slot_definition_invalid", extra={"detail": settings.extended_slot}
            )
        else:
            definitions = [d for d in definitions if d.start != extended.start]
            definitions.append(extended)
            definitions.sort(key=lambda d: d.start)
    return SlotTemplate(definitions, settings.timezone)

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, time
import logging
import re
from typing import Awaitable, Callable, List, TypeVar
from zoneinfo import ZoneInfo

from dateutil.rrule import rrulestr

from ..errors import BusyTimeUnavailable
from ..metrics import metrics
from ..models import BusyInterval, BusySource, Candidate
from .calendar import CalendarEvent, CalendarProvider, CalendarProviderError
from .calendar_identity import CalendarIdentityResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RULE_PREFIXES = ("RRULE", "EXRULE", "RDATE", "EXDATE")
_UNTIL_RE = re.compile(r"UNTIL=(\d{8})(T\d{6})?(Z?)", re.IGNORECASE)
_READ_ERRORS = (CalendarProviderError, asyncio.TimeoutError)


def _normalize_until(line: str, tz: ZoneInfo) -> str:
    """Rewrite floating UNTIL values as UTC so they compare with aware starts."""

    def _fix(match: re.Match) -> str:
        if match.group(3):
            return match.group(0)
        if match.group(2):
            local = datetime.strptime(match.group(1) + match.group(2), "%Y%m%dT%H%M%S")
        else:
            local = datetime.combine(
                datetime.strptime(match.group(1), "%Y%m%d").date(), time(23, 59, 59)
            )
        as_utc = local.replace(tzinfo=tz).astimezone(UTC)
        return "UNTIL=" + as_utc.strftime("%Y%m%dT%H%M%SZ")

    return _UNTIL_RE.sub(_fix, line)


def _normalize_exdate(line: str, dtstart: datetime, tz: ZoneInfo) -> str:
    head, _, values = line.partition(":")
    params = [p for p in head.split(";")[1:] if not p.upper().startswith("VALUE=")]
    if any(p.upper().startswith("TZID=") for p in params):
        return line
    parts = [v.strip() for v in values.split(",") if v.strip()]
    if all(v.upper().endswith("Z") for v in parts):
        return line
    fixed = []
    for value in parts:
        if value.upper().endswith("Z"):
            value = (
                datetime.strptime(value[:-1], "%Y%m%dT%H%M%S")
                .replace(tzinfo=UTC)
                .astimezone(tz)
                .strftime("%Y%m%dT%H%M%S")
            )
        elif "T" not in value:
            # Date-only exclusions remove the occurrence on that day.
            value = value + dtstart.strftime("T%H%M%S")
        fixed.append(value)
    return f"EXDATE;TZID={tz.key}:" + ",".join(fixed)


def expand_recurring_event(
    event: CalendarEvent,
    range_start: datetime,
    range_end: datetime,
    tz: ZoneInfo,
) -> List[tuple[datetime, datetime]]:
    """Materialize occurrences of a recurring event that intersect the range.

    Each occurrence keeps the master event's duration and is clipped to
    ``[range_start, range_end)``.
    """
    duration = event.end - event.start
    if duration.total_seconds() <= 0:
        return []
    dtstart = event.start.astimezone(tz)
    lines = []
    for raw in event.recurrence:
        line = raw.strip()
        name = line.split(":", 1)[0].split(";", 1)[0].upper()
        if name not in _RULE_PREFIXES:
            continue
        if name in ("RRULE", "EXRULE"):
            line = _normalize_until(line, tz)
        elif name == "EXDATE":
            line = _normalize_exdate(line, dtstart, tz)
        lines.append(line)
    if not lines:
        return []

    ruleset = rrulestr("\n".join(lines), dtstart=dtstart, forceset=True)
    occurrences = ruleset.between(range_start - duration, range_end, inc=False)
    windows = []
    for occurrence in occurrences:
        start = max(occurrence, range_start)
        end = min(occurrence + duration, range_end)
        if start < end:
            windows.append((start, end))
    return windows


class BusyTimeAggregator:
    """Collect busy intervals for a person from every calendar data source.

    Free/busy, a direct event listing and recurring-event expansion are
    queried concurrently and concatenated without deduplication. One
    failing source is logged and skipped; if all of them fail the person
    is reported as ``BusyTimeUnavailable``.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        identity: CalendarIdentityResolver,
        *,
        timezone: str = "Asia/Singapore",
        timeout_seconds: float = 8.0,
        read_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._provider = provider
        self._identity = identity
        self._tz = ZoneInfo(timezone)
        self._timeout = timeout_seconds
        self._attempts = max(1, read_attempts)
        self._backoff = retry_backoff_seconds

    async def _read_with_retries(
        self, source: str, person_id: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        last_exc: BaseException | None = None
        for attempt in range(self._attempts):
            try:
                return await asyncio.wait_for(call(), timeout=self._timeout)
            except _READ_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "busy_source_read_retry",
                    extra={
                        "source": source,
                        "person_id": person_id,
                        "attempt": attempt + 1,
                        "error": type(exc).__name__,
                    },
                )
                if attempt + 1 < self._attempts and self._backoff > 0:
                    await asyncio.sleep(self._backoff * (attempt + 1))
        raise last_exc  # type: ignore[misc]

    async def get_busy_intervals(
        self, candidate: Candidate, range_start: datetime, range_end: datetime
    ) -> List[BusyInterval]:
        person_id = candidate.person_id
        credential = self._identity.credential_for(candidate.email)
        try:
            calendar_id = await self._identity.resolve(
                candidate.email, preferred=candidate.calendar_id
            )
        except _READ_ERRORS as exc:
            logger.warning(
                "calendar_identity_lookup_failed",
                exc_info=True,
                extra={"person_id": person_id},
            )
            metrics.busy_time_unavailable += 1
            raise BusyTimeUnavailable(person_id, [exc]) from exc

        async def _freebusy() -> List[BusyInterval]:
            blocks = await self._read_with_retries(
                BusySource.FREEBUSY.value,
                person_id,
                lambda: self._provider.get_free_busy(
                    calendar_id, range_start, range_end, credential
                ),
            )
            return self._clip(person_id, blocks, range_start, range_end, BusySource.FREEBUSY)

        async def _events() -> List[BusyInterval]:
            events = await self._read_with_retries(
                BusySource.EVENT.value,
                person_id,
                lambda: self._provider.list_events(
                    calendar_id, range_start, range_end, credential
                ),
            )
            intervals: List[BusyInterval] = []
            for event in events:
                if not event.blocks_time or event.recurrence:
                    continue
                intervals.extend(
                    self._clip(
                        person_id,
                        [(event.start, event.end)],
                        range_start,
                        range_end,
                        BusySource.EVENT,
                        event_id=event.event_id,
                    )
                )
            return intervals

        async def _recurring() -> List[BusyInterval]:
            events = await self._read_with_retries(
                BusySource.RECURRING.value,
                person_id,
                lambda: self._provider.list_recurring_events(
                    calendar_id, range_start, range_end, credential
                ),
            )
            intervals: List[BusyInterval] = []
            for event in events:
                if not (event.blocks_time and event.recurrence):
                    continue
                try:
                    windows = expand_recurring_event(event, range_start, range_end, self._tz)
                except (ValueError, TypeError):
                    logger.warning(
                        "recurrence_expand_failed",
                        exc_info=True,
                        extra={"person_id": person_id, "event_id": event.event_id},
                    )
                    continue
                intervals.extend(
                    BusyInterval(person_id, start, end, BusySource.RECURRING)
                    for start, end in windows
                )
            return intervals

        sources = (BusySource.FREEBUSY, BusySource.EVENT, BusySource.RECURRING)
        results = await asyncio.gather(
            _freebusy(), _events(), _recurring(), return_exceptions=True
        )

        intervals: List[BusyInterval] = []
        failures: List[BaseException] = []
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                failures.append(result)
                metrics.record_source_failure(source.value)
                logger.warning(
                    "busy_source_failed",
                    exc_info=result,
                    extra={"source": source.value, "person_id": person_id},
                )
                continue
            intervals.extend(result)

        if len(failures) == len(sources):
            metrics.busy_time_unavailable += 1
            logger.error(
                "busy_time_unavailable",
                extra={"person_id": person_id, "calendar_id": calendar_id},
            )
            raise BusyTimeUnavailable(person_id, failures)

        intervals.sort(key=lambda i: (i.start, i.end, i.source.value))
        return intervals

    @staticmethod
    def _clip(
        person_id: str,
        blocks: List[tuple[datetime, datetime]],
        range_start: datetime,
        range_end: datetime,
        source: BusySource,
        event_id: str | None = None,
    ) -> List[BusyInterval]:
        intervals = []
        for start, end in blocks:
            start = max(start, range_start)
            end = min(end, range_end)
            if start < end:
                intervals.append(BusyInterval(person_id, start, end, source, event_id))
        return intervals


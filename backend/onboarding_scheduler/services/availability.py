from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timedelta
import logging
from typing import Dict, List, Mapping, Sequence

from ..errors import BusyTimeUnavailable, IdentityNotFound
from ..models import AvailabilityResult, BusyInterval, Candidate, DayAvailability
from .busy_time import BusyTimeAggregator
from .slots import SlotTemplate

logger = logging.getLogger(__name__)

REASON_BUSY = "busy"
REASON_NOT_AUTHORIZED = "calendar_not_authorized"
REASON_BUSY_TIME_UNAVAILABLE = "busy_time_unavailable"


def business_days(start: date, end: date, include_weekends: bool = False) -> List[date]:
    days = []
    current = start
    while current <= end:
        if include_weekends or current.weekday() < 5:
            days.append(current)
        current += timedelta(days=1)
    return days


def is_free(intervals: Sequence[BusyInterval], start: datetime, end: datetime) -> bool:
    return not any(interval.overlaps(start, end) for interval in intervals)


class AvailabilityEngine:
    """Build the merchant-facing slot grid for a pool of candidates."""

    def __init__(self, aggregator: BusyTimeAggregator) -> None:
        self._aggregator = aggregator

    async def fetch_busy(
        self,
        candidates: Sequence[Candidate],
        range_start: datetime,
        range_end: datetime,
    ) -> tuple[Dict[str, List[BusyInterval]], Dict[str, str]]:
        """Fetch busy intervals for every candidate concurrently.

        Returns the intervals of candidates that could be read and a reason
        for each candidate that could not; those are treated as fully busy.
        """

        async def _one(candidate: Candidate) -> List[BusyInterval]:
            return await self._aggregator.get_busy_intervals(
                candidate, range_start, range_end
            )

        results = await asyncio.gather(
            *(_one(c) for c in candidates), return_exceptions=True
        )
        busy: Dict[str, List[BusyInterval]] = {}
        unavailable: Dict[str, str] = {}
        for candidate, result in zip(candidates, results):
            if isinstance(result, IdentityNotFound):
                unavailable[candidate.person_id] = REASON_NOT_AUTHORIZED
            elif isinstance(result, BusyTimeUnavailable):
                unavailable[candidate.person_id] = REASON_BUSY_TIME_UNAVAILABLE
            elif isinstance(result, BaseException):
                logger.warning(
                    "busy_time_fetch_failed",
                    exc_info=result,
                    extra={"person_id": candidate.person_id},
                )
                unavailable[candidate.person_id] = REASON_BUSY_TIME_UNAVAILABLE
            else:
                busy[candidate.person_id] = result
        return busy, unavailable

    async def compute_availability(
        self,
        candidates: Sequence[Candidate],
        start_day: date,
        end_day: date,
        template: SlotTemplate,
        *,
        include_weekends: bool = False,
        excluded: Mapping[str, str] | None = None,
    ) -> List[DayAvailability]:
        days = business_days(start_day, end_day, include_weekends)
        if not days:
            return []
        range_start = datetime.combine(days[0], time.min, tzinfo=template.tz)
        range_end = datetime.combine(
            days[-1] + timedelta(days=1), time.min, tzinfo=template.tz
        )
        busy, unavailable = await self.fetch_busy(candidates, range_start, range_end)

        grid: List[DayAvailability] = []
        for day in days:
            results = []
            for slot in template.slots_for(day):
                eligible: List[str] = []
                reasons: Dict[str, str] = dict(excluded or {})
                for candidate in candidates:
                    pid = candidate.person_id
                    if pid in unavailable:
                        reasons[pid] = unavailable[pid]
                    elif is_free(busy[pid], slot.start, slot.end):
                        eligible.append(pid)
                    else:
                        reasons[pid] = REASON_BUSY
                results.append(
                    AvailabilityResult(
                        slot=slot,
                        available=bool(eligible),
                        eligible_candidate_ids=eligible,
                        ineligible_reasons=reasons,
                    )
                )
            grid.append(DayAvailability(day=day, slots=results))
        logger.info(
            "availability_computed",
            extra={
                "days": len(days),
                "candidates": len(candidates),
                "unavailable_candidates": len(unavailable),
            },
        )
        return grid

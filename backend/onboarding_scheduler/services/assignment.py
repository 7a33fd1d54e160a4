from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Dict, Iterable, Sequence

from ..errors import NoAssigneeAvailable
from ..models import BookingType, Candidate, MerchantRecord

logger = logging.getLogger(__name__)

METHOD_EXPLICIT = "explicit"
METHOD_MAPPING = "mapping"
METHOD_ACCOUNT_OWNER = "account_owner"
METHOD_ROUND_ROBIN = "round_robin"


@dataclass(frozen=True)
class MappingRule:
    """Route a merchant to a fixed assignee by id, exact name or pattern."""

    assignee_email: str
    merchant_id: str | None = None
    merchant_name: str | None = None
    merchant_name_pattern: str | None = None
    booking_type: BookingType | None = None

    def matches(self, merchant: MerchantRecord, booking_type: BookingType | None = None) -> bool:
        if self.booking_type and booking_type and self.booking_type != booking_type:
            return False
        if self.merchant_id and self.merchant_id == merchant.merchant_id:
            return True
        name = (merchant.name or "").strip()
        if self.merchant_name and self.merchant_name.strip().casefold() == name.casefold():
            return True
        if self.merchant_name_pattern and name:
            try:
                return re.search(self.merchant_name_pattern, name, re.IGNORECASE) is not None
            except re.error:
                logger.warning(
                    "mapping_rule_pattern_invalid",
                    extra={"pattern": self.merchant_name_pattern},
                )
        return False


@dataclass(frozen=True)
class AssignmentOutcome:
    candidate: Candidate
    method: str
    cursor: int


def _by_email(candidates: Sequence[Candidate], email: str | None) -> Candidate | None:
    key = (email or "").strip().casefold()
    if not key:
        return None
    for candidate in candidates:
        if candidate.email.casefold() == key or candidate.person_id.casefold() == key:
            return candidate
    return None


def resolve_assignee(
    eligible: Sequence[Candidate],
    merchant: MerchantRecord,
    *,
    explicit: Iterable[str | None] = (),
    rules: Sequence[MappingRule] = (),
    cursor: int = 0,
    preferred_ids: Iterable[str] = (),
    booking_type: BookingType | None = None,
) -> AssignmentOutcome:
    """Pick exactly one assignee from the eligible candidates.

    First match wins: an explicitly named assignee, a mapping rule, the
    merchant's account owner by name, then round-robin. Round-robin walks
    the whole eligible list from ``cursor`` and takes the first
    language-preferred candidate it meets (or the candidate at the cursor
    when none is preferred). The advanced cursor is returned to the caller;
    no state is kept here.
    """
    if not eligible:
        raise NoAssigneeAvailable()

    for email in explicit:
        match = _by_email(eligible, email)
        if match is not None:
            return AssignmentOutcome(match, METHOD_EXPLICIT, cursor)

    for rule in rules:
        if not rule.matches(merchant, booking_type):
            continue
        match = _by_email(eligible, rule.assignee_email)
        if match is not None:
            return AssignmentOutcome(match, METHOD_MAPPING, cursor)

    owner = (merchant.account_owner or "").strip().casefold()
    if owner:
        for candidate in eligible:
            if candidate.name.strip().casefold() == owner:
                return AssignmentOutcome(candidate, METHOD_ACCOUNT_OWNER, cursor)

    preferred = set(preferred_ids)
    size = len(eligible)
    start = cursor % size
    index = start
    if preferred:
        for offset in range(size):
            candidate_index = (start + offset) % size
            if eligible[candidate_index].person_id in preferred:
                index = candidate_index
                break
    return AssignmentOutcome(eligible[index], METHOD_ROUND_ROBIN, index + 1)


class AssignmentCursorStore:
    """Process-local round-robin cursors, one per booking type.

    Best-effort fairness only; concurrent requests may read the same value.
    """

    def __init__(self) -> None:
        self._cursors: Dict[str, int] = {}

    def get(self, key: str) -> int:
        return self._cursors.get(key, 0)

    def set(self, key: str, value: int) -> None:
        self._cursors[key] = value

    def clear(self) -> None:
        self._cursors.clear()

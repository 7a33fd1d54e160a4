from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Dict, Iterable, List

from ..models import BookingType, Candidate, LocationCategory, ServiceType
from .location import categorize_address

logger = logging.getLogger(__name__)

REASON_INACTIVE = "inactive"
REASON_LOCATION = "location_mismatch"


def detect_service_type(services_bought: str | None) -> ServiceType:
    """Classify the CRM "onboarding services bought" text."""
    text = (services_bought or "").casefold()
    if "onsite" in text or "on-site" in text:
        return ServiceType.ONSITE
    if "remote" in text or "online" in text:
        return ServiceType.REMOTE
    return ServiceType.UNKNOWN


def parse_languages(raw: str | Iterable[str] | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    if isinstance(raw, str):
        parts: Iterable[str] = re.split(r"[;,/]", raw)
    else:
        parts = raw
    return frozenset(p.strip().casefold() for p in parts if p and p.strip())


@dataclass
class FilterResult:
    candidates: List[Candidate] = field(default_factory=list)
    use_external_vendor: bool = False
    location: frozenset[LocationCategory] = frozenset()
    location_filtered: bool = False
    excluded: Dict[str, str] = field(default_factory=dict)
    language_matches: List[str] = field(default_factory=list)


def _covers(candidate: Candidate, location: frozenset[LocationCategory]) -> bool:
    return bool(candidate.locations & location)


def filter_candidates(
    pool: Iterable[Candidate],
    booking_type: BookingType,
    merchant_address: str | None,
    merchant_language: str | None,
    service_type: ServiceType,
) -> FilterResult:
    """Reduce a personnel pool to the candidates eligible for a booking.

    Installation and onsite training are restricted to candidates covering
    the merchant's state. Remote training, and training whose service type
    is unknown, ignore location. Language never excludes anyone; matching
    candidates are moved to the front, keeping pool order otherwise.
    """
    result = FilterResult()
    active: List[Candidate] = []
    for candidate in pool:
        if not candidate.active:
            result.excluded[candidate.person_id] = REASON_INACTIVE
            continue
        active.append(candidate)

    needs_location = booking_type == BookingType.INSTALLATION or (
        booking_type == BookingType.TRAINING and service_type == ServiceType.ONSITE
    )
    if booking_type == BookingType.TRAINING and service_type == ServiceType.UNKNOWN:
        logger.warning(
            "service_type_unknown_treated_as_remote",
            extra={"merchant_address": merchant_address},
        )

    eligible = active
    if needs_location:
        location = categorize_address(merchant_address)
        result.location = location
        result.location_filtered = True
        internal = location - {LocationCategory.EXTERNAL}
        eligible = []
        for candidate in active:
            if internal and _covers(candidate, internal):
                eligible.append(candidate)
            else:
                result.excluded[candidate.person_id] = REASON_LOCATION
        if booking_type == BookingType.INSTALLATION and not eligible:
            result.use_external_vendor = True
            logger.info(
                "installation_requires_external_vendor",
                extra={"location": sorted(c.value for c in location)},
            )
            return result

    languages = parse_languages(merchant_language)
    if languages and any(c.languages for c in eligible):
        matches = [c for c in eligible if c.languages & languages]
        others = [c for c in eligible if not c.languages & languages]
        result.language_matches = [c.person_id for c in matches]
        eligible = matches + others

    result.candidates = eligible
    return result

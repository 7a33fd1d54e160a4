from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BookingType(str, Enum):
    TRAINING = "training"
    INSTALLATION = "installation"


class ServiceType(str, Enum):
    ONSITE = "onsite"
    REMOTE = "remote"
    UNKNOWN = "unknown"


class Role(str, Enum):
    TRAINER = "trainer"
    INSTALLER = "installer"
    EXTERNAL_VENDOR = "external_vendor"


class LocationCategory(str, Enum):
    KUALA_LUMPUR = "Kuala Lumpur"
    SELANGOR = "Selangor"
    PUTRAJAYA = "Putrajaya"
    PENANG = "Penang"
    JOHOR = "Johor"
    PERAK = "Perak"
    KEDAH = "Kedah"
    KELANTAN = "Kelantan"
    TERENGGANU = "Terengganu"
    PAHANG = "Pahang"
    NEGERI_SEMBILAN = "Negeri Sembilan"
    MELAKA = "Melaka"
    SABAH = "Sabah"
    SARAWAK = "Sarawak"
    PERLIS = "Perlis"
    LABUAN = "Labuan"
    EXTERNAL = "external"


class BookingStatus(str, Enum):
    SCHEDULED = "Scheduled"
    RESCHEDULED = "Rescheduled"
    CANCELLED = "Cancelled"


class BusySource(str, Enum):
    FREEBUSY = "freebusy"
    EVENT = "event"
    RECURRING = "recurring"


@dataclass(frozen=True)
class BusyInterval:
    """Half-open ``[start, end)`` window during which a person is committed."""

    person_id: str
    start: datetime
    end: datetime
    source: BusySource
    event_id: Optional[str] = None  # set for single-event intervals

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("busy interval must have start < end")

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime
    label: str = ""


@dataclass
class Candidate:
    person_id: str
    name: str
    email: str
    role: Role
    locations: frozenset[LocationCategory] = frozenset()
    languages: frozenset[str] = frozenset()
    calendar_id: Optional[str] = None
    active: bool = True


@dataclass
class AvailabilityResult:
    slot: TimeSlot
    available: bool
    eligible_candidate_ids: List[str] = field(default_factory=list)
    ineligible_reasons: Dict[str, str] = field(default_factory=dict)


@dataclass
class DayAvailability:
    day: date
    slots: List[AvailabilityResult] = field(default_factory=list)


@dataclass
class MerchantRecord:
    merchant_id: str
    name: str
    address: Optional[str] = None
    language: Optional[str] = None
    services_bought: Optional[str] = None
    required_features: Optional[str] = None
    account_owner: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class BookingFields:
    """The booking columns of a merchant's CRM record for one booking type."""

    date: Optional[datetime] = None
    assignee: Optional[str] = None  # assignee email
    event_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class Booking:
    merchant_id: str
    booking_type: BookingType
    date: date
    slot: TimeSlot
    assigned_person_id: str
    calendar_event_id: str
    crm_record_id: str
    status: BookingStatus = BookingStatus.SCHEDULED
    assignee_email: Optional[str] = None
    assignment_method: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

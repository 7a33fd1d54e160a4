from __future__ import annotations


class SchedulingError(Exception):
    """Base class for failures surfaced by the scheduling engine."""

    code = "scheduling_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class IdentityNotFound(SchedulingError):
    """The person has never authorized calendar access."""

    code = "identity_not_found"

    def __init__(self, person_email: str) -> None:
        super().__init__(f"No calendar authorization for {person_email}")
        self.person_email = person_email


class BusyTimeUnavailable(SchedulingError):
    """Every busy-time source failed for a person."""

    code = "busy_time_unavailable"
    retryable = True

    def __init__(self, person_id: str, causes: list[BaseException] | None = None) -> None:
        super().__init__(f"Busy time unavailable for {person_id}")
        self.person_id = person_id
        self.causes = list(causes or [])


class NoAssigneeAvailable(SchedulingError):
    code = "no_assignee_available"

    def __init__(self, message: str = "", use_external_vendor: bool = False) -> None:
        super().__init__(message or "No eligible assignee for this booking")
        self.use_external_vendor = use_external_vendor


class SlotNoLongerAvailable(SchedulingError):
    code = "slot_no_longer_available"

    def __init__(self, slot_label: str, assignee: str | None = None) -> None:
        super().__init__(f"Slot {slot_label} is no longer available")
        self.slot_label = slot_label
        self.assignee = assignee


class WriteFailed(SchedulingError):
    """A booking write failed; ``side`` names the system that failed."""

    retryable = True
    side = "unknown"

    def __init__(self, message: str, orphaned_event_id: str | None = None) -> None:
        super().__init__(message)
        self.orphaned_event_id = orphaned_event_id


class CalendarWriteFailed(WriteFailed):
    code = "calendar_write_failed"
    side = "calendar"


class CrmWriteFailed(WriteFailed):
    code = "crm_write_failed"
    side = "crm"


class StaleReference(SchedulingError):
    """The calendar no longer recognizes an event id held by the CRM."""

    code = "stale_reference"

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Calendar event {event_id} no longer exists")
        self.event_id = event_id


class MerchantNotFound(SchedulingError):
    code = "merchant_not_found"

    def __init__(self, merchant_id: str) -> None:
        super().__init__(f"Merchant {merchant_id} not found")
        self.merchant_id = merchant_id


class InvalidRequest(SchedulingError):
    code = "invalid_request"


class DirectoryVersionConflict(SchedulingError):
    code = "directory_version_conflict"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Personnel directory version is {actual}, update expected {expected}"
        )
        self.expected = expected
        self.actual = actual

from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from onboarding_scheduler.errors import (
    InvalidRequest,
    MerchantNotFound,
    NoAssigneeAvailable,
    SlotNoLongerAvailable,
)
from onboarding_scheduler.metrics import metrics
from onboarding_scheduler.models import BookingType, MerchantRecord
from onboarding_scheduler.services.assignment import (
    METHOD_EXPLICIT,
    METHOD_ROUND_ROBIN,
    MappingRule,
)

TZ = ZoneInfo("Asia/Singapore")
MONDAY = date(2025, 3, 3)


def _at(hour, minute=0, day=3):
    return datetime(2025, 3, day, hour, minute, tzinfo=TZ)


@pytest.mark.anyio
async def test_availability_grid_for_onsite_training(service, provider, authorize):
    authorize("alice@example.com", "bob@example.com", "carol@example.com")
    provider.add_busy("alice@example.com", _at(10), _at(11, 30))

    report = await service.get_availability("m-sel", BookingType.TRAINING, MONDAY, MONDAY)

    assert report.location == ["Selangor"]
    assert report.use_external_vendor is False
    [day] = report.days
    assert day.day == MONDAY
    by_label = {r.slot.label: r for r in day.slots}
    assert by_label["10:00-11:30"].eligible_candidate_ids == ["bob"]
    assert by_label["13:30-15:00"].eligible_candidate_ids == ["alice", "bob"]
    assert by_label["10:00-11:30"].ineligible_reasons["carol"] == "location_mismatch"
    assert metrics.availability_queries == 1


@pytest.mark.anyio
async def test_availability_range_is_validated(service):
    with pytest.raises(InvalidRequest):
        await service.get_availability(
            "m-sel", BookingType.TRAINING, date(2025, 3, 10), MONDAY
        )
    with pytest.raises(InvalidRequest):
        await service.get_availability(
            "m-sel", BookingType.TRAINING, MONDAY, date(2025, 4, 30)
        )


@pytest.mark.anyio
async def test_availability_for_unknown_merchant(service):
    with pytest.raises(MerchantNotFound):
        await service.get_availability("m-nope", BookingType.TRAINING, MONDAY, MONDAY)


@pytest.mark.anyio
async def test_installation_outside_coverage_returns_vendors(service):
    report = await service.get_availability(
        "m-kuching", BookingType.INSTALLATION, MONDAY, MONDAY
    )
    assert report.use_external_vendor is True
    assert report.days == []
    assert [v.person_id for v in report.external_vendors] == ["vendor-east"]
    assert metrics.external_vendor_signals == 1


@pytest.mark.anyio
async def test_book_assigns_round_robin_and_confirms(service, provider, crm, authorize):
    authorize("alice@example.com", "bob@example.com")

    booking = await service.book("m-sel", BookingType.TRAINING, _at(10))

    assert booking.assignee_email == "alice@example.com"
    assert booking.assignment_method == METHOD_ROUND_ROBIN
    assert booking.slot.label == "10:00-11:30"
    assert service.cursors.get("training") == 1
    fields = await crm.read_booking_fields("m-sel", BookingType.TRAINING)
    assert fields.event_id == booking.calendar_event_id


@pytest.mark.anyio
async def test_book_accepts_naive_local_slot_start(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    booking = await service.book(
        "m-sel", BookingType.TRAINING, datetime(2025, 3, 3, 13, 30)
    )
    assert booking.slot.start == _at(13, 30)


@pytest.mark.anyio
async def test_book_honours_assignee_preference(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    booking = await service.book(
        "m-sel", BookingType.TRAINING, _at(10), assignee_preference="bob@example.com"
    )
    assert booking.assignee_email == "bob@example.com"
    assert booking.assignment_method == METHOD_EXPLICIT


@pytest.mark.anyio
async def test_book_uses_mapping_rules_from_directory(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    service.directory.apply_update(
        1, mapping_rules=[MappingRule("bob@example.com", merchant_id="m-sel")]
    )
    booking = await service.book("m-sel", BookingType.TRAINING, _at(10))
    assert booking.assignee_email == "bob@example.com"


@pytest.mark.anyio
async def test_book_skips_busy_candidates(service, provider, authorize):
    authorize("alice@example.com", "bob@example.com")
    provider.add_busy("alice@example.com", _at(10), _at(11))
    booking = await service.book("m-sel", BookingType.TRAINING, _at(10))
    assert booking.assignee_email == "bob@example.com"


@pytest.mark.anyio
async def test_book_rejects_live_booking(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    await service.book("m-sel", BookingType.TRAINING, _at(10))
    with pytest.raises(InvalidRequest):
        await service.book("m-sel", BookingType.TRAINING, _at(13, 30))


@pytest.mark.anyio
async def test_book_rejects_times_outside_the_template(service, authorize):
    authorize("alice@example.com")
    with pytest.raises(InvalidRequest):
        await service.book("m-sel", BookingType.TRAINING, _at(9))
    with pytest.raises(InvalidRequest):
        # Saturday
        await service.book("m-sel", BookingType.TRAINING, _at(10, day=8))


@pytest.mark.anyio
async def test_book_when_everyone_is_busy(service, provider, authorize):
    authorize("alice@example.com", "bob@example.com")
    for email in ("alice@example.com", "bob@example.com"):
        provider.add_busy(email, _at(9), _at(12))
    with pytest.raises(SlotNoLongerAvailable):
        await service.book("m-sel", BookingType.TRAINING, _at(10))


@pytest.mark.anyio
async def test_book_installation_outside_coverage_signals_vendor(service):
    with pytest.raises(NoAssigneeAvailable) as excinfo:
        await service.book("m-kuching", BookingType.INSTALLATION, _at(10))
    assert excinfo.value.use_external_vendor is True


@pytest.mark.anyio
async def test_book_onsite_training_without_coverage(service):
    with pytest.raises(NoAssigneeAvailable) as excinfo:
        await service.book("m-kuching", BookingType.TRAINING, _at(10))
    assert excinfo.value.use_external_vendor is False


@pytest.mark.anyio
async def test_extended_slot_is_bookable_for_feature_merchants(service, crm, authorize):
    authorize("carol@example.com")
    crm.upsert_merchant(
        MerchantRecord(
            merchant_id="m-engage",
            name="Laksa House",
            address="Butterworth, Penang",
            services_bought="Onsite Training",
            required_features="Engage",
        )
    )
    booking = await service.book("m-engage", BookingType.TRAINING, _at(16))
    assert booking.slot.label == "16:00-18:00"
    assert booking.slot.end == _at(18)


@pytest.mark.anyio
async def test_reschedule_keeps_current_assignee(service, provider, authorize):
    authorize("alice@example.com", "bob@example.com")
    first = await service.book("m-sel", BookingType.TRAINING, _at(10))

    moved = await service.reschedule("m-sel", BookingType.TRAINING, _at(13, 30, day=4))

    assert moved.assignee_email == first.assignee_email
    assert moved.assignment_method == METHOD_EXPLICIT
    assert [e.event_id for e in provider.events_for(first.assignee_email)] == [
        moved.calendar_event_id
    ]


@pytest.mark.anyio
async def test_cancel_delegates_to_coordinator(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    booking = await service.book("m-sel", BookingType.TRAINING, _at(10))
    outcome = await service.cancel("m-sel", BookingType.TRAINING)
    assert outcome.cancelled_event_id == booking.calendar_event_id

    rebooked = await service.book("m-sel", BookingType.TRAINING, _at(10))
    assert rebooked.calendar_event_id != booking.calendar_event_id


@pytest.mark.anyio
async def test_reschedule_reassigns_when_current_assignee_is_busy(service, provider, authorize):
    authorize("alice@example.com", "bob@example.com")
    first = await service.book("m-sel", BookingType.TRAINING, _at(10))
    assert first.assignee_email == "alice@example.com"
    provider.add_busy("alice@example.com", _at(13, 30), _at(15))

    report = await service.get_availability("m-sel", BookingType.TRAINING, MONDAY, MONDAY)
    by_label = {r.slot.label: r for r in report.days[0].slots}
    assert by_label["13:30-15:00"].available is True

    moved = await service.reschedule("m-sel", BookingType.TRAINING, _at(13, 30))

    assert moved.assignee_email == "bob@example.com"
    assert moved.assignment_method == METHOD_ROUND_ROBIN
    assert provider.events_for("alice@example.com") == []
    assert [e.event_id for e in provider.events_for("bob@example.com")] == [
        moved.calendar_event_id
    ]


@pytest.mark.anyio
async def test_reschedule_to_same_slot_keeps_assignee_despite_own_booking(
    service, provider, authorize
):
    authorize("alice@example.com", "bob@example.com")
    first = await service.book("m-sel", BookingType.TRAINING, _at(10))
    provider.add_busy("bob@example.com", _at(9), _at(12))

    moved = await service.reschedule("m-sel", BookingType.TRAINING, _at(10))

    assert moved.assignee_email == first.assignee_email
    assert moved.assignment_method == METHOD_EXPLICIT
    assert [e.event_id for e in provider.events_for("alice@example.com")] == [
        moved.calendar_event_id
    ]

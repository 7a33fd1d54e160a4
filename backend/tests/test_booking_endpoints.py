from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient
import pytest

from onboarding_scheduler import deps
from onboarding_scheduler.main import app
from onboarding_scheduler.services.crm import CrmStoreError


client = TestClient(app)


@pytest.fixture
def api(service, authorize):
    authorize("alice@example.com", "bob@example.com")
    app.dependency_overrides[deps.get_scheduling_service] = lambda: service
    try:
        yield service
    finally:
        app.dependency_overrides.clear()


def _availability(**params):
    query = {
        "merchant_id": "m-sel",
        "booking_type": "training",
        "start_date": "2025-03-03",
        "end_date": "2025-03-04",
    }
    query.update(params)
    return client.get("/v1/bookings/availability", params=query)


def test_healthz_echoes_request_id():
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"] == "req-123"


def test_availability_endpoint_returns_slot_grid(api):
    resp = _availability()
    assert resp.status_code == 200
    body = resp.json()
    assert body["service_type"] == "onsite"
    assert body["location"] == ["Selangor"]
    assert [d["date"] for d in body["days"]] == ["2025-03-03", "2025-03-04"]
    first = body["days"][0]["slots"][0]
    assert first["label"] == "10:00-11:30"
    assert first["available"] is True
    assert first["eligible_candidate_ids"] == ["alice", "bob"]
    assert first["start"].startswith("2025-03-03T10:00:00")


def test_availability_unknown_merchant_is_404(api):
    resp = _availability(merchant_id="m-missing")
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "merchant_not_found"


def test_availability_range_too_long_is_422(api):
    resp = _availability(end_date="2025-05-30")
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "invalid_request"


def test_availability_rejects_unknown_booking_type(api):
    resp = _availability(booking_type="demo")
    assert resp.status_code == 422


def test_book_reschedule_cancel_flow(api):
    resp = client.post(
        "/v1/bookings/book",
        json={
            "merchant_id": "m-sel",
            "booking_type": "training",
            "slot_start": "2025-03-03T10:00:00+08:00",
        },
    )
    assert resp.status_code == 201
    booked = resp.json()
    assert booked["assignee_email"] == "alice@example.com"
    assert booked["status"] == "Scheduled"
    assert booked["slot_label"] == "10:00-11:30"

    again = client.post(
        "/v1/bookings/book",
        json={
            "merchant_id": "m-sel",
            "booking_type": "training",
            "slot_start": "2025-03-03T13:30:00+08:00",
        },
    )
    assert again.status_code == 422

    resp = client.post(
        "/v1/bookings/reschedule",
        json={
            "merchant_id": "m-sel",
            "booking_type": "training",
            "slot_start": "2025-03-04T13:30:00+08:00",
        },
    )
    assert resp.status_code == 200
    moved = resp.json()
    assert moved["status"] == "Rescheduled"
    assert moved["event_id"] != booked["event_id"]

    resp = client.post(
        "/v1/bookings/cancel", json={"merchant_id": "m-sel", "booking_type": "training"}
    )
    assert resp.status_code == 200
    assert resp.json()["cancelled_event_id"] == moved["event_id"]
    assert resp.json()["already_absent"] is False

    resp = client.post(
        "/v1/bookings/cancel", json={"merchant_id": "m-sel", "booking_type": "training"}
    )
    assert resp.status_code == 200
    assert resp.json()["already_absent"] is True

    metrics_body = client.get("/metrics").json()
    assert metrics_body["bookings_confirmed"] == 1
    assert metrics_body["reschedules_confirmed"] == 1
    assert metrics_body["cancellations_confirmed"] == 2


def test_book_conflict_is_409(api, provider):
    tz = ZoneInfo("Asia/Singapore")
    for email in ("alice@example.com", "bob@example.com"):
        provider.add_busy(
            email, datetime(2025, 3, 3, 9, tzinfo=tz), datetime(2025, 3, 3, 12, tzinfo=tz)
        )
    resp = client.post(
        "/v1/bookings/book",
        json={
            "merchant_id": "m-sel",
            "booking_type": "training",
            "slot_start": "2025-03-03T10:00:00+08:00",
        },
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "slot_no_longer_available"


def test_book_installation_outside_coverage_flags_vendor(api):
    resp = client.post(
        "/v1/bookings/book",
        json={
            "merchant_id": "m-kuching",
            "booking_type": "installation",
            "slot_start": "2025-03-03T10:00:00+08:00",
        },
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["use_external_vendor"] is True


def test_crm_write_failure_is_503_with_side(api, crm, monkeypatch):
    async def _fail(*args, **kwargs):
        raise CrmStoreError("salesforce_update_status_500")

    monkeypatch.setattr(crm, "write_booking_fields", _fail)
    resp = client.post(
        "/v1/bookings/book",
        json={
            "merchant_id": "m-sel",
            "booking_type": "training",
            "slot_start": "2025-03-03T10:00:00+08:00",
        },
    )
    assert resp.status_code == 503
    detail = resp.json()["detail"]
    assert detail["side"] == "crm"
    assert detail["retryable"] is True
    assert detail["orphaned_event_id"] is None


def test_crm_read_failure_is_503(api, crm, monkeypatch):
    async def _fail(*args, **kwargs):
        raise CrmStoreError("salesforce_query_status_500")

    monkeypatch.setattr(crm, "read_merchant", _fail)
    resp = _availability()
    assert resp.status_code == 503
    assert resp.json()["detail"]["side"] == "crm"

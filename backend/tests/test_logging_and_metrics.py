import logging

from fastapi.testclient import TestClient

from onboarding_scheduler import deps
from onboarding_scheduler.context import request_id_ctx
from onboarding_scheduler.logging_config import RequestIdFilter, configure_logging
from onboarding_scheduler.main import app
from onboarding_scheduler.metrics import Metrics, metrics


client = TestClient(app)


def test_configure_logging_respects_existing_handlers(monkeypatch):
    root = logging.getLogger()
    before = list(root.handlers)
    configure_logging()
    assert root.handlers == before


def test_configure_logging_installs_single_stdout_handler(monkeypatch):
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", [])
    monkeypatch.setattr(root, "level", logging.WARNING)

    configure_logging(logging.DEBUG)
    configure_logging(logging.DEBUG)

    assert len(root.handlers) == 1
    assert root.level == logging.DEBUG
    assert "%(request_id)s" in root.handlers[0].formatter._fmt
    assert any(isinstance(f, RequestIdFilter) for f in root.handlers[0].filters)


def test_metrics_reset_clears_counters():
    m = Metrics()
    m.bookings_confirmed = 3
    m.record_source_failure("freebusy")
    m.record_source_failure("freebusy")
    m.observe_request("/v1/bookings/book", 12.5, failed=False)
    m.observe_request("/v1/bookings/book", 40.0, failed=True)

    snapshot = m.as_dict()
    assert snapshot["bookings_confirmed"] == 3
    assert snapshot["busy_source_failures"] == 2
    assert snapshot["busy_source_failures_by_source"] == {"freebusy": 2}
    route = snapshot["route_metrics"]["/v1/bookings/book"]
    assert route == {
        "request_count": 2,
        "error_count": 1,
        "total_latency_ms": 52.5,
        "max_latency_ms": 40.0,
    }
    assert snapshot["total_errors"] == 1

    m.reset()
    assert m.as_dict()["bookings_confirmed"] == 0
    assert m.busy_source_failures_by_source == {}
    assert m.route_metrics == {}


def test_request_metrics_are_tracked_per_route():
    client.get("/healthz")
    client.get("/healthz")

    body = client.get("/metrics").json()

    assert body["total_requests"] >= 2
    route = body["route_metrics"]["/healthz"]
    assert route["request_count"] == 2
    assert route["error_count"] == 0
    assert metrics.total_requests >= 2


def test_generated_request_id_is_returned():
    resp = client.get("/healthz")
    assert resp.headers["X-Request-ID"]


def _record(message="booking_confirmed"):
    return logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)


def test_request_id_filter_reads_current_request():
    inside = _record()
    token = request_id_ctx.set("req-42")
    try:
        assert RequestIdFilter().filter(inside) is True
    finally:
        request_id_ctx.reset(token)
    assert inside.request_id == "req-42"

    outside = _record()
    RequestIdFilter().filter(outside)
    assert outside.request_id == "-"


def test_booking_logs_carry_the_request_id(service, authorize, caplog):
    caplog.set_level(logging.INFO)
    caplog.handler.addFilter(RequestIdFilter())
    authorize("alice@example.com", "bob@example.com")
    app.dependency_overrides[deps.get_scheduling_service] = lambda: service
    try:
        resp = client.post(
            "/v1/bookings/book",
            json={
                "merchant_id": "m-sel",
                "booking_type": "training",
                "slot_start": "2025-03-03T10:00:00+08:00",
            },
            headers={"X-Request-ID": "req-trace-1"},
        )
    finally:
        app.dependency_overrides.clear()

    assert resp.status_code == 201
    confirmed = [rec for rec in caplog.records if rec.message == "booking_confirmed"]
    assert [rec.request_id for rec in confirmed] == ["req-trace-1"]

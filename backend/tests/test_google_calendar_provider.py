from datetime import UTC, datetime
import time
from zoneinfo import ZoneInfo

from googleapiclient.errors import HttpError
import pytest

from onboarding_scheduler.config import CalendarSettings
from onboarding_scheduler.services import calendar as calendar_module
from onboarding_scheduler.services.calendar import (
    CalendarProviderError,
    EventDraft,
    EventNotFound,
    GoogleCalendarProvider,
    event_from_payload,
)
from onboarding_scheduler.services.oauth_tokens import OAuthToken

TZ = ZoneInfo("Asia/Singapore")
TOKEN = OAuthToken(subject="alice@example.com", access_token="ya29.token")
WINDOW = (datetime(2025, 3, 3, 0, tzinfo=TZ), datetime(2025, 3, 4, 0, tzinfo=TZ))


class _Resp:
    def __init__(self, status: int, reason: str = "error") -> None:
        self.status = status
        self.reason = reason


class _Request:
    def __init__(self, result):
        self._result = result

    def execute(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class _Events:
    def __init__(self, client):
        self._client = client

    def list(self, **kwargs):
        self._client.calls.append(("list", kwargs))
        return _Request(self._client.pages[kwargs.get("pageToken")])

    def insert(self, **kwargs):
        self._client.calls.append(("insert", kwargs))
        return _Request({"id": "g-evt-1"})

    def delete(self, **kwargs):
        self._client.calls.append(("delete", kwargs))
        return _Request(self._client.delete_result)

    def get(self, **kwargs):
        return _Request(self._client.event)


class _FreeBusy:
    def __init__(self, client):
        self._client = client

    def query(self, body):
        self._client.calls.append(("freebusy", body))
        return _Request(self._client.freebusy_payload)


class FakeCalendarClient:
    def __init__(self):
        self.calls = []
        self.pages = {}
        self.freebusy_payload = {}
        self.event = {}
        self.delete_result = ""

    def events(self):
        return _Events(self)

    def freebusy(self):
        return _FreeBusy(self)


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeCalendarClient()
    monkeypatch.setattr(
        GoogleCalendarProvider, "_build_client", lambda self, credential: client
    )
    return client


@pytest.fixture
def google():
    return GoogleCalendarProvider(
        CalendarSettings(backend="google", google_client_id="id", google_client_secret="secret")
    )


def test_event_payload_conversion():
    event = event_from_payload(
        {
            "id": "e1",
            "start": {"dateTime": "2025-03-03T10:00:00+08:00"},
            "end": {"dateTime": "2025-03-03T11:00:00+08:00"},
            "transparency": "transparent",
            "attendees": [{"email": "alice@example.com", "self": True, "responseStatus": "declined"}],
            "created": "2025-02-01T00:00:00Z",
        },
        TZ,
    )
    assert event.start == datetime(2025, 3, 3, 2, tzinfo=UTC)
    assert event.declined is True
    assert event.blocks_time is False
    assert event.created == datetime(2025, 2, 1, tzinfo=UTC)

    all_day = event_from_payload(
        {"id": "e2", "start": {"date": "2025-03-03"}, "end": {"date": "2025-03-04"}}, TZ
    )
    assert all_day.all_day is True
    assert all_day.start == datetime(2025, 3, 3, tzinfo=TZ)

    assert event_from_payload({"id": "e3", "start": {}}, TZ) is None


@pytest.mark.anyio
async def test_free_busy_blocks_are_parsed(google, fake_client):
    fake_client.freebusy_payload = {
        "calendars": {
            "alice@example.com": {
                "busy": [{"start": "2025-03-03T02:00:00Z", "end": "2025-03-03T03:30:00Z"}]
            }
        }
    }

    blocks = await google.get_free_busy("alice@example.com", *WINDOW, TOKEN)

    assert blocks == [
        (datetime(2025, 3, 3, 2, tzinfo=UTC), datetime(2025, 3, 3, 3, 30, tzinfo=UTC))
    ]
    _, body = fake_client.calls[0]
    assert body["timeMin"] == "2025-03-02T16:00:00Z"
    assert body["items"] == [{"id": "alice@example.com"}]


@pytest.mark.anyio
async def test_free_busy_calendar_errors_raise(google, fake_client):
    fake_client.freebusy_payload = {
        "calendars": {"alice@example.com": {"errors": [{"reason": "notFound"}]}}
    }
    with pytest.raises(CalendarProviderError):
        await google.get_free_busy("alice@example.com", *WINDOW, TOKEN)


@pytest.mark.anyio
async def test_listing_follows_pages_and_splits_recurring(google, fake_client):
    single = {
        "id": "one-off",
        "start": {"dateTime": "2025-03-03T10:00:00+08:00"},
        "end": {"dateTime": "2025-03-03T11:00:00+08:00"},
    }
    weekly = {
        "id": "standup",
        "start": {"dateTime": "2025-01-06T09:00:00+08:00"},
        "end": {"dateTime": "2025-01-06T09:30:00+08:00"},
        "recurrence": ["RRULE:FREQ=WEEKLY;BYDAY=MO"],
    }
    fake_client.pages = {
        None: {"items": [single], "nextPageToken": "p2"},
        "p2": {"items": [weekly]},
    }

    events = await google.list_events("alice@example.com", *WINDOW, TOKEN)
    recurring = await google.list_recurring_events("alice@example.com", *WINDOW, TOKEN)

    assert [e.event_id for e in events] == ["one-off"]
    assert [e.event_id for e in recurring] == ["standup"]
    assert recurring[0].recurrence == ("RRULE:FREQ=WEEKLY;BYDAY=MO",)
    tokens = [kwargs["pageToken"] for name, kwargs in fake_client.calls if name == "list"]
    assert tokens == [None, "p2", None, "p2"]


@pytest.mark.anyio
async def test_create_event_sends_local_times(google, fake_client):
    draft = EventDraft(
        summary="Onsite Training: Kopi Corner",
        start=datetime(2025, 3, 3, 10, tzinfo=TZ),
        end=datetime(2025, 3, 3, 11, 30, tzinfo=TZ),
        location="Petaling Jaya, Selangor",
        attendees=["owner@kopi.example"],
    )

    event_id = await google.create_event("alice@example.com", draft, TOKEN)

    assert event_id == "g-evt-1"
    _, kwargs = fake_client.calls[0]
    body = kwargs["body"]
    assert body["start"] == {"dateTime": "2025-03-03T10:00:00+08:00", "timeZone": "Asia/Singapore"}
    assert body["location"] == "Petaling Jaya, Selangor"
    assert body["attendees"] == [{"email": "owner@kopi.example"}]


@pytest.mark.anyio
@pytest.mark.parametrize("status", [404, 410])
async def test_missing_event_maps_to_event_not_found(google, fake_client, status):
    fake_client.delete_result = HttpError(_Resp(status, "Not Found"), b"gone")
    with pytest.raises(EventNotFound):
        await google.delete_event("alice@example.com", "evt-1", TOKEN)


@pytest.mark.anyio
async def test_other_http_errors_map_to_provider_error(google, fake_client):
    fake_client.delete_result = HttpError(_Resp(500, "Backend Error"), b"boom")
    with pytest.raises(CalendarProviderError) as excinfo:
        await google.delete_event("alice@example.com", "evt-1", TOKEN)
    assert not isinstance(excinfo.value, EventNotFound)
    assert "500" in str(excinfo.value)


@pytest.mark.anyio
async def test_cancelled_event_reads_as_missing(google, fake_client):
    fake_client.event = {
        "id": "evt-1",
        "status": "cancelled",
        "start": {"dateTime": "2025-03-03T10:00:00+08:00"},
        "end": {"dateTime": "2025-03-03T11:00:00+08:00"},
    }
    with pytest.raises(EventNotFound):
        await google.get_event("alice@example.com", "evt-1", TOKEN)


def test_expired_credential_is_refreshed_before_use(google, monkeypatch):
    refreshed = []
    monkeypatch.setattr(
        calendar_module.UserCredentials,
        "refresh",
        lambda self, request: refreshed.append(self.token),
    )
    monkeypatch.setattr(calendar_module, "build", lambda *args, **kwargs: "calendar-client")

    stale = OAuthToken(
        subject="alice@example.com",
        access_token="ya29.old",
        refresh_token="1//refresh",
        expires_at=time.time() - 60,
    )
    assert google._build_client(stale) == "calendar-client"
    assert refreshed == ["ya29.old"]

    fresh = OAuthToken(
        subject="alice@example.com",
        access_token="ya29.new",
        refresh_token="1//refresh",
        expires_at=time.time() + 3600,
    )
    google._build_client(fresh)
    assert refreshed == ["ya29.old"]
    assert google._credentials(fresh).expired is False

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials as UserCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import CalendarSettings
from .oauth_tokens import OAuthToken

logger = logging.getLogger(__name__)


class CalendarProviderError(Exception):
    """A calendar provider call failed (transport, quota, permission)."""


class EventNotFound(CalendarProviderError):
    """The referenced event does not exist (or was already deleted)."""


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    start: datetime
    end: datetime
    summary: str = ""
    description: str = ""
    status: str = "confirmed"  # confirmed | tentative | cancelled
    transparency: str = "opaque"  # opaque | transparent
    all_day: bool = False
    declined: bool = False
    recurrence: Tuple[str, ...] = ()
    created: Optional[datetime] = None

    @property
    def blocks_time(self) -> bool:
        """Return True when the event should count as busy time."""
        return (
            self.status != "cancelled"
            and self.transparency != "transparent"
            and not self.declined
        )


@dataclass
class EventDraft:
    summary: str
    start: datetime
    end: datetime
    description: str = ""
    location: str | None = None
    attendees: List[str] = field(default_factory=list)


class CalendarProvider(Protocol):
    async def get_primary_calendar_id(self, credential: OAuthToken) -> str: ...

    async def get_free_busy(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[tuple[datetime, datetime]]: ...

    async def list_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]: ...

    async def list_recurring_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]: ...

    async def create_event(
        self, calendar_id: str, draft: EventDraft, credential: OAuthToken
    ) -> str: ...

    async def delete_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> None: ...

    async def get_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> CalendarEvent: ...


def _parse_datetime_utc(raw: str | None) -> datetime | None:
    """Parse an RFC3339 timestamp from Google into an aware UTC datetime.

    Naive values are taken as UTC; unparseable values return None.
    """
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_event_time(payload: Dict[str, Any], tz: ZoneInfo) -> tuple[datetime | None, bool]:
    if payload.get("dateTime"):
        return _parse_datetime_utc(payload["dateTime"]), False
    if payload.get("date"):
        # All-day events occupy the whole local day.
        day = date.fromisoformat(payload["date"])
        return datetime.combine(day, time.min, tzinfo=tz), True
    return None, False


def event_from_payload(item: Dict[str, Any], tz: ZoneInfo) -> CalendarEvent | None:
    """Convert a Google Calendar event resource into a ``CalendarEvent``."""
    start, all_day = _parse_event_time(item.get("start") or {}, tz)
    end, _ = _parse_event_time(item.get("end") or {}, tz)
    if start is None or end is None:
        return None
    declined = any(
        attendee.get("self") and attendee.get("responseStatus") == "declined"
        for attendee in item.get("attendees") or []
    )
    return CalendarEvent(
        event_id=str(item.get("id", "")),
        start=start,
        end=end,
        summary=item.get("summary") or "",
        description=item.get("description") or "",
        status=item.get("status") or "confirmed",
        transparency=item.get("transparency") or "opaque",
        all_day=all_day,
        declined=declined,
        recurrence=tuple(item.get("recurrence") or ()),
        created=_parse_datetime_utc(item.get("created")),
    )


class InMemoryCalendarProvider:
    """Calendar backend used in stub mode and tests.

    Calendars are keyed by calendar id. A person's primary calendar id
    defaults to their email address, the way Google exposes it.
    """

    def __init__(self) -> None:
        self._events: Dict[str, Dict[str, CalendarEvent]] = {}
        self._busy: Dict[str, List[tuple[datetime, datetime]]] = {}
        self._primary: Dict[str, str] = {}
        self._counter = 0
        self._last_created: datetime | None = None

    def set_primary_calendar(self, person_email: str, calendar_id: str) -> None:
        self._primary[person_email.strip().lower()] = calendar_id

    def add_busy(self, calendar_id: str, start: datetime, end: datetime) -> None:
        self._busy.setdefault(calendar_id, []).append((start, end))

    def add_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        if event.created is None:
            event = replace(event, created=self._next_created())
        self._events.setdefault(calendar_id, {})[event.event_id] = event
        return event

    def events_for(self, calendar_id: str) -> List[CalendarEvent]:
        return sorted(
            self._events.get(calendar_id, {}).values(), key=lambda e: e.start
        )

    def clear(self) -> None:
        self._events.clear()
        self._busy.clear()
        self._primary.clear()
        self._counter = 0
        self._last_created = None

    def _next_created(self) -> datetime:
        # Strictly increasing so creation order is a total order.
        now = datetime.now(UTC)
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def get_primary_calendar_id(self, credential: OAuthToken) -> str:
        await asyncio.sleep(0)
        return self._primary.get(credential.subject, credential.subject)

    async def get_free_busy(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[tuple[datetime, datetime]]:
        await asyncio.sleep(0)
        blocks = [
            (s, e) for s, e in self._busy.get(calendar_id, []) if s < end and e > start
        ]
        for event in self._events.get(calendar_id, {}).values():
            if event.recurrence or not event.blocks_time:
                continue
            if event.start < end and event.end > start:
                blocks.append((event.start, event.end))
        blocks.sort(key=lambda b: b[0])
        return blocks

    async def list_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]:
        await asyncio.sleep(0)
        return [
            event
            for event in self.events_for(calendar_id)
            if not event.recurrence and event.start < end and event.end > start
        ]

    async def list_recurring_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]:
        await asyncio.sleep(0)
        return [
            event
            for event in self.events_for(calendar_id)
            if event.recurrence and event.start < end
        ]

    async def create_event(
        self, calendar_id: str, draft: EventDraft, credential: OAuthToken
    ) -> str:
        await asyncio.sleep(0)
        self._counter += 1
        event_id = f"evt_{self._counter}"
        self.add_event(
            calendar_id,
            CalendarEvent(
                event_id=event_id,
                start=draft.start,
                end=draft.end,
                summary=draft.summary,
                description=draft.description,
            ),
        )
        return event_id

    async def delete_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> None:
        await asyncio.sleep(0)
        if self._events.get(calendar_id, {}).pop(event_id, None) is None:
            raise EventNotFound(event_id)

    async def get_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> CalendarEvent:
        await asyncio.sleep(0)
        event = self._events.get(calendar_id, {}).get(event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event


class GoogleCalendarProvider:
    """Google Calendar v3 backend using each person's OAuth credential.

    googleapiclient is blocking, so every request runs in a worker thread.
    """

    def __init__(self, settings: CalendarSettings, timezone: str = "Asia/Singapore") -> None:
        self._settings = settings
        self._tz = ZoneInfo(timezone)

    def _credentials(self, credential: OAuthToken) -> UserCredentials:
        expiry = None
        if credential.expires_at is not None:
            # google-auth compares expiry as naive UTC.
            expiry = datetime.fromtimestamp(credential.expires_at, UTC).replace(tzinfo=None)
        return UserCredentials(
            token=credential.access_token,
            refresh_token=credential.refresh_token,
            token_uri=self._settings.token_uri,
            client_id=self._settings.google_client_id,
            client_secret=self._settings.google_client_secret,
            expiry=expiry,
        )

    def _build_client(self, credential: OAuthToken):
        creds = self._credentials(credential)
        if creds.expired and creds.refresh_token:
            creds.refresh(Request())
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    async def _call(self, credential: OAuthToken, operation):
        def _run():
            client = self._build_client(credential)
            return operation(client)

        try:
            return await asyncio.to_thread(_run)
        except HttpError as exc:
            status = getattr(getattr(exc, "resp", None), "status", None)
            if status in (404, 410):
                raise EventNotFound(str(exc)) from exc
            raise CalendarProviderError(f"google_calendar_http_{status}") from exc

    async def get_primary_calendar_id(self, credential: OAuthToken) -> str:
        payload = await self._call(
            credential,
            lambda client: client.calendars().get(calendarId="primary").execute(),
        )
        calendar_id = payload.get("id")
        if not calendar_id:
            raise CalendarProviderError("primary_calendar_missing_id")
        return calendar_id

    async def get_free_busy(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[tuple[datetime, datetime]]:
        body = {
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
            "timeZone": "UTC",
            "items": [{"id": calendar_id}],
        }
        payload = await self._call(
            credential, lambda client: client.freebusy().query(body=body).execute()
        )
        calendar = (payload.get("calendars") or {}).get(calendar_id) or {}
        if calendar.get("errors"):
            raise CalendarProviderError(f"freebusy_errors:{calendar['errors']}")
        blocks: List[tuple[datetime, datetime]] = []
        for item in calendar.get("busy", []):
            busy_start = _parse_datetime_utc(item.get("start"))
            busy_end = _parse_datetime_utc(item.get("end"))
            if busy_start and busy_end:
                blocks.append((busy_start, busy_end))
        return blocks

    async def _list_raw(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[Dict[str, Any]]:
        def _list_all(client) -> List[Dict[str, Any]]:
            items: List[Dict[str, Any]] = []
            page_token = None
            while True:
                response = (
                    client.events()
                    .list(
                        calendarId=calendar_id,
                        timeMin=_rfc3339(start),
                        timeMax=_rfc3339(end),
                        singleEvents=False,
                        showDeleted=False,
                        maxResults=250,
                        pageToken=page_token,
                    )
                    .execute()
                )
                items.extend(response.get("items", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    return items

        return await self._call(credential, _list_all)

    async def list_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]:
        items = await self._list_raw(calendar_id, start, end, credential)
        events = []
        for item in items:
            if item.get("recurrence"):
                continue
            event = event_from_payload(item, self._tz)
            if event is not None:
                events.append(event)
        return events

    async def list_recurring_events(
        self, calendar_id: str, start: datetime, end: datetime, credential: OAuthToken
    ) -> List[CalendarEvent]:
        items = await self._list_raw(calendar_id, start, end, credential)
        events = []
        for item in items:
            if not item.get("recurrence"):
                continue
            event = event_from_payload(item, self._tz)
            if event is not None:
                events.append(event)
        return events

    async def create_event(
        self, calendar_id: str, draft: EventDraft, credential: OAuthToken
    ) -> str:
        body: Dict[str, Any] = {
            "summary": draft.summary,
            "description": draft.description,
            "start": {"dateTime": draft.start.isoformat(), "timeZone": str(self._tz)},
            "end": {"dateTime": draft.end.isoformat(), "timeZone": str(self._tz)},
        }
        if draft.location:
            body["location"] = draft.location
        if draft.attendees:
            body["attendees"] = [{"email": email} for email in draft.attendees]
        created = await self._call(
            credential,
            lambda client: client.events()
            .insert(calendarId=calendar_id, body=body)
            .execute(),
        )
        event_id = created.get("id")
        if not event_id:
            raise CalendarProviderError("created_event_missing_id")
        return event_id

    async def delete_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> None:
        await self._call(
            credential,
            lambda client: client.events()
            .delete(calendarId=calendar_id, eventId=event_id)
            .execute(),
        )

    async def get_event(
        self, calendar_id: str, event_id: str, credential: OAuthToken
    ) -> CalendarEvent:
        payload = await self._call(
            credential,
            lambda client: client.events()
            .get(calendarId=calendar_id, eventId=event_id)
            .execute(),
        )
        event = event_from_payload(payload, self._tz)
        if event is None or event.status == "cancelled":
            raise EventNotFound(event_id)
        return event


def build_calendar_provider(
    settings: CalendarSettings, timezone: str = "Asia/Singapore"
) -> CalendarProvider:
    if settings.backend == "google":
        return GoogleCalendarProvider(settings, timezone=timezone)
    return InMemoryCalendarProvider()

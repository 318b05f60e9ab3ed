from __future__ import annotations

import hashlib
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
from caldav.lib.error import DAVError, NotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calsync.models import CalDAVConfig, CalendarInfo, EventRecord, date_to_datetime


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _vevents(calendar_obj: ICalendar) -> list[ICEvent]:
    return [component for component in calendar_obj.walk() if component.name == "VEVENT"]


def _address_label(value: Any) -> str:
    if value is None:
        return ""
    params = getattr(value, "params", {}) or {}
    name = str(params.get("CN", "")).strip()
    if name:
        return name
    text = str(value).strip()
    if text.lower().startswith("mailto:"):
        return text[len("mailto:") :]
    return text


def _attendee_labels(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    labels = [_address_label(item) for item in items]
    return [label for label in labels if label]


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _extract_uid_from_raw_ical(raw_data: Any) -> str:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except ValueError:
        return ""
    for vevent in _vevents(calendar_obj):
        return str(vevent.get("UID", "")).strip()
    return ""


class CalDAVService:
    """Provider adapter: snapshots and single-event writes against a CalDAV server."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def _refresh_calendars(self) -> dict[str, Any]:
        self._connect()
        self._calendar_cache = {str(calendar.url): calendar for calendar in self._principal.calendars()}
        return self._calendar_cache

    def list_calendars(self) -> list[CalendarInfo]:
        return [
            CalendarInfo(calendar_id=calendar_id, name=getattr(calendar, "name", "") or calendar_id, url=calendar_id)
            for calendar_id, calendar in self._refresh_calendars().items()
        ]

    def _get_calendar(self, calendar_id: str) -> Any:
        calendar = self._calendar_cache.get(calendar_id) or self._refresh_calendars().get(calendar_id)
        if calendar is None:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return calendar

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[EventRecord]:
        """All occurrences overlapping ``[start, end)``, recurring series expanded."""
        calendar = self._get_calendar(calendar_id)
        resources = calendar.search(start=start, end=end, event=True, expand=True)
        events: list[EventRecord] = []
        for resource in resources:
            for event in self._parse_resource(calendar_id, resource):
                if event.uid:
                    events.append(event)
        return events

    def _parse_resource(self, calendar_id: str, resource: Any) -> list[EventRecord]:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        href = str(getattr(resource, "url", "") or "")
        etag = _data_hash(raw_ical)
        return [self._parse_vevent(calendar_id, vevent, href, etag) for vevent in _vevents(calendar_obj)]

    def _parse_vevent(self, calendar_id: str, vevent: ICEvent, href: str, etag: str) -> EventRecord:
        dtstart_raw = _decoded(vevent, "DTSTART")
        start = _coerce_datetime(dtstart_raw)
        end = _coerce_datetime(_decoded(vevent, "DTEND"))
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        if start is not None and end is None:
            duration = _decoded(vevent, "DURATION")
            end = start + duration if isinstance(duration, timedelta) else start + timedelta(hours=1)
        recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
        transparency = str(vevent.get("TRANSP", "OPAQUE")).strip().upper()
        return EventRecord(
            calendar_id=calendar_id,
            uid=str(vevent.get("UID", "")).strip(),
            summary=str(vevent.get("SUMMARY", "")).strip(),
            description=str(vevent.get("DESCRIPTION", "")).strip(),
            location=str(vevent.get("LOCATION", "")).strip(),
            url=str(vevent.get("URL", "")).strip(),
            organizer=_address_label(vevent.get("ORGANIZER")),
            attendees=_attendee_labels(vevent.get("ATTENDEE")),
            start=start,
            end=end,
            occurrence=recurrence_id,
            all_day=all_day,
            repeating=recurrence_id is not None or vevent.get("RRULE") is not None,
            busy=transparency != "TRANSPARENT",
            href=href,
            etag=etag,
        )

    def _build_ical(self, event: EventRecord) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//calsync//Calendar Sync//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", event.uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("SUMMARY", event.summary or "")
        vevent.add("DESCRIPTION", event.description or "")
        if event.location:
            vevent.add("LOCATION", event.location)
        if event.all_day and event.start is not None:
            vevent.add("DTSTART", event.start.date())
            if event.end is not None:
                # end already carries the exclusive DTEND date it was read from.
                vevent.add("DTEND", event.end.date())
        else:
            if event.start is not None:
                vevent.add("DTSTART", event.start)
            if event.end is not None:
                vevent.add("DTEND", event.end)
        vevent.add("TRANSP", "OPAQUE" if event.busy else "TRANSPARENT")
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
            if isinstance(resource, list):
                resource = resource[0] if resource else None
            if resource is not None:
                return resource
        except NotFoundError:
            pass
        for resource in calendar.events():
            if _extract_uid_from_raw_ical(getattr(resource, "data", "")) == uid:
                return resource
        return None

    def _saved_record(self, calendar_id: str, resource: Any, uid: str) -> EventRecord:
        parsed = self._parse_resource(calendar_id, resource)
        for record in parsed:
            if record.uid == uid:
                return record
        if parsed:
            return parsed[0]
        return EventRecord(calendar_id=calendar_id, uid=uid, href=str(getattr(resource, "url", "") or ""))

    def create_event(self, calendar_id: str, event: EventRecord) -> EventRecord:
        calendar = self._get_calendar(calendar_id)
        uid = event.uid or f"calsync-{uuid.uuid4()}"
        resource = calendar.save_event(self._build_ical(event.with_updates(uid=uid)))
        return self._saved_record(calendar_id, resource, uid)

    def update_event(self, calendar_id: str, event: EventRecord) -> EventRecord:
        calendar = self._get_calendar(calendar_id)
        resource = None
        if event.href:
            try:
                resource = calendar.event_by_url(event.href)
                resource.load()
            except NotFoundError:
                resource = None
        if resource is None:
            resource = self._find_resource_by_uid(calendar, event.uid)
        if resource is None:
            raise RuntimeError(f"Target event not found: {event.uid}")
        resource.data = self._build_ical(event)
        resource.save()
        return self._saved_record(calendar_id, resource, event.uid)

    def delete_event(self, calendar_id: str, uid: str = "", href: str = "") -> bool:
        calendar = self._get_calendar(calendar_id)
        resource = None
        if href:
            try:
                resource = calendar.event_by_url(href)
            except NotFoundError:
                resource = None
        if resource is None and uid:
            resource = self._find_resource_by_uid(calendar, uid)
        if resource is None:
            return False
        try:
            resource.delete()
            return True
        except DAVError:
            return False

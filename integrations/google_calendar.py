"""Google Calendar integration for the order calendar agent.

The client reads events from a single calendar and inserts new ones with
their guests notified.  It does no duplicate detection of its own; the
``create-event`` tool built on top of it checks for an existing event with
the same summary in the requested window before writing, and removes the
order senders from the guest list.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, validator

from integrations.google_auth import GoogleCredentials, GoogleIntegrationError

NO_EVENTS_FOUND = "No Events Found in Calendar"
EVENT_SCHEDULED = "The meeting has been scheduled successfully."
EVENT_NOT_CREATED = "Unable to create a meeting"
EVENT_ALREADY_SCHEDULED = (
    "An event with this summary is already scheduled in this time window; "
    "no new event was created."
)


logger = logging.getLogger(__name__)


class GoogleCalendarIntegrationError(GoogleIntegrationError):
    """Raised when the Calendar API rejects or fails a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def parse_datetime(value: str, time_zone: Optional[str] = None) -> datetime:
    """Parse an ISO 8601 timestamp, attaching ``time_zone`` when it is naive."""

    sanitized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    parsed = datetime.fromisoformat(sanitized)
    if parsed.tzinfo is None:
        try:
            parsed = parsed.replace(tzinfo=ZoneInfo(time_zone) if time_zone else UTC)
        except (ZoneInfoNotFoundError, ValueError):
            parsed = parsed.replace(tzinfo=UTC)
    return parsed


def to_rfc3339(value: str, time_zone: Optional[str] = None) -> str:
    """Render a timestamp the way ``events.list`` expects its window bounds."""

    return parse_datetime(value, time_zone).isoformat()


def _event_start(payload: Dict[str, Any]) -> Optional[datetime]:
    stamp = payload.get("dateTime") or payload.get("date")
    if not stamp:
        return None
    try:
        return parse_datetime(stamp, payload.get("timeZone"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Attendee:
    email: str
    display_name: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"email": self.email, "displayName": self.display_name}


@dataclass
class CalendarEventRecord:
    """Snapshot of a calendar event returned to the model."""

    id: str
    summary: Optional[str]
    status: Optional[str]
    creator: Dict[str, Any] = field(default_factory=dict)
    organizer: Dict[str, Any] = field(default_factory=dict)
    start: Dict[str, Any] = field(default_factory=dict)
    end: Dict[str, Any] = field(default_factory=dict)
    meeting_url: Optional[str] = None
    event_type: Optional[str] = None
    attendees: List[Attendee] = field(default_factory=list)

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "CalendarEventRecord":
        return cls(
            id=item.get("id", ""),
            summary=item.get("summary"),
            status=item.get("status"),
            creator=item.get("creator") or {},
            organizer=item.get("organizer") or {},
            start=item.get("start") or {},
            end=item.get("end") or {},
            meeting_url=item.get("hangoutLink"),
            event_type=item.get("eventType"),
            attendees=[
                Attendee(email=guest.get("email", ""), display_name=guest.get("displayName"))
                for guest in item.get("attendees") or []
                if guest.get("email")
            ],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "status": self.status,
            "creator": self.creator,
            "organizer": self.organizer,
            "startTime": self.start,
            "endTime": self.end,
            "meetingUrl": self.meeting_url,
            "eventType": self.event_type,
            "attendees": [attendee.as_dict() for attendee in self.attendees],
        }


class GoogleCalendarClient:
    """Small wrapper around the Google Calendar API used by the order tools."""

    def __init__(
        self,
        credentials: Optional[GoogleCredentials] = None,
        *,
        service: Any = None,
        calendar_id: str = "primary",
    ):
        if credentials is None and service is None:
            raise GoogleCalendarIntegrationError(
                "GoogleCalendarClient needs credentials or a prepared service."
            )
        self._credentials = credentials
        self._service = service
        self.calendar_id = calendar_id

    def _service_client(self):
        if self._service is None:
            credentials = self._credentials.ensure_valid()
            self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        return self._service

    def list_events(
        self,
        *,
        query: str,
        time_min: str,
        time_max: str,
        max_results: int = 50,
    ) -> Union[List[CalendarEventRecord], str]:
        """Return events in the window matching ``query``, or ``NO_EVENTS_FOUND``."""

        logger.info(
            "Listing calendar events on %s matching %r between %s and %s",
            self.calendar_id,
            query,
            time_min,
            time_max,
        )
        try:
            response = (
                self._service_client()
                .events()
                .list(
                    calendarId=self.calendar_id,
                    q=query,
                    timeMin=time_min,
                    timeMax=time_max,
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=max(max_results, 1),
                )
                .execute()
            )
        except HttpError as exc:
            raise GoogleCalendarIntegrationError(
                f"Calendar list request failed: {exc}",
                status=getattr(exc.resp, "status", None),
            ) from exc

        records = [CalendarEventRecord.from_api(item) for item in response.get("items") or []]
        if not records:
            return NO_EVENTS_FOUND
        return records

    def create_event(
        self,
        *,
        summary: str,
        start: Dict[str, str],
        end: Dict[str, str],
        attendees: Sequence[Dict[str, Optional[str]]],
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert an event and notify every attendee. Guests are used as given."""

        body: Dict[str, Any] = {
            "summary": summary,
            "start": dict(start),
            "end": dict(end),
            "attendees": [
                {key: value for key, value in guest.items() if value}
                for guest in attendees
            ],
        }
        if description:
            body["description"] = description

        logger.info(
            "Creating calendar event '%s' from %s to %s for attendees %s",
            summary,
            start.get("dateTime"),
            end.get("dateTime"),
            [guest.get("email") for guest in attendees],
        )
        try:
            return (
                self._service_client()
                .events()
                .insert(
                    calendarId=self.calendar_id,
                    body=body,
                    sendUpdates="all",
                    conferenceDataVersion=1,
                )
                .execute()
            )
        except HttpError as exc:
            status = getattr(exc.resp, "status", None)
            raise GoogleCalendarIntegrationError(
                f"Calendar insert failed ({status}): {exc}",
                status=status,
            ) from exc

    def find_duplicate(
        self,
        *,
        summary: str,
        start: str,
        end: str,
    ) -> Optional[CalendarEventRecord]:
        """Return an event with the same summary and the same start as the request."""

        wanted = summary.strip().lower()
        wanted_start = parse_datetime(start)
        events = self.list_events(query=summary.strip(), time_min=start, time_max=end)
        if events == NO_EVENTS_FOUND:
            return None
        for event in events:
            if (event.summary or "").strip().lower() != wanted:
                continue
            if _event_start(event.start) == wanted_start:
                return event
        return None


# --- Tool schemas -----------------------------------------------------------
class EventDateTime(BaseModel):
    """Start or end of an event."""

    model_config = ConfigDict(populate_by_name=True)

    date_time: str = Field(
        ...,
        alias="dateTime",
        description="The ISO 8601 date time of the start or end of the event.",
    )
    time_zone: str = Field(
        ...,
        alias="timeZone",
        description="Current IANA timezone string, e.g. America/Toronto.",
    )

    @validator("date_time")
    def _ensure_iso(cls, value: str):  # type: ignore[override]
        parse_datetime(value)
        return value

    @validator("time_zone")
    def _ensure_zone(cls, value: str):  # type: ignore[override]
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown IANA timezone: {value}") from exc
        return value

    def as_payload(self) -> Dict[str, str]:
        return {"dateTime": self.date_time, "timeZone": self.time_zone}

    def to_rfc3339(self) -> str:
        return to_rfc3339(self.date_time, self.time_zone)


class AttendeeInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., description="This is the email of the attendee.")
    display_name: str = Field(
        default="",
        alias="displayName",
        description="This is the name of the attendee.",
    )

    @validator("email")
    def _ensure_email(cls, value: str):  # type: ignore[override]
        trimmed = value.strip()
        if "@" not in trimmed:
            raise ValueError(f"Not an email address: {value}")
        return trimmed


class GetEventsInput(BaseModel):
    """Schema for searching the calendar."""

    model_config = ConfigDict(populate_by_name=True)

    q: str = Field(
        ...,
        description=(
            "Free text used to search events: summary, description, location, "
            "attendee's displayName or email, organizer's displayName or email."
        ),
    )
    time_min: str = Field(..., alias="timeMin", description="The from datetime to get the events.")
    time_max: str = Field(..., alias="timeMax", description="The to datetime to get the events.")

    @validator("time_min", "time_max")
    def _ensure_iso(cls, value: str):  # type: ignore[override]
        parse_datetime(value)
        return value


class CreateEventInput(BaseModel):
    """Schema for scheduling an order on the calendar."""

    summary: str = Field(..., description="This is the title of the event.")
    description: Optional[str] = Field(
        default=None,
        description="Optional details about the order.",
    )
    start: EventDateTime
    end: EventDateTime
    attendees: List[AttendeeInput] = Field(
        default_factory=list,
        description="Guests to invite. Never include the email of the order sender.",
    )

    @validator("end")
    def _ensure_end_after_start(cls, value: EventDateTime, values):  # type: ignore[override]
        start = values.get("start")
        if start is not None and parse_datetime(value.date_time, value.time_zone) <= parse_datetime(
            start.date_time, start.time_zone
        ):
            raise ValueError("end must be after start")
        return value


def _normalize_emails(addresses: Iterable[str]) -> set:
    return {address.strip().lower() for address in addresses if address and address.strip()}


def create_calendar_tools(
    client: GoogleCalendarClient,
    *,
    excluded_attendees: Sequence[str] = (),
    deduplicate: bool = True,
    default_time_zone: Optional[str] = None,
) -> List[StructuredTool]:
    """Create LangChain tools that read and write the order calendar."""

    excluded = _normalize_emails(excluded_attendees)

    def get_events(q: str, time_min: str, time_max: str) -> str:
        events = client.list_events(
            query=q,
            time_min=to_rfc3339(time_min, default_time_zone),
            time_max=to_rfc3339(time_max, default_time_zone),
        )
        if events == NO_EVENTS_FOUND:
            return NO_EVENTS_FOUND
        return json.dumps([event.as_dict() for event in events], ensure_ascii=False)

    def create_event(
        summary: str,
        start: EventDateTime,
        end: EventDateTime,
        attendees: Sequence[AttendeeInput] = (),
        description: Optional[str] = None,
    ) -> str:
        guests = []
        for attendee in attendees:
            if attendee.email.lower() in excluded:
                logger.info("Dropping excluded attendee %s from '%s'", attendee.email, summary)
                continue
            guests.append(Attendee(attendee.email, attendee.display_name or None).as_dict())

        if deduplicate:
            existing = client.find_duplicate(
                summary=summary,
                start=start.to_rfc3339(),
                end=end.to_rfc3339(),
            )
            if existing is not None:
                logger.info("Skipping duplicate event '%s' (existing id %s)", summary, existing.id)
                return f"{EVENT_ALREADY_SCHEDULED} Existing event id: {existing.id}"

        created = client.create_event(
            summary=summary,
            start=start.as_payload(),
            end=end.as_payload(),
            attendees=guests,
            description=description,
        )
        if not created or not created.get("id"):
            return EVENT_NOT_CREATED
        return f"{EVENT_SCHEDULED} Event id: {created['id']}"

    return [
        StructuredTool.from_function(
            get_events,
            name="get-events",
            description="This tool can be used to check the meetings and orders already in the calendar.",
            args_schema=GetEventsInput,
        ),
        StructuredTool.from_function(
            create_event,
            name="create-event",
            description="This tool can be used to create events and schedule meetings.",
            args_schema=CreateEventInput,
        ),
    ]


__all__ = [
    "Attendee",
    "CalendarEventRecord",
    "CreateEventInput",
    "EVENT_ALREADY_SCHEDULED",
    "EVENT_NOT_CREATED",
    "EVENT_SCHEDULED",
    "EventDateTime",
    "GetEventsInput",
    "GoogleCalendarClient",
    "GoogleCalendarIntegrationError",
    "NO_EVENTS_FOUND",
    "create_calendar_tools",
    "parse_datetime",
    "to_rfc3339",
]

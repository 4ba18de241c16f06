"""Mapping between Google Calendar event resources and CRM calendar events."""

from __future__ import annotations

from datetime import datetime, timezone

from src.crm_connect.integrations.google_calendar.events import (
    STATUS_CANCELLED,
    STATUS_SCHEDULED,
    CalendarEvent,
)

UNTITLED = "(No title)"


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def google_event_to_crm(event: dict) -> CalendarEvent | None:
    """Map a Google event resource to a CRM event.

    Returns None for events the CRM does not import: all-day events (``date``
    instead of ``dateTime``) and resources without an id or times.
    """
    google_id = event.get("id")
    start = (event.get("start") or {}).get("dateTime")
    end = (event.get("end") or {}).get("dateTime")
    if not google_id or not start or not end:
        return None

    return CalendarEvent(
        google_event_id=google_id,
        title=event.get("summary") or UNTITLED,
        description=event.get("description"),
        location=event.get("location"),
        start_time=_parse_datetime(start),
        end_time=_parse_datetime(end),
        status=STATUS_CANCELLED if event.get("status") == "cancelled" else STATUS_SCHEDULED,
    )


def crm_event_to_google(event: CalendarEvent) -> dict:
    """Build the Google event body for creating or updating ``event``."""
    body: dict = {
        "summary": event.title,
        "start": {
            "dateTime": event.start_time.astimezone(timezone.utc).isoformat(),
            "timeZone": "UTC",
        },
        "end": {
            "dateTime": event.end_time.astimezone(timezone.utc).isoformat(),
            "timeZone": "UTC",
        },
    }
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location
    if event.id is not None:
        body["extendedProperties"] = {"private": {"crmEventId": str(event.id)}}
    if event.status == STATUS_CANCELLED:
        body["status"] = "cancelled"
    return body

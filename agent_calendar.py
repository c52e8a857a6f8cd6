#!/usr/bin/env python3
"""
Google Calendar helpers (primary calendar, bearer access token).

Functions:
    list_events(token, time_min=None, time_max=None, max_results=10) -> list[CalendarEventSummary]
    create_event(token, summary, start, end, attendees=None, description=None) -> dict

Notes:
- list_events defaults to [now, now + 7 days], expands recurring events and
  orders by start time. All-day events carry their `date` instead of a
  formatted date-time.
- create_event pins start/end to LOCAL_TZ and asks Google to notify attendees.
"""
from __future__ import annotations
import os, sys, json, logging, datetime as dt
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import anyio
import httpx
from dotenv import load_dotenv
load_dotenv()

from pydantic import BaseModel, Field

from agent_http import open_client, get_json, post_json

EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
LOCAL_TZ = os.getenv("LOCAL_TZ", "America/Los_Angeles")
DEFAULT_WINDOW_DAYS = 7

logger = logging.getLogger(__name__)


class CalendarEventSummary(BaseModel):
    id: str
    summary: str
    start: Optional[str] = None
    end: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)


def iso_utc(value: dt.datetime) -> str:
    """RFC 3339 in UTC with millisecond precision, e.g. 2024-01-01T23:59:59.999Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    u = value.astimezone(dt.timezone.utc)
    return u.strftime("%Y-%m-%dT%H:%M:%S") + f".{u.microsecond // 1000:03d}Z"


def _display_datetime(value: str) -> str:
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(ZoneInfo(LOCAL_TZ))
    clock = parsed.strftime("%I:%M:%S %p").lstrip("0")
    return f"{parsed.month}/{parsed.day}/{parsed.year}, {clock}"


def _when(edge: Optional[Dict[str, Any]]) -> Optional[str]:
    if not edge:
        return None
    if edge.get("dateTime"):
        return _display_datetime(edge["dateTime"])
    return edge.get("date")


def summarize_event(item: Dict[str, Any]) -> CalendarEventSummary:
    return CalendarEventSummary(
        id=item.get("id", ""),
        summary=item.get("summary") or "(No title)",
        start=_when(item.get("start")),
        end=_when(item.get("end")),
        location=item.get("location"),
        attendees=[a.get("email") for a in item.get("attendees") or [] if a.get("email")],
    )


async def list_events(
    token: str,
    time_min: Optional[str] = None,
    time_max: Optional[str] = None,
    max_results: int = 10,
    client: Optional[httpx.AsyncClient] = None,
) -> List[CalendarEventSummary]:
    now = dt.datetime.now(dt.timezone.utc)
    params = {
        "timeMin": time_min or iso_utc(now),
        "timeMax": time_max or iso_utc(now + dt.timedelta(days=DEFAULT_WINDOW_DAYS)),
        "maxResults": max_results,
        "singleEvents": "true",
        "orderBy": "startTime",
    }
    logger.debug("Listing calendar events %s .. %s", params["timeMin"], params["timeMax"])
    async with open_client(client) as ac:
        data = await get_json(ac, EVENTS_URL, token, params)
    return [summarize_event(item) for item in data.get("items") or []]


def build_event_body(
    summary: str,
    start: str,
    end: str,
    attendees: Optional[List[str]] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "summary": summary,
        "start": {"dateTime": start, "timeZone": LOCAL_TZ},
        "end": {"dateTime": end, "timeZone": LOCAL_TZ},
    }
    if attendees:
        event["attendees"] = [{"email": email} for email in attendees]
    if description:
        event["description"] = description
    return event


async def create_event(
    token: str,
    summary: str,
    start: str,
    end: str,
    attendees: Optional[List[str]] = None,
    description: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    body = build_event_body(summary, start, end, attendees, description)
    if os.getenv("DRY_RUN", "0").lower() in {"1", "true", "yes", "on"}:
        logger.info("DRY_RUN enabled; skipping event creation for %r", summary)
        return {"id": "dry-run", **body}
    logger.debug("Creating calendar event %r (%s .. %s)", summary, start, end)
    async with open_client(client) as ac:
        return await post_json(ac, EVENTS_URL, token, body, params={"sendUpdates": "all"})


# CLI
def _usage():
    print("Usage: python agent_calendar.py list --token ACCESS [--from ISO] [--to ISO]")
    print('       python agent_calendar.py create --token ACCESS --summary "Sync" --start 2025-01-15T10:00:00 --end 2025-01-15T10:30:00 [--attendees a@x.com,b@y.com]')


def main():
    args = sys.argv[1:]
    if not args:
        _usage(); sys.exit(1)
    cmd = args[0]

    def get_opt(flag, default=None):
        if flag in args:
            i = args.index(flag)
            if i + 1 < len(args): return args[i + 1]
        return default

    token = get_opt("--token", os.getenv("GOOGLE_ACCESS_TOKEN"))
    if not token:
        _usage(); sys.exit(2)
    if cmd == "list":
        events = anyio.run(list_events, token, get_opt("--from"), get_opt("--to"))
        print(json.dumps([e.model_dump() for e in events], indent=2))
    elif cmd == "create":
        attendees = get_opt("--attendees")
        res = anyio.run(
            create_event, token, get_opt("--summary", ""), get_opt("--start"), get_opt("--end"),
            attendees.split(",") if attendees else None, get_opt("--description"),
        )
        print(json.dumps(res, indent=2))
    else:
        _usage(); sys.exit(2)


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    main()

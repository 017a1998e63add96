"""Summary: Calendar service interfaces and implementations.

Importance: Isolates the remote calendar behind a duplicate-check and insert contract.
Alternatives: Call the Google Calendar API directly from the sync service.
"""

from __future__ import annotations

import itertools
import urllib.parse
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from difflib import SequenceMatcher
from typing import Any
from zoneinfo import ZoneInfo

from agendapilot.http_client import send_json_request
from agendapilot.models import CalendarEntry

TITLE_SIMILARITY_THRESHOLD = 0.7


class CalendarService(ABC):
    """Summary: Abstract interface for the remote calendar.

    Importance: Keeps the sync state machine independent of any vendor.
    Alternatives: Use provider-specific classes directly in the sync sweep.
    """

    name = "calendar"

    @abstractmethod
    def find_duplicate(self, title: str, start: datetime, window: timedelta) -> bool:
        """Summary: Report whether a matching event already exists remotely.

        Importance: Prevents visible duplicates when a prior sync succeeded
        remotely but failed to record it locally.
        Alternatives: Store an idempotency key in the remote event.
        """

    @abstractmethod
    def insert_event(self, entry: CalendarEntry) -> str:
        """Summary: Create a remote event and return its external id."""


class MockCalendarService(CalendarService):
    """Summary: In-memory calendar for local runs and tests."""

    name = "mock"

    def __init__(self) -> None:
        self.events: dict[str, CalendarEntry] = {}
        self._ids = itertools.count(1)

    def find_duplicate(self, title: str, start: datetime, window: timedelta) -> bool:
        return any(
            titles_match(entry.title, title) and abs(entry.start - start) <= window
            for entry in self.events.values()
        )

    def insert_event(self, entry: CalendarEntry) -> str:
        external_id = f"mock-{next(self._ids)}"
        self.events[external_id] = entry
        return external_id


class GoogleCalendarService(CalendarService):
    """Summary: Google Calendar implementation using OAuth access tokens.

    Importance: Projects candidate events onto the tenant's real calendar.
    Alternatives: Use the google-api-python-client SDK.
    """

    name = "google"

    def __init__(
        self,
        access_token: str,
        base_url: str,
        calendar_id: str,
        time_zone: str,
        timeout: float,
    ) -> None:
        """Summary: Initialize the Google Calendar service.

        Importance: Event wall-clock times are interpreted in the configured time zone.
        Alternatives: Store UTC times and let the calendar convert them.
        """

        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._calendar_path = f"/calendars/{urllib.parse.quote(calendar_id, safe='')}/events"
        self._time_zone = time_zone
        self._zone = ZoneInfo(time_zone)
        self._timeout = timeout

    def find_duplicate(self, title: str, start: datetime, window: timedelta) -> bool:
        """Summary: Search a day either side of the start for a similar event.

        Importance: Titles match fuzzily since users often edit synced events.
        Alternatives: Match on exact title only.
        """

        local_start = self._localize(start)
        payload = send_json_request(
            "google-calendar",
            "GET",
            f"{self._base_url}{self._calendar_path}",
            self._timeout,
            access_token=self._access_token,
            params={
                "timeMin": (local_start - timedelta(days=1)).isoformat(),
                "timeMax": (local_start + timedelta(days=1)).isoformat(),
                "singleEvents": "true",
                "maxResults": 250,
            },
        )
        for item in payload.get("items", []):
            remote_start = self._item_start(item)
            if remote_start is None:
                continue
            if titles_match(item.get("summary", ""), title) and abs(remote_start - local_start) <= window:
                return True
        return False

    def insert_event(self, entry: CalendarEntry) -> str:
        body: dict[str, Any] = {
            "summary": entry.title,
            "description": entry.description,
        }
        if entry.location:
            body["location"] = entry.location
        if entry.all_day:
            last_day = (entry.end or entry.start).date()
            body["start"] = {"date": entry.start.date().isoformat()}
            body["end"] = {"date": (last_day + timedelta(days=1)).isoformat()}
        else:
            end = entry.end or entry.start + timedelta(hours=1)
            body["start"] = {"dateTime": entry.start.isoformat(), "timeZone": self._time_zone}
            body["end"] = {"dateTime": end.isoformat(), "timeZone": self._time_zone}
        created = send_json_request(
            "google-calendar",
            "POST",
            f"{self._base_url}{self._calendar_path}",
            self._timeout,
            access_token=self._access_token,
            payload=body,
        )
        return created["id"]

    def _localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self._zone)
        return value.astimezone(self._zone)

    def _item_start(self, item: dict[str, Any]) -> datetime | None:
        start = item.get("start") or {}
        if start.get("dateTime"):
            return self._localize(datetime.fromisoformat(start["dateTime"].replace("Z", "+00:00")))
        if start.get("date"):
            day = date.fromisoformat(start["date"])
            return datetime(day.year, day.month, day.day, tzinfo=self._zone)
        return None


def titles_match(left: str, right: str) -> bool:
    """Summary: Fuzzy title comparison used by duplicate checks."""

    ratio = SequenceMatcher(None, left.strip().lower(), right.strip().lower()).ratio()
    return ratio > TITLE_SIMILARITY_THRESHOLD

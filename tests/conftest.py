"""Shared pytest fixtures for VoiceFlow tests."""

import asyncio
import copy
import os
import sys
import time

import pytest

# Ensure voiceflow is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from voiceflow.calendar_providers import CalendarProvider, GoogleCalendarProvider
from voiceflow.config import DEFAULT_CONFIG
from voiceflow.models import TokenSet
from voiceflow.recognition import (
    RecognitionUnavailableError,
    Recognizer,
)


@pytest.fixture
def db():
    """In-memory VoiceFlowDB instance."""
    from voiceflow.database import VoiceFlowDB
    instance = VoiceFlowDB(db_path=":memory:")
    yield instance
    instance.close()


@pytest.fixture
def cfg():
    """Default config with an in-memory database."""
    c = copy.deepcopy(DEFAULT_CONFIG)
    c["database"]["path"] = ":memory:"
    c["speech"]["switch_delay"] = 0
    c["speech"]["restart_delay"] = 0
    return c


# ── Recognizer harness ─────────────────────────────────────────────────


class FakeRecognizer(Recognizer):
    """Recognizer that records calls; tests fire platform events by hand."""

    def __init__(self, harness, continuous, interim_results, emit, lang="en-US"):
        super().__init__(continuous, interim_results, emit, lang=lang)
        self.harness = harness
        self.running = False
        self.calls = []
        self.started_at = None
        self.stopped_at = None

    def start(self):
        self.calls.append("start")
        self.started_at = time.monotonic()
        if self.harness.start_error is not None:
            self.running = True
            self.harness.record()
            raise self.harness.start_error
        self.running = True
        self.harness.record()

    def stop(self):
        self.calls.append("stop")
        self.stopped_at = time.monotonic()
        self.running = False

    def abort(self):
        self.calls.append("abort")
        self.stopped_at = time.monotonic()
        self.running = False

    def fire_start(self):
        self.emit({"type": "start"})

    def fire_result(self, text, final=False):
        self.emit({"type": "result", "results": [{"transcript": text, "isFinal": final}]})

    def fire_error(self, code):
        self.emit({"type": "error", "error": code})

    def fire_end(self):
        self.emit({"type": "end"})


class RecognizerHarness:
    def __init__(self):
        self.created: list[FakeRecognizer] = []
        self.unavailable = False
        self.start_error = None
        self.max_running = 0

    def factory(self, continuous, interim_results, emit, lang="en-US"):
        if self.unavailable:
            raise RecognitionUnavailableError("no speech support")
        recognizer = FakeRecognizer(self, continuous, interim_results, emit, lang)
        self.created.append(recognizer)
        return recognizer

    def record(self):
        self.max_running = max(self.max_running, len(self.running))

    @property
    def running(self) -> list[FakeRecognizer]:
        return [r for r in self.created if r.running]

    @property
    def last(self) -> FakeRecognizer:
        return self.created[-1]


@pytest.fixture
def harness():
    return RecognizerHarness()


# ── Calendar provider fake ─────────────────────────────────────────────


class FakeProvider(CalendarProvider):
    """Google-shaped provider with scripted responses."""

    name = "google"
    convert_events = staticmethod(GoogleCalendarProvider.convert_events)

    def __init__(self, items=None):
        self.items = items or []
        self.responses = []          # per-fetch overrides: list of items or an exception
        self.fetch_calls = []
        self.refresh_calls = []
        self.tokens = TokenSet("access-1", "refresh-1", 1_900_000_000.0)
        self.refreshed = TokenSet("access-2", None, 1_900_003_600.0)
        self.exchange_error = None
        self.fetch_delay = 0
        self._in_flight = 0
        self.max_in_flight = 0

    def authorization_url(self) -> str:
        return "https://accounts.example.com/auth?client_id=test"

    async def exchange_code(self, code):
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.tokens

    async def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        return self.refreshed

    async def fetch_events(self, access_token, calendar_id, time_min, time_max):
        self.fetch_calls.append({
            "access_token": access_token, "calendar_id": calendar_id,
            "time_min": time_min, "time_max": time_max,
        })
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.fetch_delay:
                await asyncio.sleep(self.fetch_delay)
            response = self.responses.pop(0) if self.responses else self.items
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self._in_flight -= 1


@pytest.fixture
def google_items():
    """Raw Google Calendar API event items."""
    return [
        {
            "id": "evt-1",
            "summary": "Standup",
            "description": "Daily sync",
            "start": {"dateTime": "2026-10-20T09:00:00-07:00"},
            "end": {"dateTime": "2026-10-20T09:15:00-07:00"},
            "location": "Room 4",
            "htmlLink": "https://calendar.google.com/event?eid=1",
        },
        {
            "id": "evt-2",
            "start": {"date": "2026-10-22"},
            "end": {"date": "2026-10-23"},
        },
    ]


@pytest.fixture
def provider(google_items):
    return FakeProvider(google_items)


@pytest.fixture
def sync_manager(db, provider):
    from voiceflow.calendar_sync import CalendarSyncManager
    return CalendarSyncManager(db, {"google": provider})

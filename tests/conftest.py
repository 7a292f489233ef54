"""Shared fakes for the scheduler tests."""
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

from core.errors import EncoderError, PlatformError
from core.event_bus import Event, EventBus
from core.models import BroadcastInfo, to_iso
from core.state_store import open_memory_stores
from integrations.platforms.base.broadcast_platform import BroadcastPlatform


class FakeSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events: List[tuple] = []
        for event in Event:
            bus.subscribe(event, lambda payload, e=event: self.events.append((e, payload)))

    def of(self, event: Event) -> List[Any]:
        return [payload for e, payload in self.events if e == event]


class FakePlatform(BroadcastPlatform):
    """In-memory broadcast platform with scripted failures and a call log."""

    def __init__(self):
        super().__init__("Fake")
        self.calls: List[tuple] = []
        self.statuses: Dict[str, str] = {}
        self.titles: Dict[str, str] = {}
        self.times: Dict[str, str] = {}
        self.thumbnails: Dict[str, str] = {}
        self.transition_script: List[Optional[Exception]] = []
        self.status_script: List[Any] = []
        self.bind_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.scheduled_error: Optional[Exception] = None
        self.active_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    def add(self, broadcast_id: str, status: str = "ready", title: str = "") -> None:
        self.statuses[broadcast_id] = status
        self.titles[broadcast_id] = title or broadcast_id

    def calls_to(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def create_broadcast(self, title, start, description="", privacy="public", latency="normal"):
        self.calls.append(("create_broadcast", title, start, description, privacy, latency))
        if self.create_error:
            raise self.create_error
        broadcast_id = f"bc{next(self._ids)}"
        self.add(broadcast_id, "created", title)
        self.times[broadcast_id] = to_iso(start)
        return BroadcastInfo(id=broadcast_id, title=title, time=to_iso(start), privacy=privacy, status="created")

    async def bind_to_ingest_endpoint(self, broadcast_id):
        self.calls.append(("bind", broadcast_id))
        if self.bind_error:
            raise self.bind_error
        return {"streamId": "stream-1", "ingestAddress": "rtmp://a.rtmp.youtube.com/live2", "streamKey": "key"}

    async def transition(self, broadcast_id, status):
        self.calls.append(("transition", broadcast_id, status))
        if self.transition_script:
            outcome = self.transition_script.pop(0)
            if outcome is not None:
                raise outcome
        self.statuses[broadcast_id] = status

    async def get_status(self, broadcast_id):
        self.calls.append(("get_status", broadcast_id))
        if self.status_script:
            outcome = self.status_script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if broadcast_id not in self.statuses:
            raise PlatformError("Broadcast not found", status_code=404, reason="liveBroadcastNotFound")
        return self.statuses[broadcast_id]

    async def list_scheduled(self):
        self.calls.append(("list_scheduled",))
        if self.scheduled_error:
            raise self.scheduled_error
        return [BroadcastInfo(id=i, title=self.titles.get(i, ""), time=self.times.get(i), status=s)
                for i, s in self.statuses.items() if s in ("created", "ready", "testStarting", "testing", "liveStarting")]

    async def list_active(self):
        self.calls.append(("list_active",))
        if self.active_error:
            raise self.active_error
        return [BroadcastInfo(id=i, title=self.titles.get(i, ""), status=s)
                for i, s in self.statuses.items() if s == "live"]

    async def delete_broadcast(self, broadcast_id):
        self.calls.append(("delete_broadcast", broadcast_id))
        if broadcast_id not in self.statuses:
            raise PlatformError("Broadcast not found", status_code=404, reason="liveBroadcastNotFound")
        del self.statuses[broadcast_id]

    async def set_thumbnail(self, broadcast_id, file_path):
        self.calls.append(("set_thumbnail", broadcast_id, file_path))
        self.thumbnails[broadcast_id] = file_path


class FakeOBSController:
    """Stands in for ``OBSController``; records every command."""

    def __init__(self, log: List[tuple], fail_on: Optional[str] = None):
        self.log = log
        self.fail_on = fail_on

    def _record(self, *entry):
        if self.fail_on == entry[0]:
            raise EncoderError(f"{entry[0]} failed")
        self.log.append(entry)

    def switch_scene(self, scene_name):
        self._record("switch_scene", scene_name)

    def start_stream(self):
        self._record("start_stream")

    def stop_stream(self):
        self._record("stop_stream")

    def get_version(self):
        self._record("get_version")
        return "30.1.2"

    def disconnect(self):
        self.log.append(("disconnect",))


class FakeEncoder:
    """Connector for ``EncoderGateway``: fails the first ``fail_times`` connects."""

    def __init__(self, fail_times: int = 0, fail_on: Optional[str] = None):
        self.fail_times = fail_times
        self.fail_on = fail_on
        self.connects: List[tuple] = []
        self.commands: List[tuple] = []

    def __call__(self, host, port, password, timeout):
        self.connects.append((host, port, password))
        if len(self.connects) <= self.fail_times:
            raise ConnectionRefusedError("[Errno 111] Connection refused")
        return FakeOBSController(self.commands, self.fail_on)

    def issued(self) -> List[tuple]:
        return [c for c in self.commands if c[0] != "disconnect"]


class FakeNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    def __getattr__(self, name):
        if not name.startswith("notify_"):
            raise AttributeError(name)
        return lambda *args, **kwargs: self.sent.append((name, args))


class ManualClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def tz():
    return ZoneInfo("America/New_York")


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def stores():
    return open_memory_stores()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def utc():
    return lambda *args: datetime(*args, tzinfo=timezone.utc)

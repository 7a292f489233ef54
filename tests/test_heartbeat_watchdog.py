import pytest

from core.event_bus import Event
from monitors.heartbeat_watchdog import HeartbeatWatchdog


class SecondsClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


@pytest.fixture
def clock():
    return SecondsClock()


class Restarts:
    def __init__(self):
        self.count = 0

    async def __call__(self):
        self.count += 1


def make(bus, clock, on_restart=None):
    return HeartbeatWatchdog(
        bus, expected_interval=30, grace=30, restart_after=90, on_restart=on_restart, clock=clock,
    )


async def test_healthy_pulses_report_nothing(bus, recorder, clock):
    watchdog = make(bus, clock)
    clock.value += 59

    assert await watchdog.check() is None
    assert recorder.of(Event.HEARTBEAT_STALE) == []


async def test_stale_reported_once_per_episode(bus, recorder, clock):
    watchdog = make(bus, clock)
    clock.value += 61

    assert await watchdog.check() == "stale"
    clock.value += 10
    assert await watchdog.check() is None

    stale = recorder.of(Event.HEARTBEAT_STALE)
    assert len(stale) == 1
    assert stale[0]["age"] == pytest.approx(61)
    assert watchdog.is_stale


async def test_recovery_emitted_once(bus, recorder, clock):
    watchdog = make(bus, clock)
    clock.value += 61
    await watchdog.check()

    watchdog.record_pulse()
    watchdog.record_pulse()

    assert len(recorder.of(Event.HEARTBEAT_RECOVERED)) == 1
    assert not watchdog.is_stale


async def test_pulse_via_bus_resets_age(bus, clock):
    watchdog = make(bus, clock)
    watchdog._unsubscribe = bus.subscribe(Event.HEARTBEAT, watchdog.record_pulse)
    clock.value += 50

    bus.emit(Event.HEARTBEAT, {"at": 0})

    assert watchdog.age == 0


async def test_restart_invoked_once_per_episode(bus, clock):
    restarts = Restarts()
    watchdog = make(bus, clock, on_restart=restarts)

    clock.value += 61
    assert await watchdog.check() == "stale"
    clock.value += 30
    assert await watchdog.check() == "restart"
    clock.value += 30
    assert await watchdog.check() is None
    assert restarts.count == 1

    # A new episode may restart again.
    watchdog.record_pulse()
    clock.value += 61
    await watchdog.check()
    clock.value += 30
    assert await watchdog.check() == "restart"
    assert restarts.count == 2


async def test_no_restart_without_callback(bus, clock):
    watchdog = make(bus, clock)
    clock.value += 61
    await watchdog.check()
    clock.value += 100

    assert await watchdog.check() is None


async def test_start_and_stop(bus, clock):
    watchdog = make(bus, clock)

    watchdog.start()
    assert watchdog._task is not None
    await watchdog.stop()

    assert watchdog._task is None
    clock.value += 10
    bus.emit(Event.HEARTBEAT, None)
    assert watchdog.age == 10

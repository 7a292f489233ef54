import logging
from zoneinfo import ZoneInfo

import pytest

from core.clock_driver import ClockDriver
from core.event_bus import Event


async def _tick():
    return None


async def _calendar(action_type, payload):
    return None


@pytest.fixture
async def driver(bus, tz):
    clock = ClockDriver(
        bus, tz,
        probe=_tick, poll=_tick, cleanup=_tick,
        calendar_triggers=[
            {"cron": "0 9 * * 1", "type": "setScene", "payload": {"sceneName": "Monday"}},
            {"cron": "not a cron", "type": "setScene"},
        ],
        on_calendar=_calendar,
    )
    yield clock
    clock.stop()


async def test_start_registers_jobs_and_pulses(driver, recorder, caplog):
    with caplog.at_level(logging.INFO):
        driver.start()

    assert driver.is_running
    assert driver.job_ids() == ["broadcast_poll", "calendar_0", "encoder_probe", "heartbeat", "orphan_cleanup"]
    assert len(recorder.of(Event.HEARTBEAT)) == 1
    assert "Heartbeat: Scheduler is alive." in caplog.text
    assert "Invalid calendar trigger cron 'not a cron'" in caplog.text


async def test_calendar_trigger_carries_type_and_payload(driver):
    driver.start()

    job = driver._scheduler.get_job("calendar_0")

    assert list(job.args) == ["setScene", {"sceneName": "Monday"}]


async def test_restart_rebuilds_scheduler(driver, recorder):
    driver.start()
    first = driver._scheduler

    driver.restart()

    assert driver._scheduler is not first
    assert driver.is_running
    assert "heartbeat" in driver.job_ids()
    assert len(recorder.of(Event.HEARTBEAT)) == 2


async def test_stop_is_idempotent(driver):
    driver.start()
    driver.stop()
    driver.stop()

    assert not driver.is_running
    assert driver.job_ids() == []


async def test_heartbeat_job_emits_pulse(driver, recorder):
    await driver._heartbeat_job()

    assert recorder.of(Event.HEARTBEAT)[0]["at"].endswith("Z")


async def test_optional_ticks_are_skipped(bus, tz):
    clock = ClockDriver(bus, tz)
    clock.start()
    try:
        assert clock.job_ids() == ["heartbeat"]
    finally:
        clock.stop()


async def test_reconfigure_applies_on_restart(driver):
    driver.start()
    driver.reconfigure(ZoneInfo("Europe/London"), [{"cron": "30 18 * * 5", "type": "end"}])

    driver.restart()

    job = driver._scheduler.get_job("calendar_0")
    assert list(job.args) == ["end", {}]
    assert str(job.trigger.timezone) == "Europe/London"

import logging
from datetime import timedelta

import pytest

from core.event_bus import Event
from core.models import Action, utc_now
from handlers.action_executor import ActionExecutor
from managers.encoder_gateway import EncoderGateway

from tests.conftest import FakeEncoder


@pytest.fixture
def executor(bus, encoder, fake_sleep, tz):
    gateway = EncoderGateway(bus, "127.0.0.1", 4455, connector=encoder, sleep=fake_sleep)
    return ActionExecutor(gateway, bus, tz)


def action(action_type, payload=None):
    return Action(broadcast_id="bc1", at=utc_now() - timedelta(seconds=1), type=action_type, payload=payload or {})


@pytest.mark.parametrize("action_type, payload, expected", [
    ("start", {}, [("switch_scene", "intro"), ("start_stream",)]),
    ("start", {"sceneName": "Countdown"}, [("switch_scene", "Countdown"), ("start_stream",)]),
    ("setScene", {}, [("switch_scene", "live")]),
    ("setScene", {"sceneName": "BRB"}, [("switch_scene", "BRB")]),
    ("end", {}, [("stop_stream",)]),
])
async def test_dispatch_by_type(executor, encoder, recorder, action_type, payload, expected):
    act = action(action_type, payload)

    ok = await executor.run_obs_action(act)

    assert ok is True
    assert encoder.issued() == expected
    assert recorder.of(Event.ACTION_EXECUTED) == [act]


async def test_encoder_step_runs_before_executed_event(executor, encoder, bus):
    seen = []
    bus.subscribe(Event.ACTION_EXECUTED, lambda a: seen.append(list(encoder.issued())))

    await executor.run_obs_action(action("setScene", {"sceneName": "live"}))

    assert seen == [[("switch_scene", "live")]]


async def test_unknown_type_is_ignored(executor, encoder, recorder, caplog):
    with caplog.at_level(logging.WARNING):
        ok = await executor.run_obs_action(action("fireworks"))

    assert ok is False
    assert encoder.connects == []
    assert recorder.of(Event.ACTION_EXECUTED) == []
    assert "Unknown action type 'fireworks'" in caplog.text


async def test_unreachable_encoder_still_reports_execution(bus, recorder, fake_sleep, tz, caplog):
    encoder = FakeEncoder(fail_times=10)
    gateway = EncoderGateway(bus, "127.0.0.1", 4455, connector=encoder, sleep=fake_sleep)
    executor = ActionExecutor(gateway, bus, tz)
    act = action("end")

    with caplog.at_level(logging.ERROR):
        ok = await executor.run_obs_action(act)

    assert ok is False
    assert recorder.of(Event.ACTION_EXECUTED) == [act]
    assert {"ok": False, "error": "connect-failed"} in recorder.of(Event.ENCODER_STATUS)
    assert act.id in caplog.text


async def test_audit_line_written(executor, caplog):
    act = action("setScene", {"sceneName": "live"})

    with caplog.at_level(logging.INFO, logger="action_audit"):
        await executor.run_obs_action(act)

    audit = [r.getMessage() for r in caplog.records if r.name == "action_audit"]
    assert len(audit) == 1
    assert f"setScene broadcast=bc1 action={act.id} scene=live encoder=ok" in audit[0]


async def test_calendar_trigger_runs_without_event(executor, encoder, recorder):
    ok = await executor.run_calendar_trigger("setScene", {"sceneName": "Weekend"})

    assert ok is True
    assert encoder.issued() == [("switch_scene", "Weekend")]
    assert recorder.of(Event.ACTION_EXECUTED) == []

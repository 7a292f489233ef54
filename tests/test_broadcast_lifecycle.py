from datetime import timedelta

import pytest

from core.error_classifier import ErrorKind
from core.errors import PlatformError
from core.models import Action, utc_now
from handlers.broadcast_lifecycle import BroadcastLifecycle, go_live_backoff


@pytest.fixture
def lifecycle(platform, notifier, fake_sleep):
    return BroadcastLifecycle(platform, notifier, sleep=fake_sleep)


def not_ready():
    return PlatformError("Invalid transition", status_code=403, reason="invalidTransition")


# -- go live -----------------------------------------------------------------

async def test_go_live_stops_without_transition_when_complete(lifecycle, platform):
    platform.add("bc1", "complete")

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is False
    assert outcome.reason == "complete"
    assert platform.calls_to("transition") == []


async def test_go_live_is_noop_when_already_live(lifecycle, platform):
    platform.add("bc1", "live")

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is True
    assert outcome.transitions == 0
    assert len(platform.calls_to("transition")) <= 1


async def test_go_live_transitions_from_testing(lifecycle, platform, notifier):
    platform.add("bc1", "testing")

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is True
    assert platform.calls_to("transition") == [("transition", "bc1", "live")]
    assert ("notify_went_live", ("bc1",)) in notifier.sent


async def test_not_found_short_circuits_retries(lifecycle, platform, fake_sleep, notifier):
    platform.add("bc1", "testing")
    platform.transition_script = [not_ready(), PlatformError("gone", status_code=404)]

    outcome = await lifecycle.go_live_with_retry("bc1", max_attempts=5)

    assert outcome.ok is False
    assert outcome.reason == "not-found"
    assert outcome.attempts == 2
    assert len(platform.calls_to("transition")) == 2
    assert fake_sleep.delays == [5.0]
    assert notifier.sent[-1][0] == "notify_go_live_failed"


async def test_not_found_from_status_check(lifecycle, platform):
    outcome = await lifecycle.go_live_with_retry("deleted", max_attempts=5)

    assert outcome.reason == "not-found"
    assert outcome.attempts == 1
    assert platform.calls_to("transition") == []


async def test_linear_backoff_capped_then_gives_up(lifecycle, platform, fake_sleep):
    platform.add("bc1", "testing")
    platform.transition_script = [not_ready() for _ in range(8)]

    outcome = await lifecycle.go_live_with_retry("bc1", max_attempts=8)

    assert outcome.ok is False
    assert outcome.reason == "attempts-exhausted"
    assert len(platform.calls_to("transition")) == 8
    assert fake_sleep.delays == [5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 30.0]


async def test_rate_limit_raises_backoff_floor(lifecycle, platform, fake_sleep):
    platform.add("bc1", "testing")
    platform.transition_script = [PlatformError("quota", status_code=403, reason="quotaExceeded")]

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is True
    assert fake_sleep.delays == [60.0]


async def test_status_rechecked_every_attempt(lifecycle, platform):
    platform.add("bc1", "testing")
    platform.transition_script = [not_ready()]
    platform.status_script = ["testing", "live"]

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is True
    assert outcome.transitions == 1
    assert len(platform.calls_to("get_status")) == 2


async def test_terminal_error_stops(lifecycle, platform, fake_sleep):
    platform.add("bc1", "testing")
    platform.transition_script = [PlatformError("Permission denied", status_code=403, reason="forbidden")]

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is False
    assert outcome.attempts == 1
    assert fake_sleep.delays == []


async def test_redundant_transition_counts_as_live(lifecycle, platform):
    platform.add("bc1", "testing")
    platform.transition_script = [PlatformError("Redundant transition", status_code=403, reason="redundantTransition")]

    outcome = await lifecycle.go_live_with_retry("bc1")

    assert outcome.ok is True


def test_auto_pipeline_extends_attempt_budget(platform):
    assert BroadcastLifecycle(platform).max_live_attempts == 5
    assert BroadcastLifecycle(platform, auto_pipeline=True).max_live_attempts == 60


@pytest.mark.parametrize("attempt, kind, expected", [
    (1, ErrorKind.NOT_READY, 5.0),
    (3, ErrorKind.TRANSIENT, 15.0),
    (9, ErrorKind.NOT_READY, 30.0),
    (1, ErrorKind.RATE_LIMITED, 60.0),
])
def test_go_live_backoff(attempt, kind, expected):
    assert go_live_backoff(attempt, kind) == expected


# -- testing step ----------------------------------------------------------------

async def test_testing_retries_only_not_ready(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")
    platform.transition_script = [not_ready(), not_ready()]

    assert await lifecycle.transition_to_testing("bc1") is True
    assert len(platform.calls_to("transition")) == 3
    assert fake_sleep.delays == [10.0, 10.0]


async def test_testing_abandons_on_other_errors(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")
    platform.transition_script = [PlatformError("Backend error", status_code=500, reason="backendError")]

    assert await lifecycle.transition_to_testing("bc1") is False
    assert len(platform.calls_to("transition")) == 1
    assert fake_sleep.delays == []


async def test_testing_gives_up_after_budget(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")
    platform.transition_script = [not_ready() for _ in range(5)]

    assert await lifecycle.transition_to_testing("bc1") is False
    assert len(platform.calls_to("transition")) == 3


# -- full sequence -----------------------------------------------------------

async def test_sequence_bind_testing_settle_live(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")

    assert await lifecycle.run_go_live_sequence("bc1") is True
    assert [c[0] for c in platform.calls] == ["bind", "transition", "get_status", "transition"]
    assert platform.statuses["bc1"] == "live"
    assert fake_sleep.delays == [5.0]


async def test_bind_failure_aborts_sequence(lifecycle, platform):
    platform.add("bc1", "ready")
    platform.bind_error = PlatformError("Stream not found", status_code=404)

    assert await lifecycle.run_go_live_sequence("bc1") is False
    assert platform.calls_to("transition") == []


async def test_start_action_triggers_sequence_after_buffer(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")
    start = Action(broadcast_id="bc1", at=utc_now() - timedelta(seconds=1), type="start")

    await lifecycle.on_action_executed(start)

    assert fake_sleep.delays[0] == 5.0
    assert platform.statuses["bc1"] == "live"


async def test_non_start_actions_are_ignored(lifecycle, platform, fake_sleep):
    platform.add("bc1", "ready")
    await lifecycle.on_action_executed(Action(broadcast_id="bc1", at=utc_now(), type="setScene"))

    assert platform.calls == []
    assert fake_sleep.delays == []


async def test_end_broadcast_completes(lifecycle, platform):
    platform.add("bc1", "live")

    assert await lifecycle.end_broadcast("bc1") is True
    assert platform.statuses["bc1"] == "complete"

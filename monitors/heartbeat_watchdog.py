"""Heartbeat watchdog: detects a stalled clock driver.

The clock driver emits ``heartbeat`` on a fixed interval.  The watchdog
samples the age of the last pulse on its own timer and reports a stale
episode exactly once when the age exceeds ``expected + grace``, then
reports recovery exactly once when a pulse arrives again.

When a restart callback is supplied and the episode lasts longer than
``restart_after`` seconds, the callback is invoked once per episode.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from config.constants import (
    HEARTBEAT_GRACE, HEARTBEAT_INTERVAL, HEARTBEAT_RESTART_AFTER, WATCHDOG_SAMPLE_INTERVAL,
)
from core.event_bus import Event, EventBus

logger = logging.getLogger(__name__)


class HeartbeatWatchdog:
    """Samples heartbeat age and raises/clears the stale condition."""

    def __init__(
        self,
        bus: EventBus,
        expected_interval: float = HEARTBEAT_INTERVAL,
        grace: float = HEARTBEAT_GRACE,
        sample_interval: float = WATCHDOG_SAMPLE_INTERVAL,
        restart_after: Optional[float] = HEARTBEAT_RESTART_AFTER,
        on_restart: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            bus: Event bus carrying ``heartbeat`` pulses; stale/recovered are emitted here.
            expected_interval: Seconds between pulses under normal operation.
            grace: Extra seconds tolerated before declaring stale.
            sample_interval: How often the age is checked.
            restart_after: Pulse age that triggers ``on_restart`` (None disables).
            on_restart: Coroutine function that restarts the clock driver.
            clock: Monotonic clock (injectable for tests).
        """
        self.bus = bus
        self.expected_interval = expected_interval
        self.grace = grace
        self.sample_interval = sample_interval
        self.restart_after = restart_after
        self._on_restart = on_restart
        self._clock = clock

        self._last_pulse: float = clock()
        self._stale: bool = False
        self._restarted_this_episode: bool = False
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ── Public API ────────────────────────────────────────────────

    @property
    def is_stale(self) -> bool:
        return self._stale

    @property
    def age(self) -> float:
        """Seconds since the last pulse."""
        return self._clock() - self._last_pulse

    def record_pulse(self, _payload: Any = None) -> None:
        """Bus subscriber for ``heartbeat``."""
        self._last_pulse = self._clock()
        if self._stale:
            self._stale = False
            self._restarted_this_episode = False
            logger.info("Heartbeat recovered")
            self.bus.emit(Event.HEARTBEAT_RECOVERED, {"at": time.time()})

    async def check(self) -> Optional[str]:
        """Sample once.

        Returns:
            ``None``       when healthy or already reported,
            ``"stale"``    on the first sample of a stale episode,
            ``"restart"``  when the restart callback was invoked.
        """
        age = self.age
        threshold = self.expected_interval + self.grace

        if age <= threshold:
            return None

        if not self._stale:
            self._stale = True
            logger.warning(f"Heartbeat stale: last pulse {age:.0f}s ago (threshold {threshold:.0f}s)")
            self.bus.emit(Event.HEARTBEAT_STALE, {"age": age})
            return "stale"

        if (
            self._on_restart is not None
            and self.restart_after is not None
            and not self._restarted_this_episode
            and age > self.restart_after
        ):
            self._restarted_this_episode = True
            logger.error(f"Heartbeat stale for {age:.0f}s, restarting scheduler")
            try:
                await self._on_restart()
            except Exception as e:
                logger.error(f"Scheduler restart failed: {e}", exc_info=True)
            return "restart"

        return None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._last_pulse = self._clock()
        self._unsubscribe = self.bus.subscribe(Event.HEARTBEAT, self.record_pulse)
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Heartbeat watchdog started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def reset(self) -> None:
        """Treat now as a fresh pulse and forget any stale episode."""
        self._last_pulse = self._clock()
        self._stale = False
        self._restarted_this_episode = False

    # ── Internal helpers ──────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sample_interval)
            await self.check()

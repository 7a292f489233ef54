"""One-shot timers for scheduled actions.

All pending actions live in a min-heap ordered by deadline.  A single driver
task sleeps until the soonest deadline (re-armed whenever an earlier one is
added) and hands due actions to the fire callback in their own task, so a
slow or failing execution never stalls the rest of the timeline.

Cancelled or re-armed entries are dropped lazily when they reach the top of
the heap; ``_entries`` is the source of truth for what is armed.
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config.constants import TIMER_MAX_SLEEP
from core.models import Action, utc_now

logger = logging.getLogger(__name__)


@dataclass
class _TimerEntry:
    action: Action
    deadline: datetime
    seq: int


class ActionTimerRegistry:

    def __init__(
        self,
        on_fire: Callable[[Action], Awaitable[None]],
        now: Callable[[], datetime] = utc_now,
        max_sleep: float = TIMER_MAX_SLEEP,
    ):
        """
        Args:
            on_fire: Coroutine function run once per elapsed action.
            now: Clock returning an aware UTC datetime (injectable for tests).
            max_sleep: Longest single sleep, so wall-clock jumps are picked up.
        """
        self._on_fire = on_fire
        self._now = now
        self._max_sleep = max_sleep

        self._heap: List[Tuple[datetime, int, str]] = []
        self._entries: Dict[str, _TimerEntry] = {}
        self._seq = itertools.count()
        self._wake = asyncio.Event()
        self._driver: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule_one_off_action(self, action: Action) -> float:
        """Arm (or re-arm) the timer for ``action``.

        Returns:
            Seconds until the action fires (0 for overdue actions).
        """
        if action.id in self._entries:
            logger.debug(f"Re-arming timer for action {action.id}")
            self._entries.pop(action.id)

        now = self._now()
        delay = max(0.0, (action.at - now).total_seconds())
        entry = _TimerEntry(action=action, deadline=action.at, seq=next(self._seq))
        self._entries[action.id] = entry
        heapq.heappush(self._heap, (entry.deadline, entry.seq, action.id))
        self._wake.set()

        logger.info(
            f"Armed action {action.id} ({action.type}) for broadcast {action.broadcast_id} "
            f"in {delay:.0f}s"
        )
        return delay

    def cancel_one_off_action(self, action_id: str) -> bool:
        """Disarm a timer.  Unknown ids are a no-op.

        Returns:
            True if a pending timer was removed.
        """
        entry = self._entries.pop(action_id, None)
        if entry is None:
            return False
        self._wake.set()
        logger.info(f"Cancelled timer for action {action_id}")
        return True

    def rearm_all(self, actions: Iterable[Action]) -> int:
        """Replay persisted actions after a restart."""
        count = 0
        for action in actions:
            self.schedule_one_off_action(action)
            count += 1
        if count:
            logger.info(f"Re-armed {count} persisted action(s)")
        return count

    def is_scheduled(self, action_id: str) -> bool:
        return action_id in self._entries

    def pending(self) -> List[Action]:
        """Armed actions, soonest first."""
        return [e.action for e in sorted(self._entries.values(), key=lambda e: (e.deadline, e.seq))]

    def next_deadline(self) -> Optional[datetime]:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    @property
    def is_running(self) -> bool:
        return self._driver is not None and not self._driver.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._driver = asyncio.get_running_loop().create_task(self._drive())
        logger.debug("Action timer driver started")

    async def stop(self, cancel_inflight: bool = False) -> None:
        """Stop the driver.  Armed entries are kept so ``start`` resumes them."""
        if self._driver is not None:
            self._driver.cancel()
            try:
                await self._driver
            except asyncio.CancelledError:
                pass
            self._driver = None
        if cancel_inflight:
            for task in list(self._inflight):
                task.cancel()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for in-flight executions to finish (tests, shutdown)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _discard_stale(self) -> None:
        while self._heap:
            _, seq, action_id = self._heap[0]
            entry = self._entries.get(action_id)
            if entry is not None and entry.seq == seq:
                return
            heapq.heappop(self._heap)

    async def _drive(self) -> None:
        while True:
            self._wake.clear()
            self._discard_stale()

            if not self._heap:
                await self._wake.wait()
                continue

            deadline, _, action_id = self._heap[0]
            delay = (deadline - self._now()).total_seconds()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=min(delay, self._max_sleep))
                except asyncio.TimeoutError:
                    pass
                continue

            heapq.heappop(self._heap)
            # Slot is cleared before execution: fire-once even if the run fails.
            entry = self._entries.pop(action_id)
            task = asyncio.get_running_loop().create_task(self._run(entry.action))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _run(self, action: Action) -> None:
        logger.info(f"Timer elapsed for action {action.id} ({action.type}) on broadcast {action.broadcast_id}")
        try:
            await self._on_fire(action)
        except Exception as e:
            logger.error(
                f"Action {action.id} ({action.type}) for broadcast {action.broadcast_id} failed: {e}",
                exc_info=True,
            )

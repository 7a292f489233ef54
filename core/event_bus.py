"""Publish/subscribe channel between the scheduler core and the UI/CLI shell.

The core never references a window or UI object; the shell subscribes to the
events below and renders them however it likes.  Subscribers may be plain
callables or coroutine functions (scheduled as tasks on the bus loop).
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], Union[None, Awaitable[None]]]


class Event(str, Enum):
    LOG = "log"
    HEARTBEAT = "heartbeat"
    ENCODER_STATUS = "encoder_status"
    ACTION_EXECUTED = "action_executed"
    TIMEZONE = "timezone"
    BROADCAST_STATUS = "broadcast_status"
    SCHEDULED = "scheduled"
    HEARTBEAT_STALE = "heartbeat_stale"
    HEARTBEAT_RECOVERED = "heartbeat_recovered"


class EventBus:

    def __init__(self):
        self._subscribers: Dict[Event, List[Subscriber]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop so emits from worker threads can reach async subscribers."""
        self._loop = loop

    def subscribe(self, event: Event, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``event``; returns an unsubscribe function."""
        self._subscribers.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            try:
                self._subscribers.get(event, []).remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: Event, payload: Any = None) -> None:
        for callback in list(self._subscribers.get(event, [])):
            try:
                result = callback(payload)
            except Exception as e:
                # Bus-level errors are logged under this module, which the log
                # bridge ignores, so a failing LOG subscriber cannot recurse.
                logger.error(f"Subscriber for '{event.value}' failed: {e}", exc_info=True)
                continue
            if asyncio.iscoroutine(result):
                self._spawn(result, event)

    def _spawn(self, coro, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        elif self._loop is not None and not self._loop.is_closed():
            asyncio.run_coroutine_threadsafe(coro, self._loop)
        else:
            coro.close()
            logger.warning(f"No event loop available for async subscriber of '{event.value}'")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async subscriber failed: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for every async subscriber task spawned so far (and any they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()


class EventBusLogHandler(logging.Handler):
    """Forwards application log records to the bus as ``log(line)`` events."""

    def __init__(self, bus: EventBus, level: int = logging.INFO):
        super().__init__(level)
        self.bus = bus

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == __name__:
            return
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        self.bus.emit(Event.LOG, line)

"""Clock/cron driver built on APScheduler.

Registers the fixed-interval ticks (heartbeat, encoder probe, broadcast
status poll, orphan cleanup) and the calendar triggers from settings on
an ``AsyncIOScheduler`` bound to the running loop.  ``restart`` tears the
scheduler down completely and registers everything again.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config.constants import (
    BROADCAST_POLL_INTERVAL, CLEANUP_INTERVAL_MINUTES, HEARTBEAT_INTERVAL, PROBE_INTERVAL,
)
from core.event_bus import Event, EventBus
from core.models import to_iso, utc_now

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[Any]]
CalendarRunner = Callable[[str, Dict[str, Any]], Awaitable[Any]]

HEARTBEAT_JOB_ID = "heartbeat"
PROBE_JOB_ID = "encoder_probe"
POLL_JOB_ID = "broadcast_poll"
CLEANUP_JOB_ID = "orphan_cleanup"


class ClockDriver:

    def __init__(
        self,
        bus: EventBus,
        tz: ZoneInfo,
        heartbeat_seconds: float = HEARTBEAT_INTERVAL,
        probe: Optional[Tick] = None,
        probe_seconds: float = PROBE_INTERVAL,
        poll: Optional[Tick] = None,
        poll_seconds: float = BROADCAST_POLL_INTERVAL,
        cleanup: Optional[Tick] = None,
        cleanup_minutes: float = CLEANUP_INTERVAL_MINUTES,
        calendar_triggers: Optional[List[Dict[str, Any]]] = None,
        on_calendar: Optional[CalendarRunner] = None,
    ):
        self.bus = bus
        self.tz = tz
        self.heartbeat_seconds = heartbeat_seconds
        self.probe = probe
        self.probe_seconds = probe_seconds
        self.poll = poll
        self.poll_seconds = poll_seconds
        self.cleanup = cleanup
        self.cleanup_minutes = cleanup_minutes
        self.calendar_triggers = list(calendar_triggers or [])
        self.on_calendar = on_calendar
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def job_ids(self) -> List[str]:
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    def pulse(self) -> None:
        """Emit one heartbeat."""
        logger.info("Heartbeat: Scheduler is alive.")
        self.bus.emit(Event.HEARTBEAT, {"at": to_iso(utc_now())})

    async def _heartbeat_job(self) -> None:
        # Coroutine job so the pulse is emitted on the loop, not in the executor pool
        self.pulse()

    def _add_interval(self, scheduler: AsyncIOScheduler, job_id: str, func, **interval) -> None:
        scheduler.add_job(
            func,
            trigger=IntervalTrigger(timezone=self.tz, **interval),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )

    def _register(self, scheduler: AsyncIOScheduler) -> None:
        self._add_interval(scheduler, HEARTBEAT_JOB_ID, self._heartbeat_job, seconds=self.heartbeat_seconds)
        if self.probe is not None:
            self._add_interval(scheduler, PROBE_JOB_ID, self.probe, seconds=self.probe_seconds)
        if self.poll is not None:
            self._add_interval(scheduler, POLL_JOB_ID, self.poll, seconds=self.poll_seconds)
        if self.cleanup is not None:
            self._add_interval(scheduler, CLEANUP_JOB_ID, self.cleanup, minutes=self.cleanup_minutes)

        if self.on_calendar is None:
            return
        for index, trigger in enumerate(self.calendar_triggers):
            cron = trigger.get("cron", "")
            try:
                cron_trigger = CronTrigger.from_crontab(cron, timezone=self.tz)
            except ValueError as e:
                logger.error(f"Invalid calendar trigger cron '{cron}': {e}")
                continue
            scheduler.add_job(
                self.on_calendar,
                trigger=cron_trigger,
                args=[trigger.get("type", ""), dict(trigger.get("payload") or {})],
                id=f"calendar_{index}",
                replace_existing=True,
                max_instances=1,
                misfire_grace_time=60,
            )
            logger.info(f"Calendar trigger registered: '{cron}' -> {trigger.get('type')}")

    def start(self) -> None:
        """Create the scheduler, register all jobs and emit an initial heartbeat."""
        if self.is_running:
            return
        scheduler = AsyncIOScheduler(timezone=self.tz, event_loop=asyncio.get_running_loop())
        self._register(scheduler)
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Clock driver started ({len(scheduler.get_jobs())} job(s), timezone {self.tz.key})")
        self.pulse()

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Clock driver stopped")

    def reconfigure(self, tz: ZoneInfo, calendar_triggers: List[Dict[str, Any]]) -> None:
        """Replace timezone and calendar triggers; applied by the next ``start``/``restart``."""
        self.tz = tz
        self.calendar_triggers = list(calendar_triggers or [])

    def restart(self) -> None:
        """Full restart: drop every job, build a fresh scheduler, register again."""
        logger.warning("Restarting clock driver")
        self.stop()
        self.start()

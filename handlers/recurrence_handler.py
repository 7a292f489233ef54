"""Recurring broadcasts: create the next occurrence when an ``end`` action fires.

The next occurrence is the first configured weekday strictly after today
(in the scheduler timezone), at the rule's original local time-of-day.
Failures are logged and not retried; the rule stays under the old id and
the next chance is the following matching weekday.
"""
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from config.constants import ACTION_END
from core.models import Action, RecurrenceRule, to_iso, utc_now
from core.state_store import RecurrenceStore
from integrations.platforms.base.broadcast_platform import BroadcastPlatform
from managers.flow_template_manager import FlowTemplateManager
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def weekday_number(day: date) -> int:
    """Day number with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def get_next_occurrence(days: Iterable[int], base_time: datetime, now: datetime, tz: ZoneInfo) -> Optional[datetime]:
    """Next matching weekday after today, at ``base_time``'s local time-of-day.

    Starts at tomorrow and walks forward one day at a time, so today is never
    returned even if it matches.  Returns None for an empty day set.
    """
    wanted = set(days)
    if not wanted:
        return None

    local_base = base_time.astimezone(tz)
    candidate = now.astimezone(tz).date() + timedelta(days=1)
    for _ in range(7):
        if weekday_number(candidate) in wanted:
            local = datetime(
                candidate.year, candidate.month, candidate.day,
                local_base.hour, local_base.minute, local_base.second, tzinfo=tz,
            )
            return local.astimezone(timezone.utc)
        candidate += timedelta(days=1)
    return None


class RecurrenceHandler:

    def __init__(
        self,
        platform: BroadcastPlatform,
        rules: RecurrenceStore,
        flow: FlowTemplateManager,
        tz: ZoneInfo,
        notifier: Optional[NotificationService] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.platform = platform
        self.rules = rules
        self.flow = flow
        self.tz = tz
        self.notifier = notifier
        self._now = now

    async def on_action_executed(self, action: Action) -> None:
        if action.type != ACTION_END:
            return
        await self.handle_end(action.broadcast_id)

    async def handle_end(self, broadcast_id: str) -> Optional[str]:
        """Create the next occurrence for ``broadcast_id`` if it is recurring.

        Returns:
            The new broadcast id, or None when not recurring or on failure.
        """
        rule = self.rules.get(broadcast_id)
        if rule is None or not rule.recurring:
            logger.debug(f"Broadcast {broadcast_id} is not recurring")
            return None

        try:
            return await self._create_next(broadcast_id, rule)
        except Exception as e:
            logger.error(
                f"Failed to create next recurring broadcast after {broadcast_id} "
                f"(days={rule.days}, title='{rule.meta.title}'): {e}",
                exc_info=True,
            )
            if self.notifier:
                self.notifier.notify_recurrence_failed(broadcast_id, str(e))
            return None

    async def _create_next(self, broadcast_id: str, rule: RecurrenceRule) -> Optional[str]:
        next_start = get_next_occurrence(rule.days, rule.base_time, self._now(), self.tz)
        if next_start is None:
            logger.warning(f"Recurrence rule for {broadcast_id} has no days configured; skipping")
            return None

        meta = rule.meta
        logger.info(f"Creating next occurrence of '{meta.title}' for {to_iso(next_start)}")
        created = await self.platform.create_broadcast(
            meta.title, next_start,
            description=meta.description, privacy=meta.privacy, latency=meta.latency,
        )
        new_id = created.id

        await self.platform.bind_to_ingest_endpoint(new_id)

        if meta.thumb_path:
            await self._upload_thumbnail(new_id, meta.thumb_path)

        template = self.flow.get_template()
        # Offsets are relative to the broadcast the template was derived from
        original_base = template.base_at or rule.base_time
        count = self.flow.apply_flow_with_day_structure(new_id, next_start, original_base)
        if not template.has_start():
            self.flow.ensure_start_action(new_id, next_start)

        self.rules.move(broadcast_id, new_id, RecurrenceRule(
            recurring=True, days=list(rule.days), base_time=next_start, meta=meta,
        ))
        logger.info(f"Recurrence moved {broadcast_id} -> {new_id} ({count} action(s) from template)")
        if self.notifier:
            self.notifier.notify_recurrence_created(meta.title, to_iso(next_start), count)
        return new_id

    async def _upload_thumbnail(self, broadcast_id: str, path: str) -> None:
        if not os.path.isfile(path):
            logger.warning(f"Thumbnail file missing, skipping upload for {broadcast_id}: {path}")
            return
        try:
            await self.platform.set_thumbnail(broadcast_id, path)
        except Exception as e:
            logger.warning(f"Thumbnail upload failed for {broadcast_id} (continuing): {e}")

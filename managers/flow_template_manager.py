"""Flow template engine.

Turns one broadcast's concrete action timeline into a reusable list of
relative offsets (the global "last flow"), and materializes that list onto
another broadcast either linearly or preserving calendar-day structure.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

from config.constants import ACTION_START
from core.action_timer_registry import ActionTimerRegistry
from core.models import Action, FlowStep, FlowTemplate, parse_iso, to_iso, utc_now
from core.state_store import ActionStore, FlowTemplateStore

logger = logging.getLogger(__name__)


def calendar_day_delta(moment: datetime, base: datetime, tz: ZoneInfo) -> int:
    """Whole calendar days between ``base`` and ``moment`` in ``tz`` (midnight-normalized)."""
    return (moment.astimezone(tz).date() - base.astimezone(tz).date()).days


def shift_preserving_day_structure(original: datetime, original_base: datetime,
                                   new_base: datetime, tz: ZoneInfo) -> datetime:
    """Move ``original`` onto ``new_base``'s calendar, keeping its local time-of-day."""
    days = calendar_day_delta(original, original_base, tz)
    local_original = original.astimezone(tz)
    target_date = new_base.astimezone(tz).date() + timedelta(days=days)
    local = datetime(
        target_date.year, target_date.month, target_date.day,
        local_original.hour, local_original.minute, local_original.second,
        local_original.microsecond, tzinfo=tz,
    )
    return local.astimezone(timezone.utc)


class FlowTemplateManager:

    def __init__(self, actions: ActionStore, flow_store: FlowTemplateStore,
                 registry: ActionTimerRegistry, tz: ZoneInfo):
        self.actions = actions
        self.flow_store = flow_store
        self.registry = registry
        self.tz = tz

    def get_template(self) -> FlowTemplate:
        return self.flow_store.get()

    def recompute_and_save_flow_template(self, broadcast_id: str) -> Optional[FlowTemplate]:
        """Derive the global template from ``broadcast_id``'s actions.

        The base is the broadcast's ``start`` action, or its earliest action.
        A broadcast with no actions leaves the saved template untouched.
        """
        actions = self.actions.for_broadcast(broadcast_id)
        if not actions:
            logger.info(f"No actions for broadcast {broadcast_id}; keeping saved flow template")
            return None

        starts = [a for a in actions if a.type == ACTION_START]
        base = starts[0].at if starts else actions[0].at

        steps = [
            FlowStep(
                offset_sec=max(0, round((a.at - base).total_seconds())),
                type=a.type,
                payload=dict(a.payload),
            )
            for a in actions
        ]
        steps.sort(key=lambda s: s.offset_sec)

        template = FlowTemplate(steps=steps, updated_at=utc_now(), base_at=base)
        self.flow_store.save(template)
        logger.info(f"Saved flow template from broadcast {broadcast_id}: {len(steps)} step(s), base {to_iso(base)}")
        return template

    def _materialize(self, broadcast_id: str, times_and_steps) -> List[Action]:
        created = [
            Action(broadcast_id=broadcast_id, at=at, type=step.type, payload=dict(step.payload))
            for at, step in times_and_steps
        ]
        if created:
            self.actions.upsert_many(created)
            for action in created:
                self.registry.schedule_one_off_action(action)
        return created

    def apply_flow_to_broadcast(self, broadcast_id: str, new_base) -> int:
        """Linear apply: each step lands at ``new_base + offsetSec``.

        Returns:
            Number of actions created.
        """
        new_base = parse_iso(new_base)
        template = self.flow_store.get()
        created = self._materialize(
            broadcast_id,
            ((new_base + timedelta(seconds=step.offset_sec), step) for step in template.steps),
        )
        logger.info(f"Applied flow template to broadcast {broadcast_id}: {len(created)} action(s) from {to_iso(new_base)}")
        return len(created)

    def apply_flow_with_day_structure(self, broadcast_id: str, new_base, original_base) -> int:
        """Apply keeping "same time, N days later" semantics across DST changes.

        Args:
            broadcast_id: Broadcast receiving the actions.
            new_base: Start time of the new broadcast.
            original_base: Start time the template offsets were derived from.

        Returns:
            Number of actions created.
        """
        new_base = parse_iso(new_base)
        original_base = parse_iso(original_base)
        template = self.flow_store.get()

        def placed():
            for step in template.steps:
                original_at = original_base + timedelta(seconds=step.offset_sec)
                yield shift_preserving_day_structure(original_at, original_base, new_base, self.tz), step

        created = self._materialize(broadcast_id, placed())
        for action in created:
            logger.debug(f"  {action.type} -> {to_iso(action.at)}")
        logger.info(
            f"Applied flow template (day structure) to broadcast {broadcast_id}: {len(created)} action(s), "
            f"original base {to_iso(original_base)} -> {to_iso(new_base)}"
        )
        return len(created)

    def ensure_start_action(self, broadcast_id: str, start) -> Optional[Action]:
        """Add a default ``start`` action at ``start`` if the broadcast has none."""
        if any(a.type == ACTION_START for a in self.actions.for_broadcast(broadcast_id)):
            return None
        action = Action(broadcast_id=broadcast_id, at=parse_iso(start), type=ACTION_START, payload={})
        self.actions.upsert(action)
        self.registry.schedule_one_off_action(action)
        logger.info(f"No start step in flow; added default start action for broadcast {broadcast_id}")
        return action

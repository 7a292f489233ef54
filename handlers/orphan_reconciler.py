"""Purge local actions and recurrence rules for broadcasts the platform no longer knows.

Valid ids are the union of scheduled and active broadcasts.  The scheduled
list is required; a failed active-list fetch only narrows the valid set to
the scheduled ids and is logged.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Set

from core.action_timer_registry import ActionTimerRegistry
from core.state_store import ActionStore, RecurrenceStore
from integrations.platforms.base.broadcast_platform import BroadcastPlatform

logger = logging.getLogger(__name__)


@dataclass
class CleanupSummary:
    removed_actions: List[str] = field(default_factory=list)
    removed_rules: List[str] = field(default_factory=list)
    valid_ids: Set[str] = field(default_factory=set)
    active_fetch_failed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.removed_actions or self.removed_rules)


class OrphanReconciler:

    def __init__(self, platform: BroadcastPlatform, actions: ActionStore,
                 rules: RecurrenceStore, registry: ActionTimerRegistry):
        self.platform = platform
        self.actions = actions
        self.rules = rules
        self.registry = registry

    async def cleanup_orphaned_data(self) -> CleanupSummary:
        """Diff local state against the platform and drop orphans.

        Raises:
            Whatever ``list_scheduled`` raises; nothing is deleted in that case.
        """
        scheduled = await self.platform.list_scheduled()
        summary = CleanupSummary(valid_ids={b.id for b in scheduled})

        try:
            active = await self.platform.list_active()
            summary.valid_ids.update(b.id for b in active)
        except Exception as e:
            summary.active_fetch_failed = True
            logger.warning(f"Active broadcast fetch failed, cleaning up against scheduled list only: {e}")

        orphaned = [a for a in self.actions.all() if a.broadcast_id not in summary.valid_ids]
        for action in orphaned:
            self.registry.cancel_one_off_action(action.id)
        if orphaned:
            removed = self.actions.remove_many(a.id for a in orphaned)
            summary.removed_actions = [a.id for a in removed]
            for broadcast_id in sorted({a.broadcast_id for a in removed}):
                logger.info(f"Removed orphaned actions for broadcast {broadcast_id}")

        for broadcast_id in list(self.rules.all()):
            if broadcast_id not in summary.valid_ids:
                self.rules.remove(broadcast_id)
                summary.removed_rules.append(broadcast_id)
                logger.info(f"Removed orphaned recurrence rule for broadcast {broadcast_id}")

        if summary.changed:
            logger.info(
                f"Cleanup complete: {len(summary.removed_actions)} action(s), "
                f"{len(summary.removed_rules)} recurrence rule(s) removed"
            )
        else:
            logger.debug("Cleanup complete: nothing orphaned")
        return summary

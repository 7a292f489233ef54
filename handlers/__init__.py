"""Handlers for broadcast scheduling logic."""

from handlers.action_executor import ActionExecutor
from handlers.broadcast_lifecycle import BroadcastLifecycle
from handlers.orphan_reconciler import OrphanReconciler
from handlers.recurrence_handler import RecurrenceHandler

__all__ = [
    "ActionExecutor",
    "BroadcastLifecycle",
    "OrphanReconciler",
    "RecurrenceHandler",
]

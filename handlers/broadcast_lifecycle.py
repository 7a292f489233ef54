"""Broadcast lifecycle orchestration: bind -> testing -> live.

Triggered when a ``start`` action has executed.  Each hop has its own retry
policy; the live hop re-reads the remote status on every attempt so the
loop can be resumed or re-run without issuing redundant transitions.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from config.constants import (
    ACTION_START,
    GO_LIVE_BACKOFF_CAP, GO_LIVE_BACKOFF_STEP, GO_LIVE_BUFFER_SECONDS,
    GO_LIVE_MAX_ATTEMPTS, GO_LIVE_MAX_ATTEMPTS_AUTO, RATE_LIMIT_BACKOFF_FLOOR,
    STATUS_COMPLETE, STATUS_LIVE, STATUS_TESTING,
    TESTING_MAX_RETRIES, TESTING_RETRY_DELAY, TESTING_SETTLE_DELAY,
)
from core.error_classifier import ErrorKind, classify_error
from core.models import Action
from integrations.platforms.base.broadcast_platform import BroadcastPlatform
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class GoLiveOutcome:
    ok: bool
    attempts: int
    transitions: int
    reason: str = ""


def go_live_backoff(attempt: int, kind: ErrorKind) -> float:
    """Linear backoff capped at 30s; rate limiting raises it to at least 60s."""
    delay = min(GO_LIVE_BACKOFF_CAP, GO_LIVE_BACKOFF_STEP * attempt)
    if kind == ErrorKind.RATE_LIMITED:
        delay = max(delay, RATE_LIMIT_BACKOFF_FLOOR)
    return delay


class BroadcastLifecycle:

    def __init__(
        self,
        platform: BroadcastPlatform,
        notifier: Optional[NotificationService] = None,
        auto_pipeline: bool = False,
        go_live_buffer: float = GO_LIVE_BUFFER_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.platform = platform
        self.notifier = notifier
        self.auto_pipeline = auto_pipeline
        self.go_live_buffer = go_live_buffer
        self._sleep = sleep
        self._in_progress: Set[str] = set()

    @property
    def max_live_attempts(self) -> int:
        return GO_LIVE_MAX_ATTEMPTS_AUTO if self.auto_pipeline else GO_LIVE_MAX_ATTEMPTS

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def on_action_executed(self, action: Action) -> None:
        """Bus subscriber: start actions kick off the go-live sequence after a short buffer."""
        if action.type != ACTION_START:
            return
        logger.info(
            f"Start action {action.id} executed for broadcast {action.broadcast_id}; "
            f"going live in {self.go_live_buffer:.0f}s"
        )
        await self._sleep(self.go_live_buffer)
        await self.run_go_live_sequence(action.broadcast_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def bind(self, broadcast_id: str) -> Optional[Dict[str, Any]]:
        """Bind to the reusable ingest stream.  Returns None on failure (no retry)."""
        try:
            binding = await self.platform.bind_to_ingest_endpoint(broadcast_id)
            logger.info(f"Broadcast {broadcast_id} bound to ingest stream {binding.get('streamId')}")
            return binding
        except Exception as e:
            logger.error(f"Bind failed for broadcast {broadcast_id}, aborting go-live sequence: {e}")
            return None

    async def transition_to_testing(self, broadcast_id: str) -> bool:
        """Move to ``testing``; only not-ready errors are retried."""
        for attempt in range(1, TESTING_MAX_RETRIES + 1):
            try:
                await self.platform.transition(broadcast_id, STATUS_TESTING)
                logger.info(f"Broadcast {broadcast_id} transitioned to testing (attempt {attempt})")
                return True
            except Exception as e:
                kind = classify_error(e)
                if kind == ErrorKind.REDUNDANT:
                    logger.info(f"Broadcast {broadcast_id} already in testing")
                    return True
                if kind != ErrorKind.NOT_READY:
                    logger.error(
                        f"Testing transition for broadcast {broadcast_id} failed "
                        f"(attempt {attempt}, {kind.value}), not retrying: {e}"
                    )
                    return False
                logger.warning(
                    f"Testing transition for broadcast {broadcast_id} not ready "
                    f"(attempt {attempt}/{TESTING_MAX_RETRIES}): {e}"
                )
                if attempt < TESTING_MAX_RETRIES:
                    await self._sleep(TESTING_RETRY_DELAY)

        logger.error(f"Testing transition for broadcast {broadcast_id} failed after {TESTING_MAX_RETRIES} attempts")
        return False

    async def go_live_with_retry(self, broadcast_id: str, max_attempts: Optional[int] = None) -> GoLiveOutcome:
        """Transition to ``live``, re-checking remote status before every attempt.

        Stops without a transition when the broadcast is already live or
        complete, and immediately when the broadcast no longer exists.
        """
        max_attempts = max_attempts or self.max_live_attempts
        transitions = 0

        for attempt in range(1, max_attempts + 1):
            try:
                status = await self.platform.get_status(broadcast_id)
                if status == STATUS_LIVE:
                    logger.info(f"Broadcast {broadcast_id} is already live (attempt {attempt})")
                    return GoLiveOutcome(True, attempt, transitions, "already-live")
                if status == STATUS_COMPLETE:
                    logger.warning(f"Broadcast {broadcast_id} is already complete; cannot go live")
                    return GoLiveOutcome(False, attempt, transitions, "complete")

                transitions += 1
                await self.platform.transition(broadcast_id, STATUS_LIVE)
                logger.info(f"Broadcast {broadcast_id} is LIVE (attempt {attempt}/{max_attempts})")
                if self.notifier:
                    self.notifier.notify_went_live(broadcast_id)
                return GoLiveOutcome(True, attempt, transitions, "live")

            except Exception as e:
                kind = classify_error(e)
                if kind == ErrorKind.REDUNDANT:
                    logger.info(f"Broadcast {broadcast_id} already live (redundant transition)")
                    return GoLiveOutcome(True, attempt, transitions, "already-live")
                if kind == ErrorKind.NOT_FOUND:
                    logger.error(f"Broadcast {broadcast_id} not found (attempt {attempt}); stopping go-live: {e}")
                    return self._failed(broadcast_id, attempt, transitions, "not-found")
                if kind == ErrorKind.TERMINAL:
                    logger.error(f"Go-live for broadcast {broadcast_id} failed (attempt {attempt}), not retrying: {e}")
                    return self._failed(broadcast_id, attempt, transitions, str(e))

                if attempt >= max_attempts:
                    logger.warning(f"Go-live attempt {attempt}/{max_attempts} for {broadcast_id} failed ({kind.value}): {e}")
                    break
                delay = go_live_backoff(attempt, kind)
                logger.warning(
                    f"Go-live attempt {attempt}/{max_attempts} for {broadcast_id} failed ({kind.value}), "
                    f"retrying in {delay:.0f}s: {e}"
                )
                await self._sleep(delay)

        logger.error(f"Broadcast {broadcast_id} did not go live after {max_attempts} attempts")
        return self._failed(broadcast_id, max_attempts, transitions, "attempts-exhausted")

    def _failed(self, broadcast_id: str, attempts: int, transitions: int, reason: str) -> GoLiveOutcome:
        if self.notifier:
            self.notifier.notify_go_live_failed(broadcast_id, reason)
        return GoLiveOutcome(False, attempts, transitions, reason)

    async def run_go_live_sequence(self, broadcast_id: str) -> bool:
        """bind -> testing -> settle -> live.  Returns True once the broadcast is live."""
        if broadcast_id in self._in_progress:
            logger.info(f"Go-live already in progress for broadcast {broadcast_id}, skipping")
            return False
        self._in_progress.add(broadcast_id)
        try:
            if await self.bind(broadcast_id) is None:
                return False
            if not await self.transition_to_testing(broadcast_id):
                return False
            await self._sleep(TESTING_SETTLE_DELAY)
            outcome = await self.go_live_with_retry(broadcast_id)
            return outcome.ok
        finally:
            self._in_progress.discard(broadcast_id)

    async def end_broadcast(self, broadcast_id: str) -> bool:
        """Transition to ``complete`` (manual end)."""
        try:
            await self.platform.transition(broadcast_id, STATUS_COMPLETE)
            logger.info(f"Broadcast {broadcast_id} transitioned to complete")
            return True
        except Exception as e:
            if classify_error(e) == ErrorKind.REDUNDANT:
                logger.info(f"Broadcast {broadcast_id} already complete")
                return True
            logger.error(f"Failed to complete broadcast {broadcast_id}: {e}")
            return False

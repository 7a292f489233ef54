"""Discord webhook notification service.

Sends rich embed notifications for broadcast lifecycle events, recurrence
results and health problems, with local rate-limit tracking.
"""
import requests
import time
import logging
import threading
from typing import Optional
from config.constants import (
    COLOR_SUCCESS, COLOR_ERROR, COLOR_WARNING, COLOR_INFO, COLOR_STREAM_LIVE,
)

logger = logging.getLogger(__name__)

# Discord webhooks: 30 messages per 60 seconds per webhook
_DISCORD_RATE_LIMIT_WINDOW = 60.0
_DISCORD_RATE_LIMIT_MAX = 30


class NotificationService:

    def __init__(self, discord_webhook_url: Optional[str] = None):
        """
        Initialize notification service.

        Args:
            discord_webhook_url: Discord webhook URL for notifications
        """
        self.discord_webhook_url = discord_webhook_url
        self._discord_send_times: list[float] = []

    def send_discord(self, title: str, description: str, color: int = COLOR_SUCCESS):
        """
        Send a Discord notification via webhook with rate-limit awareness.

        The actual HTTP POST runs in a daemon thread so it never blocks
        the event loop.
        """
        if not self.discord_webhook_url:
            logger.debug("Discord webhook not configured, skipping notification")
            return

        now = time.time()
        self._discord_send_times = [t for t in self._discord_send_times if now - t < _DISCORD_RATE_LIMIT_WINDOW]
        if len(self._discord_send_times) >= _DISCORD_RATE_LIMIT_MAX:
            logger.warning(f"Discord rate limit reached ({_DISCORD_RATE_LIMIT_MAX}/{_DISCORD_RATE_LIMIT_WINDOW}s), dropping notification: {title}")
            return

        # Recorded before the thread starts so rapid callers see it immediately
        self._discord_send_times.append(time.time())

        payload = {
            "embeds": [{
                "title": title,
                "description": description,
                "color": color,
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            }]
        }

        thread = threading.Thread(
            target=self._send_discord_sync,
            args=(payload, title),
            daemon=True,
        )
        thread.start()

    def _send_discord_sync(self, payload: dict, title: str):
        """Execute the Discord webhook POST (runs in a background thread)."""
        assert self.discord_webhook_url is not None
        try:
            response = requests.post(self.discord_webhook_url, json=payload, timeout=10)
            if response.status_code == 429:
                retry_after = response.json().get('retry_after', 1.0)
                logger.warning(f"Discord 429 rate limited, retry_after={retry_after}s, dropping: {title}")
                return
            response.raise_for_status()
            logger.debug(f"Discord notification sent: {title}")
        except requests.RequestException as e:
            logger.error(f"Failed to send Discord notification: {e}")

    def notify_broadcast_scheduled(self, title: str, start_iso: str):
        self.send_discord(
            "Stream Scheduled",
            f"**{title}** at {start_iso}",
            color=COLOR_INFO
        )

    def notify_went_live(self, broadcast_id: str):
        """Notify that a broadcast transitioned to live."""
        self.send_discord(
            "Broadcast is LIVE!",
            f"Broadcast `{broadcast_id}` is now live",
            color=COLOR_STREAM_LIVE
        )

    def notify_go_live_failed(self, broadcast_id: str, reason: str):
        """Notify that the live transition gave up."""
        self.send_discord(
            "Go Live Failed",
            f"Broadcast `{broadcast_id}`: {reason}",
            color=COLOR_ERROR
        )

    def notify_recurrence_created(self, title: str, start_iso: str, action_count: int):
        self.send_discord(
            "Next Recurring Stream Created",
            f"**{title}** at {start_iso} ({action_count} action(s) scheduled)",
            color=COLOR_SUCCESS
        )

    def notify_recurrence_failed(self, broadcast_id: str, error_message: str):
        self.send_discord(
            "Recurring Stream Failed",
            f"Could not create the next occurrence after `{broadcast_id}`: {error_message}",
            color=COLOR_ERROR
        )

    def notify_encoder_unreachable(self, task_name: str):
        """Notify that OBS could not be reached for a scheduled action."""
        self.send_discord(
            "OBS Unreachable",
            f"Scheduled task `{task_name}` could not reach OBS after all retries",
            color=COLOR_WARNING
        )

    def notify_scheduler_stale(self, age_seconds: float):
        self.send_discord(
            "Scheduler Heartbeat Stale",
            f"No heartbeat for {age_seconds:.0f}s",
            color=COLOR_WARNING
        )

    def notify_automation_started(self):
        """Notify that the scheduler has started."""
        self.send_discord(
            "OpenStreamScheduler Started",
            "Broadcast automation is online",
            color=COLOR_SUCCESS
        )

    def notify_automation_shutdown(self):
        """Notify that the scheduler is shutting down."""
        self.send_discord(
            "OpenStreamScheduler Shutting Down",
            "Broadcast automation is going offline",
            color=COLOR_WARNING
        )

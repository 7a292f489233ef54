import asyncio
import logging
import os
import signal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from config.config_manager import ConfigManager
from config.constants import ACTION_TYPES, DEFAULT_DATA_DIR
from core.action_timer_registry import ActionTimerRegistry
from core.clock_driver import ClockDriver
from core.error_classifier import ErrorKind, classify_error
from core.errors import UnknownActionTypeError
from core.event_bus import Event, EventBus
from core.models import Action, RecurrenceMeta, RecurrenceRule, parse_iso, to_iso, utc_now
from core.state_store import open_file_stores
from handlers.action_executor import ActionExecutor
from handlers.broadcast_lifecycle import BroadcastLifecycle
from handlers.orphan_reconciler import CleanupSummary, OrphanReconciler
from handlers.recurrence_handler import RecurrenceHandler
from integrations.platforms.base.broadcast_platform import BroadcastPlatform
from integrations.platforms.youtube import YouTubeBroadcastClient, YouTubeTokenManager
from managers.encoder_gateway import EncoderGateway
from managers.flow_template_manager import FlowTemplateManager
from monitors.heartbeat_watchdog import HeartbeatWatchdog
from services.notification_service import NotificationService

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Storage
DATA_DIR = os.getenv("DATA_DIR", DEFAULT_DATA_DIR)

# YouTube Configuration
YOUTUBE_CLIENT_SECRETS = os.getenv("YOUTUBE_CLIENT_SECRETS", "credentials.json")
YOUTUBE_TOKEN_FILE = os.getenv("YOUTUBE_TOKEN_FILE", os.path.join(DATA_DIR, "token.json"))

# Discord Configuration
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")


class AutomationController:
    """Composition root - wires the scheduler core and exposes it to the UI/CLI shell."""

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        platform: Optional[BroadcastPlatform] = None,
        stores=None,
        bus: Optional[EventBus] = None,
        notifier: Optional[NotificationService] = None,
        encoder_connector=None,
        sleep=asyncio.sleep,
        now=utc_now,
    ):
        self.config_manager = config_manager or ConfigManager()
        settings = self.config_manager.get_settings()
        self.tz = self.config_manager.get_timezone()
        self._now = now

        self.bus = bus or EventBus()
        self.notification_service = notifier or NotificationService(DISCORD_WEBHOOK_URL)
        self.platform = platform or YouTubeBroadcastClient(
            YouTubeTokenManager(YOUTUBE_TOKEN_FILE, YOUTUBE_CLIENT_SECRETS)
        )
        self.actions, self.rules, self.flow_store = stores or open_file_stores(DATA_DIR)

        # Encoder
        encoder = settings["encoder"]
        self.encoder_gateway = EncoderGateway(
            self.bus, encoder["host"], int(encoder["port"]), encoder.get("password", ""),
            enabled=bool(encoder.get("enabled", True)),
            connector=encoder_connector, sleep=sleep,
        )
        self.executor = ActionExecutor(self.encoder_gateway, self.bus, self.tz)

        # Timers and flow
        self.registry = ActionTimerRegistry(self._fire_action, now=now)
        self.flow = FlowTemplateManager(self.actions, self.flow_store, self.registry, self.tz)

        # Handlers
        self.lifecycle = BroadcastLifecycle(
            self.platform, self.notification_service,
            auto_pipeline=bool(settings.get("auto_pipeline")),
            go_live_buffer=float(settings["go_live_buffer_seconds"]),
            sleep=sleep,
        )
        self.recurrence = RecurrenceHandler(
            self.platform, self.rules, self.flow, self.tz, self.notification_service, now=now,
        )
        self.reconciler = OrphanReconciler(self.platform, self.actions, self.rules, self.registry)

        # Clock and health
        self.clock = ClockDriver(
            self.bus, self.tz,
            heartbeat_seconds=settings["heartbeat_seconds"],
            probe=self.encoder_gateway.probe_once,
            probe_seconds=settings["probe_seconds"],
            poll=self.poll_broadcast_status,
            poll_seconds=settings["broadcast_poll_seconds"],
            cleanup=self._cleanup_tick,
            cleanup_minutes=settings["cleanup_interval_minutes"],
            calendar_triggers=settings["calendar_triggers"],
            on_calendar=self.executor.run_calendar_trigger,
        )
        self.watchdog = HeartbeatWatchdog(
            self.bus,
            expected_interval=settings["heartbeat_seconds"],
            grace=settings["heartbeat_grace_seconds"],
            sample_interval=settings["watchdog_sample_seconds"],
            restart_after=settings["heartbeat_restart_seconds"],
            on_restart=self._restart_from_watchdog,
        )

        # State
        self._scheduled_fetch_ok = True
        self._started = False
        self._unsubscribers: List = []
        self._shutdown_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Wire subscribers, re-arm persisted actions and start the clock."""
        if self._started:
            return
        loop = asyncio.get_running_loop()
        self.bus.bind_loop(loop)

        self._unsubscribers = [
            self.bus.subscribe(Event.ACTION_EXECUTED, self.lifecycle.on_action_executed),
            self.bus.subscribe(Event.ACTION_EXECUTED, self.recurrence.on_action_executed),
            self.bus.subscribe(Event.ENCODER_STATUS, self._on_encoder_status),
            self.bus.subscribe(Event.HEARTBEAT_STALE, self._on_heartbeat_stale),
        ]

        self.bus.emit(Event.TIMEZONE, self.tz.key)
        logger.info(f"Scheduler timezone: {self.tz.key}")

        self.registry.start()
        self.registry.rearm_all(self.actions.all())
        self.clock.start()
        self.watchdog.start()
        self._started = True
        self.notification_service.notify_automation_started()

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Stopping scheduler...")
        self.clock.stop()
        await self.watchdog.stop()
        await self.registry.stop(cancel_inflight=True)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        await self.bus.cancel_pending()
        self._started = False
        self.notification_service.notify_automation_shutdown()
        if isinstance(self.platform, YouTubeBroadcastClient):
            self.platform.close()
        logger.info("Cleanup complete, exiting...")

    def signal_handler(self, sig, frame):
        """Handle shutdown signals gracefully."""
        logger.info("Shutdown signal received...")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        logger.info("Starting broadcast scheduler")
        self._shutdown_event = asyncio.Event()
        signal.signal(signal.SIGINT, self.signal_handler)
        signal.signal(signal.SIGTERM, self.signal_handler)

        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def restart_scheduler(self) -> None:
        """Force a full restart of the clock driver (UI "restart scheduler").

        Timezone and calendar triggers are re-read from settings first.
        """
        self._sync_schedule_settings(self.config_manager.get_settings())
        self.clock.restart()
        self.watchdog.reset()

    async def _restart_from_watchdog(self) -> None:
        self.clock.restart()

    # ------------------------------------------------------------------
    # Timer plumbing
    # ------------------------------------------------------------------

    async def _fire_action(self, action: Action) -> None:
        # Executed actions leave the persisted list before the encoder is touched
        self.actions.remove(action.id)
        await self.executor.run_obs_action(action)

    def schedule_one_off_action(self, action: Action) -> float:
        return self.registry.schedule_one_off_action(action)

    def cancel_one_off_action(self, action_id: str) -> bool:
        return self.registry.cancel_one_off_action(action_id)

    # ------------------------------------------------------------------
    # Event reactions
    # ------------------------------------------------------------------

    def _on_encoder_status(self, status: Dict[str, Any]) -> None:
        if not status.get("ok") and status.get("error") == "connect-failed":
            self.notification_service.notify_encoder_unreachable("scheduled action")

    def _on_heartbeat_stale(self, payload: Dict[str, Any]) -> None:
        self.notification_service.notify_scheduler_stale(payload.get("age", 0))

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def schedule_stream(
        self,
        title: Optional[str],
        start,
        extras: Optional[Dict[str, Any]] = None,
        recurring: bool = False,
        days: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Create a broadcast, bind it and materialize the saved flow onto it.

        Args:
            title: Broadcast title (falls back to the saved default, then a generated one).
            start: Scheduled start (ISO string or aware datetime).
            extras: Optional ``description``, ``privacy``, ``latency``, ``thumbPath``.
            recurring: Store a recurrence rule for the new broadcast.
            days: Weekdays for recurrence, 0 = Sunday.

        Returns:
            ``{"id", "title", "time", "actions"}``
        """
        start_at = parse_iso(start)
        defaults = self.config_manager.get_defaults()
        fields = {**defaults, **{k: v for k, v in (extras or {}).items() if v not in (None, "")}}
        title = title or defaults.get("title") or f"Scheduled stream — {to_iso(start_at)}"

        created = await self.platform.create_broadcast(
            title, start_at,
            description=fields.get("description") or "",
            privacy=fields.get("privacy") or "public",
            latency=fields.get("latency") or "normal",
        )
        broadcast_id = created.id

        try:
            await self.platform.bind_to_ingest_endpoint(broadcast_id)
        except Exception as e:
            logger.warning(f"Ingest bind for new broadcast {broadcast_id} failed (will retry at go-live): {e}")

        thumb_path = fields.get("thumbPath")
        if thumb_path:
            if os.path.isfile(thumb_path):
                try:
                    await self.platform.set_thumbnail(broadcast_id, thumb_path)
                except Exception as e:
                    logger.warning(f"Thumbnail upload failed for {broadcast_id} (continuing): {e}")
            else:
                logger.warning(f"Thumbnail file missing, skipping upload for {broadcast_id}: {thumb_path}")

        template = self.flow.get_template()
        count = self.flow.apply_flow_to_broadcast(broadcast_id, start_at) if template.steps else 0
        if not template.has_start():
            if self.flow.ensure_start_action(broadcast_id, start_at) is not None:
                count += 1

        if recurring:
            rule = RecurrenceRule(
                recurring=True,
                days=sorted({int(d) for d in days or [] if 0 <= int(d) <= 6}),
                base_time=start_at,
                meta=RecurrenceMeta(
                    title=title,
                    description=fields.get("description") or "",
                    privacy=fields.get("privacy") or "public",
                    latency=fields.get("latency") or "normal",
                    thumb_path=thumb_path,
                ),
            )
            self.rules.upsert(broadcast_id, rule)
            logger.info(f"Broadcast {broadcast_id} recurs on days {rule.days}")

        result = {"id": broadcast_id, "title": title, "time": to_iso(start_at)}
        self.bus.emit(Event.SCHEDULED, dict(result))
        self.notification_service.notify_broadcast_scheduled(title, result["time"])
        logger.info(f"Scheduled '{title}' ({broadcast_id}) at {result['time']} with {count} action(s)")
        return {**result, "actions": count}

    async def list_upcoming(self) -> List[Dict[str, Any]]:
        """Scheduled broadcasts annotated with their recurrence rule."""
        try:
            scheduled = await self.platform.list_scheduled()
        except Exception as e:
            self._scheduled_fetch_ok = False
            logger.error(f"Failed to list scheduled broadcasts: {e}")
            raise
        self._scheduled_fetch_ok = True

        upcoming = []
        for broadcast in scheduled:
            rule = self.rules.get(broadcast.id)
            entry = broadcast.to_dict()
            entry["recurring"] = rule.to_dict() if rule and rule.recurring else None
            upcoming.append(entry)
        return upcoming

    async def go_live(self, broadcast_id: str) -> bool:
        """Manual go-live (bind, testing, live)."""
        return await self.lifecycle.run_go_live_sequence(broadcast_id)

    async def end_stream(self, broadcast_id: str) -> bool:
        """Complete the broadcast and stop the OBS stream."""
        completed = await self.lifecycle.end_broadcast(broadcast_id)
        stopped = await self.encoder_gateway.with_encoder(
            f"end_stream:{broadcast_id}", lambda obs_ctl: obs_ctl.stop_stream()
        )
        return completed and stopped

    async def delete_broadcast(self, broadcast_id: str) -> None:
        """Delete remotely, then drop local actions (timers first) and the recurrence rule."""
        try:
            await self.platform.delete_broadcast(broadcast_id)
        except Exception as e:
            if classify_error(e) != ErrorKind.NOT_FOUND:
                logger.error(f"Failed to delete broadcast {broadcast_id}: {e}")
                raise
            logger.info(f"Broadcast {broadcast_id} already gone remotely, cleaning up locally")

        removed = self.clear_actions(broadcast_id)
        if self.rules.remove(broadcast_id) is not None:
            logger.info(f"Removed recurrence rule for deleted broadcast {broadcast_id}")
        logger.info(f"Deleted broadcast {broadcast_id} ({removed} local action(s) removed)")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def list_actions(self, broadcast_id: Optional[str] = None) -> List[Dict[str, Any]]:
        actions = self.actions.for_broadcast(broadcast_id) if broadcast_id else self.actions.all()
        return [a.to_dict() for a in actions]

    def add_action(self, broadcast_id: str, at, action_type: str,
                   payload: Optional[Dict[str, Any]] = None) -> Action:
        """Persist, arm, and make this broadcast's timeline the saved flow."""
        if action_type not in ACTION_TYPES:
            raise UnknownActionTypeError(f"Unknown action type '{action_type}' (expected one of {ACTION_TYPES})")
        action = Action(broadcast_id=broadcast_id, at=parse_iso(at), type=action_type, payload=dict(payload or {}))
        self.actions.upsert(action)
        self.registry.schedule_one_off_action(action)
        self.flow.recompute_and_save_flow_template(broadcast_id)
        return action

    def delete_action(self, action_id: str) -> bool:
        self.registry.cancel_one_off_action(action_id)
        removed = self.actions.remove(action_id)
        if removed is None:
            return False
        self.flow.recompute_and_save_flow_template(removed.broadcast_id)
        logger.info(f"Deleted action {action_id} ({removed.type}) for broadcast {removed.broadcast_id}")
        return True

    def clear_actions(self, broadcast_id: str) -> int:
        actions = self.actions.for_broadcast(broadcast_id)
        for action in actions:
            self.registry.cancel_one_off_action(action.id)
        return len(self.actions.remove_many(a.id for a in actions))

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    async def cleanup_now(self) -> CleanupSummary:
        """Manual orphan cleanup."""
        summary = await self.reconciler.cleanup_orphaned_data()
        self._scheduled_fetch_ok = True
        return summary

    async def _cleanup_tick(self) -> None:
        if not self._scheduled_fetch_ok:
            logger.info("Skipping orphan cleanup: last scheduled-broadcast fetch failed")
            try:
                await self.list_upcoming()
            except Exception as e:
                logger.debug(f"Scheduled broadcast list still unavailable: {e}")
            return
        try:
            await self.cleanup_now()
        except Exception as e:
            self._scheduled_fetch_ok = False
            logger.error(f"Orphan cleanup aborted, scheduled broadcast fetch failed: {e}")

    async def poll_broadcast_status(self) -> Dict[str, Any]:
        """Fetch live broadcasts and publish ``broadcast_status``."""
        self._apply_settings_changes()
        try:
            active = await self.platform.list_active()
            status: Dict[str, Any] = {"ok": True, "liveCount": len(active), "ids": [b.id for b in active]}
        except Exception as e:
            logger.warning(f"Broadcast status poll failed: {e}")
            status = {"ok": False, "error": str(e)}
        self.bus.emit(Event.BROADCAST_STATUS, status)
        return status

    def _apply_settings_changes(self) -> None:
        if not self.config_manager.has_settings_changed():
            return
        logger.info("settings.json changed, applying")
        settings = self.config_manager.get_settings()
        encoder = settings["encoder"]
        self.encoder_gateway.configure(
            encoder["host"], int(encoder["port"]), encoder.get("password", ""),
            enabled=bool(encoder.get("enabled", True)),
        )
        if self._sync_schedule_settings(settings) and self.clock.is_running:
            self.clock.restart()

    def _sync_schedule_settings(self, settings: Dict[str, Any]) -> bool:
        """Push timezone and calendar triggers into the components.

        Returns:
            True when either changed; the clock needs a restart to use them.
        """
        tz = ZoneInfo(settings["timezone"])
        triggers = list(settings["calendar_triggers"])
        tz_changed = tz.key != self.tz.key
        if not tz_changed and triggers == self.clock.calendar_triggers:
            return False

        if tz_changed:
            self.tz = tz
            self.executor.tz = tz
            self.flow.tz = tz
            self.recurrence.tz = tz
            self.bus.emit(Event.TIMEZONE, tz.key)
            logger.info(f"Scheduler timezone changed to {tz.key}")
        self.clock.reconfigure(tz, triggers)
        return True

    # ------------------------------------------------------------------
    # Encoder settings
    # ------------------------------------------------------------------

    async def test_encoder(self, host: str, port: int, password: str) -> Dict[str, Any]:
        return await self.encoder_gateway.test_connection(host, port, password)

    def save_encoder_settings(self, host: str, port: int, password: str, enabled: bool = True) -> None:
        self.config_manager.save_settings(
            {"encoder": {"host": host, "port": int(port), "password": password, "enabled": enabled}}
        )
        self.encoder_gateway.configure(host, int(port), password, enabled)

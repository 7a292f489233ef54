"""Action executor: turns a scheduled action into encoder commands.

Dispatches on the action type, drives OBS through the encoder gateway,
emits ``action_executed`` and writes one audit line per execution.
Unknown types are logged and ignored so newer action kinds written by a
later version never crash the scheduler.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from config.constants import (
    ACTION_END, ACTION_SET_SCENE, ACTION_START,
    DEFAULT_LIVE_SCENE, DEFAULT_START_SCENE,
)
from controllers.obs_controller import OBSController
from core.event_bus import Event, EventBus
from core.models import Action
from managers.encoder_gateway import EncoderGateway

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("action_audit")


class ActionExecutor:

    def __init__(self, gateway: EncoderGateway, bus: EventBus, tz: Optional[ZoneInfo] = None):
        self.gateway = gateway
        self.bus = bus
        self.tz = tz

    def _encoder_step(self, action_type: str, payload: Dict[str, Any]) -> Optional[Callable[[OBSController], None]]:
        """Build the blocking OBS routine for an action type (None if unknown)."""
        if action_type == ACTION_START:
            scene = payload.get("sceneName") or DEFAULT_START_SCENE

            def start(obs: OBSController) -> None:
                obs.switch_scene(scene)
                obs.start_stream()
            return start

        if action_type == ACTION_SET_SCENE:
            scene = payload.get("sceneName") or DEFAULT_LIVE_SCENE
            return lambda obs: obs.switch_scene(scene)

        if action_type == ACTION_END:
            return lambda obs: obs.stop_stream()

        return None

    async def run_obs_action(self, action: Action) -> bool:
        """Execute a scheduled action.

        Returns:
            True if the encoder accepted the commands.  False for unknown types
            or when the encoder stayed unreachable; neither case raises.
        """
        step = self._encoder_step(action.type, action.payload)
        if step is None:
            logger.warning(f"Unknown action type '{action.type}' for action {action.id}, ignoring")
            return False

        task_name = f"{action.type}:{action.id}"
        logger.info(f"Job '{action.type}' triggered for broadcast {action.broadcast_id} (action {action.id})")
        ok = await self.gateway.with_encoder(task_name, step)
        if not ok:
            logger.error(
                f"Action {action.id} ({action.type}) for broadcast {action.broadcast_id}: "
                f"encoder unreachable, commands not applied"
            )

        self.bus.emit(Event.ACTION_EXECUTED, action)
        self._audit(action, ok)
        return ok

    async def run_calendar_trigger(self, action_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Run a fixed calendar trigger (no broadcast attached, nothing emitted)."""
        payload = payload or {}
        step = self._encoder_step(action_type, payload)
        if step is None:
            logger.warning(f"Unknown calendar trigger type '{action_type}', ignoring")
            return False
        logger.info(f"Calendar trigger '{action_type}' fired {payload or ''}".rstrip())
        return await self.gateway.with_encoder(f"calendar:{action_type}", step)

    def _audit(self, action: Action, ok: bool) -> None:
        stamp = datetime.now(self.tz).strftime("%Y-%m-%d %H:%M:%S")
        scene = action.payload.get("sceneName")
        detail = f" scene={scene}" if scene else ""
        audit_logger.info(
            f"{stamp} {action.type} broadcast={action.broadcast_id} action={action.id}{detail} "
            f"encoder={'ok' if ok else 'unreachable'}"
        )

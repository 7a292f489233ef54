"""Encoder gateway: short-lived OBS connections with bounded retry.

Each task opens a fresh OBS WebSocket connection, runs its commands and
disconnects.  The encoder is often not running yet when a scheduled job
fires, so connection (or command) failures are retried a fixed number of
times with a fixed delay.  Terminal failure is reported on the event bus
as ``encoder_status {ok: False, error: "connect-failed"}`` instead of raising.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from config.constants import ENCODER_CONNECT_TIMEOUT, ENCODER_MAX_RETRIES, ENCODER_RETRY_DELAY
from controllers.obs_controller import OBSController, connect_obs
from core.event_bus import Event, EventBus

logger = logging.getLogger(__name__)

Connector = Callable[[str, int, str, int], OBSController]


class EncoderGateway:

    def __init__(
        self,
        bus: EventBus,
        host: str,
        port: int,
        password: str = "",
        enabled: bool = True,
        max_retries: int = ENCODER_MAX_RETRIES,
        retry_delay: float = ENCODER_RETRY_DELAY,
        timeout: int = ENCODER_CONNECT_TIMEOUT,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.bus = bus
        self.host = host
        self.port = port
        self.password = password
        self.enabled = enabled
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._connector = connector or connect_obs
        self._sleep = sleep

    def configure(self, host: str, port: int, password: str, enabled: bool = True) -> None:
        """Apply new connection settings; takes effect on the next task."""
        changed = (host, port, password, enabled) != (self.host, self.port, self.password, self.enabled)
        self.host, self.port, self.password, self.enabled = host, port, password, enabled
        if changed:
            logger.info(f"Encoder settings updated: {host}:{port} (enabled={enabled})")

    def _open(self) -> OBSController:
        return self._connector(self.host, self.port, self.password, self.timeout)

    def _run_task(self, task_name: str, attempt: int, fn: Callable[[OBSController], Any]) -> Any:
        """Connect, run ``fn`` and disconnect (worker thread)."""
        controller = self._open()
        logger.info(f"[{task_name}] [Attempt {attempt}] Connected to OBS")
        try:
            return fn(controller)
        finally:
            controller.disconnect()

    async def with_encoder(self, task_name: str, fn: Callable[[OBSController], Any]) -> bool:
        """Run ``fn(controller)`` against a fresh OBS connection.

        Args:
            task_name: Label used in log lines.
            fn: Blocking callable issuing OBS commands; runs in a worker thread.

        Returns:
            True if ``fn`` completed, False once retries are exhausted (never raises
            for connection or command failures).
        """
        if not self.enabled:
            logger.warning(f"[{task_name}] Encoder control disabled in settings, skipping")
            self.bus.emit(Event.ENCODER_STATUS, {"ok": False, "error": "disabled"})
            return False

        for attempt in range(1, self.max_retries + 1):
            try:
                await asyncio.to_thread(self._run_task, task_name, attempt, fn)
                self.bus.emit(Event.ENCODER_STATUS, {"ok": True})
                return True
            except Exception as e:
                logger.warning(f"[{task_name}] [Attempt {attempt}] OBS not ready: {e}")
                if attempt < self.max_retries:
                    await self._sleep(self.retry_delay)

        logger.error(f"[{task_name}] Failed to connect to OBS after {self.max_retries} attempts")
        self.bus.emit(Event.ENCODER_STATUS, {"ok": False, "error": "connect-failed"})
        return False

    def _probe(self, host: str, port: int, password: str) -> Optional[str]:
        controller = self._connector(host, port, password, self.timeout)
        try:
            return controller.get_version()
        finally:
            controller.disconnect()

    async def probe_once(self) -> Dict[str, Any]:
        """Single connection attempt + version query, no retry.  Emits and returns the status."""
        if not self.enabled:
            status: Dict[str, Any] = {"ok": False, "error": "disabled"}
        else:
            try:
                version = await asyncio.to_thread(self._probe, self.host, self.port, self.password)
                status = {"ok": True, "version": version}
            except Exception as e:
                logger.debug(f"OBS probe failed: {e}")
                status = {"ok": False, "error": str(e)}
        self.bus.emit(Event.ENCODER_STATUS, status)
        return status

    async def test_connection(self, host: str, port: int, password: str) -> Dict[str, Any]:
        """Try candidate settings without applying them or emitting status."""
        try:
            version = await asyncio.to_thread(self._probe, host, port, password)
            logger.info(f"OBS test connection to {host}:{port} succeeded (version {version})")
            return {"ok": True, "version": version}
        except Exception as e:
            logger.warning(f"OBS test connection to {host}:{port} failed: {e}")
            return {"ok": False, "error": str(e)}

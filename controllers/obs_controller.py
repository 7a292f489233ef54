"""OBS WebSocket controller for scene and stream commands.

Thin wrapper over an ``obsws_python.ReqClient``.  Unlike a fire-and-forget
controller, every command raises ``EncoderError`` on failure so the encoder
gateway can decide whether to retry the whole task.
"""
import logging
from typing import Optional

import obsws_python as obs

from core.errors import EncoderError

logger = logging.getLogger(__name__)


# Errors that indicate a dead/disconnected OBS WebSocket
_CONNECTION_ERROR_HINTS = (
    'websocket', 'connection', 'socket', 'timed out', 'timeout',
    'winerror', 'forcibly closed', 'expecting value', 'refused',
)


def connect_obs(host: str, port: int, password: str, timeout: int = 3) -> "OBSController":
    """Open a request connection to OBS.  Raises on failure."""
    client = obs.ReqClient(host=host, port=port, password=password, timeout=timeout)
    return OBSController(client)


class OBSController:

    def __init__(self, obs_client: obs.ReqClient):
        self.obs_client = obs_client
        self._is_connected = True

    @property
    def is_connected(self) -> bool:
        """Whether the OBS WebSocket connection is believed to be alive."""
        return self._is_connected

    def _check_connection_error(self, error: Exception) -> None:
        """Mark connection as dead if the error looks like a connectivity failure."""
        msg = str(error).lower()
        if any(hint in msg for hint in _CONNECTION_ERROR_HINTS):
            if self._is_connected:
                logger.warning("OBS connection lost (detected from error)")
            self._is_connected = False

    def switch_scene(self, scene_name: str) -> None:
        """Switch OBS program output to ``scene_name``."""
        try:
            self.obs_client.set_current_program_scene(scene_name)
            logger.info(f"Switched to scene: {scene_name}")
        except Exception as e:
            self._check_connection_error(e)
            raise EncoderError(f"Failed to switch scene to '{scene_name}': {e}") from e

    def start_stream(self) -> None:
        try:
            self.obs_client.start_stream()
            logger.info("OBS StartStream sent")
        except Exception as e:
            self._check_connection_error(e)
            raise EncoderError(f"Failed to start stream: {e}") from e

    def stop_stream(self) -> None:
        try:
            self.obs_client.stop_stream()
            logger.info("OBS StopStream sent")
        except Exception as e:
            self._check_connection_error(e)
            raise EncoderError(f"Failed to stop stream: {e}") from e

    def get_version(self) -> Optional[str]:
        """OBS Studio version string."""
        try:
            response = self.obs_client.get_version()
            return getattr(response, 'obs_version', None)
        except Exception as e:
            self._check_connection_error(e)
            raise EncoderError(f"Failed to get OBS version: {e}") from e

    def disconnect(self) -> None:
        try:
            self.obs_client.disconnect()
        except Exception as e:
            logger.debug(f"OBS disconnect warning (non-critical): {e}")

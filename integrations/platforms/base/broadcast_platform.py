"""Abstract base class for broadcast platform integrations.

Defines the calls the scheduler needs from a platform that hosts scheduled
live broadcasts.  Implementations raise ``core.errors.PlatformError`` on
failure; the scheduler classifies those errors to decide whether to retry.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List

from core.models import BroadcastInfo

logger = logging.getLogger(__name__)


class BroadcastPlatform(ABC):

    def __init__(self, platform_name: str):
        self.platform_name = platform_name

    @abstractmethod
    async def create_broadcast(self, title: str, start: datetime, description: str = "",
                               privacy: str = "public", latency: str = "normal") -> BroadcastInfo:
        """Create a scheduled broadcast."""

    @abstractmethod
    async def bind_to_ingest_endpoint(self, broadcast_id: str) -> Dict[str, Any]:
        """Bind the broadcast to the reusable ingest stream.

        Returns:
            ``{"streamId", "ingestAddress", "streamKey"}``
        """

    @abstractmethod
    async def transition(self, broadcast_id: str, status: str) -> None:
        """Request a lifecycle transition (``testing``, ``live`` or ``complete``)."""

    @abstractmethod
    async def get_status(self, broadcast_id: str) -> str:
        """Current lifecycle status (created/ready/testing/live/complete)."""

    @abstractmethod
    async def list_scheduled(self) -> List[BroadcastInfo]:
        """Broadcasts not yet live (created, ready or mid testing/go-live), soonest first."""

    @abstractmethod
    async def list_active(self) -> List[BroadcastInfo]:
        """Broadcasts currently live."""

    @abstractmethod
    async def delete_broadcast(self, broadcast_id: str) -> None:
        """Delete a broadcast."""

    @abstractmethod
    async def set_thumbnail(self, broadcast_id: str, file_path: str) -> None:
        """Upload a thumbnail image for the broadcast."""

    def log_success(self, action: str, details: str = ""):
        """Log successful platform action."""
        msg = f"[{self.platform_name}] {action}"
        if details:
            msg += f": {details}"
        logger.info(msg)

    def log_error(self, action: str, error: Exception):
        """Log platform error."""
        logger.error(f"[{self.platform_name}] {action} failed: {error}")

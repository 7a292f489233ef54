"""Services module containing outbound notification services."""

from services.notification_service import NotificationService

__all__ = [
    "NotificationService",
]

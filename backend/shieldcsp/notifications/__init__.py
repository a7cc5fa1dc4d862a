"""
Notification delivery and the fire-and-forget dispatcher that runs it.
"""
from shieldcsp.notifications.dispatcher import SideEffectDispatcher
from shieldcsp.notifications.service import (
    NOTIFICATION_TYPES,
    NotificationPayload,
    NotificationService,
)

__all__ = [
    "SideEffectDispatcher",
    "NotificationPayload",
    "NotificationService",
    "NOTIFICATION_TYPES",
]

from stsaccess.services.notifications.email import (
    NotificationResult,
    Notifier,
    RelayNotifier,
    get_notifier,
)

__all__ = [
    "NotificationResult",
    "Notifier",
    "RelayNotifier",
    "get_notifier",
]

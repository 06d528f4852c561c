import httpx

from loan_service.clients.base import (
    BookInventory,
    Collaborators,
    NotificationPriority,
    NotificationType,
    Notifier,
    UserDirectory,
)
from loan_service.clients.books import HttpBookInventory
from loan_service.clients.notifications import HttpNotifier
from loan_service.clients.users import HttpUserDirectory
from loan_service.core.config import settings


def build_http_collaborators(http: httpx.AsyncClient) -> Collaborators:
    return Collaborators(
        users=HttpUserDirectory(http, settings.USER_SERVICE_URL),
        books=HttpBookInventory(http, settings.BOOK_SERVICE_URL),
        notifier=HttpNotifier(http, settings.NOTIFICATION_SERVICE_URL),
    )


__all__ = [
    "BookInventory",
    "Collaborators",
    "NotificationPriority",
    "NotificationType",
    "Notifier",
    "UserDirectory",
    "build_http_collaborators",
]

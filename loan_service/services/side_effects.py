"""Best-effort calls that follow a committed loan change.

The loan row is the source of truth. Inventory adjustments and notifications
may lag or be dropped; their failures are logged here and never reach the
caller, and nothing is retried.
"""

import asyncio
import logging

from fastapi import Request

from loan_service.clients.base import Collaborators, NotificationPriority, NotificationType

logger = logging.getLogger(__name__)


class SideEffectCoordinator:
    def __init__(self, collaborators: Collaborators) -> None:
        self.collaborators = collaborators
        self._pending: set[asyncio.Task[None]] = set()

    async def adjust_inventory(self, book_id: int, delta: int) -> bool:
        """Move the book's available-copy count by *delta*. Returns False if the call failed."""
        try:
            await self.collaborators.books.adjust_copies(book_id, delta)
        except Exception as exc:
            logger.error(
                "Inventory adjustment %+d for book %s failed (%s: %s)",
                delta,
                book_id,
                type(exc).__name__,
                exc,
            )
            return False
        return True

    def notify(
        self,
        user_id: int,
        kind: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> None:
        """Schedule a notification and return immediately."""
        kind = NotificationType(kind)
        task = asyncio.create_task(
            self.collaborators.notifier.notify(user_id, kind.value, title, message, priority),
            name=f"notify:{kind.value}:{user_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._on_notification_done)

    def _on_notification_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Notification task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Notification %s failed (%s: %s)", task.get_name(), exc.__class__.__name__, exc
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight notifications. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def get_side_effects(request: Request) -> SideEffectCoordinator:
    """FastAPI dependency: the coordinator built in the app lifespan."""
    return request.app.state.side_effects

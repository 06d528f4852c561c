"""Contracts for the sibling services the loan core talks to.

The core only ever sees these protocols, so its logic and tests do not care
whether the other side is HTTP, an in-process fake or something else.
"""

import enum
from dataclasses import dataclass
from typing import Protocol


class NotificationPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class NotificationType(str, enum.Enum):
    LOAN_CREATED = "LOAN_CREATED"
    LOAN_RETURNED = "LOAN_RETURNED"
    LOAN_EXTENDED = "LOAN_EXTENDED"
    LOAN_CANCELLED = "LOAN_CANCELLED"
    LOAN_DUE = "LOAN_DUE"
    LOAN_OVERDUE = "LOAN_OVERDUE"


class UserDirectory(Protocol):
    async def validate(self, user_id: int, token: str | None = None) -> bool:
        """True when the user exists and is not blocked."""
        ...


class BookInventory(Protocol):
    async def is_available(self, book_id: int) -> bool:
        """True when the book has at least one available copy."""
        ...

    async def adjust_copies(self, book_id: int, delta: int) -> None: ...


class Notifier(Protocol):
    async def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> None: ...


@dataclass
class Collaborators:
    users: UserDirectory
    books: BookInventory
    notifier: Notifier

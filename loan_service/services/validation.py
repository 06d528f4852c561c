"""Loan creation rules.

Two entry points share the same checks, evaluated in one fixed order:

- ``validate_creation`` computes every check and reports all of them, with the
  message of the first failure. It is diagnostic and never raises for a rule.
- ``ensure_creation_allowed`` stops at the first failing check and raises
  ``LoanRuleViolation``. ``create_loan`` uses it as its gate.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loan_service.clients.base import Collaborators
from loan_service.core.config import settings
from loan_service.core.errors import CollaboratorUnavailable, LoanRuleViolation
from loan_service.models.loan import OPEN_STATUSES, Loan

logger = logging.getLogger(__name__)

VALID_MESSAGE = "Validation successful"


@dataclass
class ValidationResult:
    user_id: int
    book_id: int
    user_exists: bool
    book_available: bool
    within_loan_limit: bool
    no_active_loan_for_book: bool
    valid_loan_days: bool
    valid: bool
    message: str


@dataclass
class _CreationRequest:
    db: AsyncSession
    collaborators: Collaborators
    user_id: int
    book_id: int
    loan_days: int
    token: str | None
    _open_loans: list[Loan] | None = field(default=None, repr=False)

    async def open_loans(self) -> list[Loan]:
        # Point-in-time query, shared by the limit and duplicate checks of one request.
        if self._open_loans is None:
            self._open_loans = await list_open_loans(self.db, self.user_id)
        return self._open_loans


async def list_open_loans(db: AsyncSession, user_id: int) -> list[Loan]:
    rows = await db.scalars(
        select(Loan).where(Loan.user_id == user_id, Loan.status.in_(OPEN_STATUSES))
    )
    return list(rows.all())


def resolve_loan_days(loan_days: int | None) -> int:
    return settings.DEFAULT_LOAN_DAYS if loan_days is None else loan_days


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


async def _check_user(req: _CreationRequest) -> bool:
    try:
        return await req.collaborators.users.validate(req.user_id, req.token)
    except CollaboratorUnavailable as exc:
        logger.warning("User check for %s failed closed: %s", req.user_id, exc)
        return False


async def _check_book(req: _CreationRequest) -> bool:
    try:
        return await req.collaborators.books.is_available(req.book_id)
    except CollaboratorUnavailable as exc:
        logger.warning("Availability check for book %s failed closed: %s", req.book_id, exc)
        return False


async def _check_loan_limit(req: _CreationRequest) -> bool:
    return len(await req.open_loans()) < settings.MAX_ACTIVE_LOANS


async def _check_duplicate_book(req: _CreationRequest) -> bool:
    return all(loan.book_id != req.book_id for loan in await req.open_loans())


async def _check_loan_days(req: _CreationRequest) -> bool:
    return settings.MIN_LOAN_DAYS <= req.loan_days <= settings.MAX_LOAN_DAYS


@dataclass(frozen=True)
class CreationRule:
    name: str
    check: Callable[[_CreationRequest], Awaitable[bool]]
    message: Callable[[], str]


# Order matters: it decides which failure message wins.
CREATION_RULES: tuple[CreationRule, ...] = (
    CreationRule("user_exists", _check_user, lambda: "User is not valid or does not exist"),
    CreationRule("book_available", _check_book, lambda: "The book has no available copies"),
    CreationRule(
        "within_loan_limit",
        _check_loan_limit,
        lambda: (
            f"The user already has {settings.MAX_ACTIVE_LOANS} active loans. "
            "No more loans can be created."
        ),
    ),
    CreationRule(
        "no_active_loan_for_book",
        _check_duplicate_book,
        lambda: "The user already has an active loan for this book",
    ),
    CreationRule(
        "valid_loan_days",
        _check_loan_days,
        lambda: (
            f"Loan days must be between {settings.MIN_LOAN_DAYS} "
            f"and {settings.MAX_LOAN_DAYS}"
        ),
    ),
)


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


async def validate_creation(
    db: AsyncSession,
    collaborators: Collaborators,
    *,
    user_id: int,
    book_id: int,
    loan_days: int | None = None,
    token: str | None = None,
) -> ValidationResult:
    req = _CreationRequest(
        db=db,
        collaborators=collaborators,
        user_id=user_id,
        book_id=book_id,
        loan_days=resolve_loan_days(loan_days),
        token=token,
    )

    outcomes: dict[str, bool] = {}
    for rule in CREATION_RULES:
        outcomes[rule.name] = await rule.check(req)

    failed = next((rule for rule in CREATION_RULES if not outcomes[rule.name]), None)
    return ValidationResult(
        user_id=user_id,
        book_id=book_id,
        valid=failed is None,
        message=VALID_MESSAGE if failed is None else failed.message(),
        **outcomes,
    )


async def ensure_creation_allowed(
    db: AsyncSession,
    collaborators: Collaborators,
    *,
    user_id: int,
    book_id: int,
    loan_days: int | None = None,
    token: str | None = None,
) -> int:
    """Raise on the first violated rule; return the resolved loan length in days."""
    req = _CreationRequest(
        db=db,
        collaborators=collaborators,
        user_id=user_id,
        book_id=book_id,
        loan_days=resolve_loan_days(loan_days),
        token=token,
    )
    for rule in CREATION_RULES:
        if not await rule.check(req):
            raise LoanRuleViolation(rule.name, rule.message())
    return req.loan_days

"""Loan lifecycle.

States: ACTIVE (initial) -> OVERDUE -> RETURNED / CANCELLED (terminal).

Every mutation follows the same shape:

1. lock the loan row (``SELECT ... FOR UPDATE``) and re-read it, so concurrent
   requests and the background sweep on the same loan serialize;
2. check the precondition and raise before touching anything;
3. mutate and commit; the ``version`` column turns a lost race into a 409;
4. run best-effort side effects and append the history row.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from loan_service.clients.base import NotificationPriority, NotificationType
from loan_service.core.config import settings
from loan_service.core.errors import LoanConflictError, LoanNotFoundError, LoanRuleViolation
from loan_service.models.history import LoanAction, LoanHistory
from loan_service.models.loan import OPEN_STATUSES, Loan, LoanStatus
from loan_service.services import history
from loan_service.services.fines import ZERO, compute_fine, days_overdue
from loan_service.services.side_effects import SideEffectCoordinator
from loan_service.services.validation import ensure_creation_allowed

logger = logging.getLogger(__name__)


def is_overdue(loan: Loan, today: date | None = None) -> bool:
    """Derived predicate: still open and past its due date."""
    return loan.is_overdue(today or date.today())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _lock_loan(db: AsyncSession, loan_id: int) -> Loan:
    loan = await db.scalar(
        select(Loan)
        .where(Loan.id == loan_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if loan is None:
        raise LoanNotFoundError(loan_id)
    return loan


async def _commit(db: AsyncSession, loan: Loan) -> None:
    loan_id = loan.id
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        logger.warning("Concurrent update lost on loan %s", loan_id)
        raise LoanConflictError()


async def _reject(db: AsyncSession, rule: str, message: str) -> LoanRuleViolation:
    # Nothing is dirty yet; committing just ends the transaction and drops the row lock.
    await db.commit()
    return LoanRuleViolation(rule, message)


def _format_amount(amount: Decimal) -> str:
    return f"${amount:.2f}"


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def create_loan(
    db: AsyncSession,
    effects: SideEffectCoordinator,
    *,
    user_id: int,
    book_id: int,
    loan_days: int | None = None,
    token: str | None = None,
    today: date | None = None,
) -> Loan:
    """
    Open a new ACTIVE loan.

    Fails fast on the first violated creation rule. The book's copy count is
    only touched once the loan row is committed.
    """
    today = today or date.today()
    logger.info("Creating loan for user %s and book %s", user_id, book_id)

    days = await ensure_creation_allowed(
        db,
        effects.collaborators,
        user_id=user_id,
        book_id=book_id,
        loan_days=loan_days,
        token=token,
    )

    loan = Loan(
        user_id=user_id,
        book_id=book_id,
        loan_date=today,
        due_date=today + timedelta(days=days),
        status=LoanStatus.ACTIVE,
        loan_days=days,
        fine_amount=ZERO,
        extensions_count=0,
    )
    db.add(loan)
    try:
        await db.commit()
    except IntegrityError:
        # Two concurrent requests both passed the duplicate check;
        # the partial unique index caught the second one.
        await db.rollback()
        raise LoanConflictError("The user already has an active loan for this book")

    await effects.adjust_inventory(book_id, -1)
    effects.notify(
        user_id,
        NotificationType.LOAN_CREATED,
        "Loan created",
        f"You have borrowed the book. Due date: {loan.due_date.isoformat()}",
        NotificationPriority.MEDIUM,
    )
    await history.record(db, loan_id=loan.id, action=LoanAction.CREATED, notes="Loan created")

    await db.refresh(loan)
    logger.info("Loan %s created, due %s", loan.id, loan.due_date)
    return loan


async def return_loan(
    db: AsyncSession,
    effects: SideEffectCoordinator,
    *,
    loan_id: int,
    today: date | None = None,
) -> Loan:
    today = today or date.today()
    logger.info("Returning loan %s", loan_id)

    loan = await _lock_loan(db, loan_id)
    if loan.status not in OPEN_STATUSES:
        raise await _reject(db, "returnable", "The loan is not active")

    # Decide overdue-ness before the status flips; RETURNED is never overdue.
    fine = ZERO
    if loan.is_overdue(today):
        fine = compute_fine(loan.due_date, today, settings.FINE_PER_DAY)
        loan.fine_amount = fine

    loan.return_date = today
    loan.status = LoanStatus.RETURNED
    await _commit(db, loan)

    await effects.adjust_inventory(loan.book_id, +1)

    message = "You have returned the book."
    notes = "Book returned"
    if fine > 0:
        message += f" Fine applied: {_format_amount(fine)}"
        notes += f". Fine: {_format_amount(fine)}"
    effects.notify(
        loan.user_id,
        NotificationType.LOAN_RETURNED,
        "Book returned",
        message,
        NotificationPriority.HIGH if fine > 0 else NotificationPriority.MEDIUM,
    )
    await history.record(db, loan_id=loan.id, action=LoanAction.RETURNED, notes=notes)

    await db.refresh(loan)
    logger.info("Loan %s returned. Fine: %s", loan_id, fine)
    return loan


async def extend_loan(
    db: AsyncSession,
    effects: SideEffectCoordinator,
    *,
    loan_id: int,
    today: date | None = None,
) -> Loan:
    today = today or date.today()
    logger.info("Extending loan %s", loan_id)

    loan = await _lock_loan(db, loan_id)
    if loan.status != LoanStatus.ACTIVE:
        raise await _reject(db, "extendable", "Only active loans can be extended")
    if loan.is_overdue(today):
        raise await _reject(
            db, "extendable", "An overdue loan cannot be extended. Please return the book."
        )
    if loan.extensions_count >= settings.MAX_EXTENSIONS:
        raise await _reject(
            db,
            "max_extensions",
            f"The loan has already been extended {settings.MAX_EXTENSIONS} times. "
            "No more extensions are allowed.",
        )

    extension_days = settings.EXTENSION_DAYS
    loan.due_date = loan.due_date + timedelta(days=extension_days)
    loan.extensions_count += 1
    await _commit(db, loan)

    effects.notify(
        loan.user_id,
        NotificationType.LOAN_EXTENDED,
        "Loan extended",
        f"Your loan was extended by {extension_days} days. "
        f"New due date: {loan.due_date.isoformat()}",
        NotificationPriority.LOW,
    )
    await history.record(
        db,
        loan_id=loan.id,
        action=LoanAction.EXTENDED,
        notes=f"Loan extended by {extension_days} days",
    )

    await db.refresh(loan)
    logger.info("Loan %s extended, new due date %s", loan_id, loan.due_date)
    return loan


async def cancel_loan(db: AsyncSession, effects: SideEffectCoordinator, *, loan_id: int) -> Loan:
    logger.info("Cancelling loan %s", loan_id)

    loan = await _lock_loan(db, loan_id)
    if loan.status != LoanStatus.ACTIVE:
        raise await _reject(db, "cancellable", "Only active loans can be cancelled")

    loan.status = LoanStatus.CANCELLED
    await _commit(db, loan)

    await effects.adjust_inventory(loan.book_id, +1)
    effects.notify(
        loan.user_id,
        NotificationType.LOAN_CANCELLED,
        "Loan cancelled",
        "Your loan has been cancelled.",
        NotificationPriority.MEDIUM,
    )
    await history.record(db, loan_id=loan.id, action=LoanAction.CANCELLED, notes="Loan cancelled")

    await db.refresh(loan)
    logger.info("Loan %s cancelled", loan_id)
    return loan


async def mark_overdue(
    db: AsyncSession, *, loan_id: int, today: date | None = None
) -> tuple[Loan, bool]:
    """
    Flip an ACTIVE, past-due loan to OVERDUE and accrue its fine.

    Returns ``(loan, transitioned)``. On an already-OVERDUE loan the fine is
    recomputed for *today* but status and history are left alone, so repeated
    sweeps record a single FINE_APPLIED entry.
    """
    today = today or date.today()
    loan = await _lock_loan(db, loan_id)
    if not loan.is_overdue(today):
        await db.commit()
        return loan, False

    fine = compute_fine(loan.due_date, today, settings.FINE_PER_DAY)
    transitioned = loan.status == LoanStatus.ACTIVE
    if transitioned:
        loan.status = LoanStatus.OVERDUE
    if loan.fine_amount != fine:
        loan.fine_amount = fine
    await _commit(db, loan)

    if transitioned:
        days = days_overdue(loan.due_date, today)
        await history.record(
            db,
            loan_id=loan.id,
            action=LoanAction.FINE_APPLIED,
            notes=f"Loan overdue by {days} days. Fine: {_format_amount(fine)}",
        )
        logger.info("Loan %s marked overdue (%s days)", loan_id, days)

    await db.refresh(loan)
    return loan, transitioned


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_loan(db: AsyncSession, loan_id: int) -> Loan:
    loan = await db.get(Loan, loan_id)
    if loan is None:
        raise LoanNotFoundError(loan_id)
    return loan


async def overdue_candidate_ids(db: AsyncSession, today: date) -> list[int]:
    rows = await db.scalars(
        select(Loan.id)
        .where(Loan.status.in_(OPEN_STATUSES), Loan.due_date < today)
        .order_by(Loan.due_date, Loan.id)
    )
    return list(rows.all())


async def list_overdue_loans(db: AsyncSession, *, today: date | None = None) -> list[Loan]:
    """Bring every past-due loan up to date (status and fine), then list them."""
    today = today or date.today()
    loans: list[Loan] = []
    for loan_id in await overdue_candidate_ids(db, today):
        try:
            loan, _ = await mark_overdue(db, loan_id=loan_id, today=today)
        except (LoanConflictError, LoanNotFoundError) as exc:
            logger.info("Skipping loan %s in overdue listing: %s", loan_id, exc.detail)
            continue
        if loan.status == LoanStatus.OVERDUE:
            loans.append(loan)
    return loans


@dataclass
class FineCalculation:
    loan_id: int
    days_overdue: int
    daily_fine_rate: Decimal
    total_fine: Decimal
    message: str


async def calculate_fine(
    db: AsyncSession, *, loan_id: int, today: date | None = None
) -> FineCalculation:
    """
    Report the fine owed on a loan as of *today*.

    Open overdue loans have the fine written back onto the row so the stored
    amount keeps growing until the book comes back.
    """
    today = today or date.today()
    rate = settings.FINE_PER_DAY
    loan = await _lock_loan(db, loan_id)

    if loan.is_overdue(today):
        days = days_overdue(loan.due_date, today)
        fine = compute_fine(loan.due_date, today, rate)
        if loan.fine_amount != fine:
            loan.fine_amount = fine
            await _commit(db, loan)
        else:
            await db.commit()
        return FineCalculation(
            loan_id=loan_id,
            days_overdue=days,
            daily_fine_rate=rate,
            total_fine=fine,
            message=f"Loan overdue by {days} days",
        )

    await db.commit()
    if loan.status == LoanStatus.RETURNED and loan.fine_amount > 0 and loan.return_date:
        days = days_overdue(loan.due_date, loan.return_date)
        return FineCalculation(
            loan_id=loan_id,
            days_overdue=days,
            daily_fine_rate=rate,
            total_fine=loan.fine_amount,
            message=f"Loan was returned {days} days late",
        )
    return FineCalculation(
        loan_id=loan_id,
        days_overdue=0,
        daily_fine_rate=rate,
        total_fine=ZERO,
        message="The loan is not overdue",
    )


async def get_loan_history(db: AsyncSession, loan_id: int) -> list[LoanHistory]:
    await get_loan(db, loan_id)
    return await history.list_history(db, loan_id)


async def list_loans_by_user(
    db: AsyncSession, user_id: int, *, status: LoanStatus | None = None
) -> list[Loan]:
    stmt = select(Loan).where(Loan.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Loan.status == status)
    rows = await db.scalars(stmt.order_by(Loan.loan_date.desc(), Loan.id.desc()))
    return list(rows.all())


async def list_active_loans_by_user(db: AsyncSession, user_id: int) -> list[Loan]:
    rows = await db.scalars(
        select(Loan)
        .where(Loan.user_id == user_id, Loan.status.in_(OPEN_STATUSES))
        .order_by(Loan.due_date, Loan.id)
    )
    return list(rows.all())


async def list_loans_by_book(db: AsyncSession, book_id: int) -> list[Loan]:
    rows = await db.scalars(
        select(Loan).where(Loan.book_id == book_id).order_by(Loan.loan_date.desc(), Loan.id.desc())
    )
    return list(rows.all())


@dataclass(frozen=True)
class BusinessRule:
    name: str
    description: str


def describe_business_rules() -> list[BusinessRule]:
    """The rule set enforced by this service, with the limits currently configured."""
    s = settings
    return [
        BusinessRule(
            "Active loan limit",
            f"A user may hold at most {s.MAX_ACTIVE_LOANS} active or overdue loans at once.",
        ),
        BusinessRule(
            "One open loan per book",
            "A user may not hold two open loans for the same book.",
        ),
        BusinessRule(
            "Loan length",
            f"Loans last between {s.MIN_LOAN_DAYS} and {s.MAX_LOAN_DAYS} days "
            f"(default {s.DEFAULT_LOAN_DAYS}).",
        ),
        BusinessRule("Book availability", "Only books with available copies can be lent."),
        BusinessRule("Valid user", "The borrower must exist and must not be blocked."),
        BusinessRule(
            "Copy accounting",
            "Available copies go down by one on loan creation and back up on return or cancellation.",
        ),
        BusinessRule(
            "Extensions",
            f"A loan can be extended at most {s.MAX_EXTENSIONS} times, "
            f"{s.EXTENSION_DAYS} days each, and never once overdue.",
        ),
        BusinessRule(
            "Fines",
            f"Overdue loans accrue {_format_amount(s.FINE_PER_DAY)} per day past the due date.",
        ),
        BusinessRule("Returns", "Only ACTIVE or OVERDUE loans can be returned."),
        BusinessRule("Cancellation", "Only ACTIVE loans can be cancelled."),
    ]

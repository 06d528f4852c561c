"""Daily background sweeps.

- ``sweep_overdue_loans`` flips past-due loans to OVERDUE, refreshes their
  fines and reminds the borrower.
- ``notify_loans_due_soon`` reminds borrowers whose loan is due in
  ``DUE_SOON_DAYS`` days.

Each loan goes through ``mark_overdue``, the same locked path interactive
requests use, so a sweep racing a return on the same loan cannot double-apply.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loan_service.clients.base import NotificationPriority, NotificationType
from loan_service.core.config import settings
from loan_service.core.errors import LoanConflictError, LoanNotFoundError
from loan_service.models.loan import Loan, LoanStatus
from loan_service.services.fines import days_overdue
from loan_service.services.loan import mark_overdue, overdue_candidate_ids
from loan_service.services.side_effects import SideEffectCoordinator

logger = logging.getLogger(__name__)


async def sweep_overdue_loans(
    db: AsyncSession, effects: SideEffectCoordinator, *, today: date | None = None
) -> int:
    """Returns the number of loans that were overdue during this pass."""
    today = today or date.today()
    logger.info("Checking for overdue loans")

    processed = 0
    for loan_id in await overdue_candidate_ids(db, today):
        try:
            loan, _ = await mark_overdue(db, loan_id=loan_id, today=today)
        except (LoanConflictError, LoanNotFoundError) as exc:
            # A concurrent return or cancel won; the next pass sees the new state.
            logger.info("Skipping loan %s during overdue sweep: %s", loan_id, exc.detail)
            continue
        if loan.status != LoanStatus.OVERDUE:
            continue

        days = days_overdue(loan.due_date, today)
        effects.notify(
            loan.user_id,
            NotificationType.LOAN_OVERDUE,
            "Loan overdue",
            f"Your loan has been overdue for {days} days. Please return the book as soon as possible.",
            NotificationPriority.HIGH,
        )
        processed += 1

    logger.info("Processed %d overdue loans", processed)
    return processed


async def notify_loans_due_soon(
    db: AsyncSession, effects: SideEffectCoordinator, *, today: date | None = None
) -> int:
    today = today or date.today()
    target = today + timedelta(days=settings.DUE_SOON_DAYS)
    logger.info("Checking for loans due on %s", target)

    rows = await db.scalars(
        select(Loan).where(Loan.status == LoanStatus.ACTIVE, Loan.due_date == target)
    )
    loans = list(rows.all())
    for loan in loans:
        effects.notify(
            loan.user_id,
            NotificationType.LOAN_DUE,
            "Loan due soon",
            f"Your loan is due in {settings.DUE_SOON_DAYS} days. "
            f"Due date: {loan.due_date.isoformat()}",
            NotificationPriority.HIGH,
        )
    await db.commit()

    logger.info("Processed %d loans due soon", len(loans))
    return len(loans)


class LoanSweeper:
    """Runs both sweeps periodically on the event loop, one fresh session per pass."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        effects: SideEffectCoordinator,
        *,
        interval_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._effects = effects
        self._interval = (
            settings.SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._task: asyncio.Task[None] | None = None

    async def run_once(self, today: date | None = None) -> tuple[int, int]:
        async with self._session_factory() as db:
            due_soon = await notify_loans_due_soon(db, self._effects, today=today)
            overdue = await sweep_overdue_loans(db, self._effects, today=today)
        return due_soon, overdue

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                # A failed pass must not kill the scheduler; the next pass retries the whole sweep.
                logger.exception("Loan sweep failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="loan-sweeper")
            logger.info("Loan sweeper started (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Loan sweeper stopped")

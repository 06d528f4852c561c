import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from loan_service.models.history import LoanAction, LoanHistory

logger = logging.getLogger(__name__)


async def record(
    db: AsyncSession, *, loan_id: int, action: LoanAction, notes: str | None = None
) -> LoanHistory | None:
    """
    Append one history row for a transition that has already been committed.

    A storage failure is logged and rolled back; it never fails the operation
    that triggered it, so callers do not need to guard this call.
    """
    entry = LoanHistory(loan_id=loan_id, action=action, notes=notes)
    db.add(entry)
    try:
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Could not record %s history for loan %s", action.value, loan_id)
        await db.rollback()
        return None
    logger.debug("Recorded %s for loan %s", action.value, loan_id)
    return entry


async def list_history(db: AsyncSession, loan_id: int) -> list[LoanHistory]:
    rows = await db.scalars(
        select(LoanHistory)
        .where(LoanHistory.loan_id == loan_id)
        .order_by(LoanHistory.timestamp.desc(), LoanHistory.id.desc())
    )
    return list(rows.all())

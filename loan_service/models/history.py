import enum
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, Text, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from loan_service.db.base import Base


class LoanAction(str, enum.Enum):
    CREATED = "CREATED"
    RETURNED = "RETURNED"
    EXTENDED = "EXTENDED"
    CANCELLED = "CANCELLED"
    FINE_APPLIED = "FINE_APPLIED"


class LoanHistory(Base):
    """Append-only audit row. Written once per transition, never updated."""

    __tablename__ = "loan_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("loans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    action: Mapped[LoanAction] = mapped_column(
        SAEnum(LoanAction, name="loanaction"), nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<LoanHistory id={self.id} loan_id={self.loan_id} action={self.action}>"

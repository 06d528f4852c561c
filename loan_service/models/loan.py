import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    func,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from loan_service.db.base import Base


class LoanStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES: tuple[LoanStatus, ...] = (LoanStatus.ACTIVE, LoanStatus.OVERDUE)
TERMINAL_STATUSES: tuple[LoanStatus, ...] = (LoanStatus.RETURNED, LoanStatus.CANCELLED)

_OPEN_LOAN_PREDICATE = "status IN ('ACTIVE', 'OVERDUE')"


class Loan(Base):
    __tablename__ = "loans"

    __table_args__ = (
        Index(
            "uq_open_loan_per_user_book",
            "user_id",
            "book_id",
            unique=True,
            postgresql_where=text(_OPEN_LOAN_PREDICATE),
            sqlite_where=text(_OPEN_LOAN_PREDICATE),
        ),
        Index("ix_loans_status_due_date", "status", "due_date"),
        CheckConstraint("fine_amount >= 0", name="ck_loans_fine_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Users and books live in other services; these are plain ids, not foreign keys.
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    book_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    loan_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    return_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[LoanStatus] = mapped_column(
        SAEnum(LoanStatus, name="loanstatus"),
        nullable=False,
        default=LoanStatus.ACTIVE,
    )
    loan_days: Mapped[int] = mapped_column(Integer, nullable=False)
    fine_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    extensions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Every UPDATE checks the version it read; a concurrent writer gets StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    def is_overdue(self, today: date) -> bool:
        return self.status in OPEN_STATUSES and self.due_date < today

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Loan id={self.id} user_id={self.user_id} book_id={self.book_id} status={self.status}>"

"""loans_and_history

Revision ID: 3c1f0a7e
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c1f0a7e"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # Raw SQL so IF NOT EXISTS is honoured for the enum types.
    op.execute("""
    DO $$
    BEGIN
        IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = 'loanstatus') THEN
            CREATE TYPE loanstatus AS ENUM ('ACTIVE', 'OVERDUE', 'RETURNED', 'CANCELLED');
        END IF;

        IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = 'loanaction') THEN
            CREATE TYPE loanaction AS ENUM (
                'CREATED', 'RETURNED', 'EXTENDED', 'CANCELLED', 'FINE_APPLIED'
            );
        END IF;
    END$$;
    """)

    # --- loans ---
    op.create_table(
        "loans",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("user_id", sa.BigInteger, nullable=False),
        sa.Column("book_id", sa.BigInteger, nullable=False),
        sa.Column("loan_date", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("return_date", sa.Date, nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(
                "ACTIVE", "OVERDUE", "RETURNED", "CANCELLED", name="loanstatus", create_type=False
            ),
            nullable=False,
        ),
        sa.Column("loan_days", sa.Integer, nullable=False),
        sa.Column("fine_amount", sa.Numeric(10, 2), server_default="0", nullable=False),
        sa.Column("extensions_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("fine_amount >= 0", name="ck_loans_fine_non_negative"),
    )
    op.create_index("ix_loans_user_id", "loans", ["user_id"])
    op.create_index("ix_loans_book_id", "loans", ["book_id"])
    op.create_index("ix_loans_status_due_date", "loans", ["status", "due_date"])

    # Partial unique index: one open loan per user and book
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_open_loan_per_user_book
        ON loans (user_id, book_id)
        WHERE status IN ('ACTIVE', 'OVERDUE')
    """)

    # --- loan_history ---
    op.create_table(
        "loan_history",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("loan_id", sa.Integer, nullable=False),
        sa.Column(
            "action",
            postgresql.ENUM(
                "CREATED",
                "RETURNED",
                "EXTENDED",
                "CANCELLED",
                "FINE_APPLIED",
                name="loanaction",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column(
            "timestamp",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["loan_id"], ["loans.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_loan_history_loan_id", "loan_history", ["loan_id"])


def downgrade() -> None:
    op.drop_index("ix_loan_history_loan_id", table_name="loan_history")
    op.drop_table("loan_history")
    op.execute("DROP INDEX IF EXISTS uq_open_loan_per_user_book")
    op.drop_index("ix_loans_status_due_date", table_name="loans")
    op.drop_index("ix_loans_book_id", table_name="loans")
    op.drop_index("ix_loans_user_id", table_name="loans")
    op.drop_table("loans")

    op.execute("DROP TYPE IF EXISTS loanaction")
    op.execute("DROP TYPE IF EXISTS loanstatus")

"""transactions and transaction types

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


DIRECTION = sa.Enum("income", "expense", name="direction")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")
END_CONDITION = sa.Enum(
    "never", "after_occurrences", "on_date", name="endcondition"
)


def upgrade():
    op.create_table(
        "transaction_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("category", DIRECTION, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("direction", DIRECTION, nullable=False),
        sa.Column("type_id", sa.Integer()),
        sa.Column("type_name", sa.String(length=100)),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("payment_date", sa.Date()),
        sa.Column("date", sa.Date()),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column(
            "is_repeating", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("frequency", FREQUENCY),
        sa.Column("end_condition", END_CONDITION),
        sa.Column("occurrences", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column(
            "recurring_index", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("is_master", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurring_id", sa.Integer()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "occurrences IS NULL OR occurrences > 0",
            name="ck_transactions_occurrences_positive",
        ),
    )
    op.create_index("ix_transactions_recurring_id", "transactions", ["recurring_id"])
    op.create_index("ix_transactions_year_month", "transactions", ["year", "month"])
    op.create_index("ix_transactions_date", "transactions", ["date"])


def downgrade():
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_index("ix_transactions_year_month", table_name="transactions")
    op.drop_index("ix_transactions_recurring_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("transaction_types")

import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


TRANSACTIONS = "transactions"
TRANSACTION_TYPES = "transactionTypes"


class Direction(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class EndCondition(str, Enum):
    never = "never"
    after_occurrences = "after_occurrences"
    on_date = "on_date"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class TransactionTypeRecord(Base, TimestampMixin):
    __tablename__ = "transaction_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)


class TransactionRecord(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[Direction] = mapped_column(SAEnum(Direction), nullable=False)
    type_id: Mapped[Optional[int]] = mapped_column(Integer)
    type_name: Mapped[Optional[str]] = mapped_column(String(100))

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    date: Mapped[Optional[date]] = mapped_column(Date)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    is_repeating: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    frequency: Mapped[Optional[Frequency]] = mapped_column(SAEnum(Frequency))
    end_condition: Mapped[Optional[EndCondition]] = mapped_column(
        SAEnum(EndCondition)
    )
    occurrences: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    recurring_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_master: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_id: Mapped[Optional[int]] = mapped_column(Integer)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        Index("ix_transactions_recurring_id", "recurring_id"),
        Index("ix_transactions_year_month", "year", "month"),
        Index("ix_transactions_date", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "occurrences IS NULL OR occurrences > 0",
            name="ck_transactions_occurrences_positive",
        ),
    )


COLLECTIONS: dict[str, type[Base]] = {
    TRANSACTIONS: TransactionRecord,
    TRANSACTION_TYPES: TransactionTypeRecord,
}

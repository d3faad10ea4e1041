import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import Direction, EndCondition, Frequency


class RecurrenceRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    end_condition: EndCondition = EndCondition.never
    occurrences: Optional[int] = Field(default=None, gt=0)
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def _check_end_condition(self) -> "RecurrenceRule":
        if (
            self.end_condition == EndCondition.after_occurrences
            and self.occurrences is None
        ):
            raise ValueError("Occurrences are required for a rule ending after N")
        if self.end_condition == EndCondition.on_date and self.end_date is None:
            raise ValueError("End date is required for a rule ending on a date")
        return self


class TransactionTemplate(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    direction: Direction
    type_id: Optional[int] = None
    due_date: date
    payment_date: Optional[date] = None
    is_repeating: bool = False
    rule: Optional[RecurrenceRule] = None

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @model_validator(mode="after")
    def _check_rule(self) -> "TransactionTemplate":
        if self.is_repeating and self.rule is None:
            raise ValueError("Repeating transactions need a recurrence rule")
        return self

    @property
    def effective_rule(self) -> Optional[RecurrenceRule]:
        return self.rule if self.is_repeating else None


class TransactionEditIn(TransactionTemplate):
    expected_version: Optional[int] = Field(default=None, ge=1)


class TransactionInstance(BaseModel):
    """One stored, dated occurrence (or a standalone transaction)."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    amount_cents: int = Field(..., ge=0)
    description: str
    direction: Direction
    type_id: Optional[int] = None
    type_name: Optional[str] = None
    due_date: dt.date
    payment_date: Optional[dt.date] = None
    date: Optional[dt.date] = None
    month: int = Field(..., ge=1, le=12)
    year: int
    is_repeating: bool = False
    frequency: Optional[Frequency] = None
    end_condition: Optional[EndCondition] = None
    occurrences: Optional[int] = None
    end_date: Optional[dt.date] = None
    recurring_index: int = 0
    is_master: bool = False
    recurring_id: Optional[int] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def rule(self) -> Optional[RecurrenceRule]:
        if not self.is_repeating or self.frequency is None:
            return None
        return RecurrenceRule(
            frequency=self.frequency,
            end_condition=self.end_condition or EndCondition.never,
            occurrences=self.occurrences,
            end_date=self.end_date,
        )

    @property
    def series_key(self) -> Optional[int]:
        return self.recurring_id if self.recurring_id is not None else self.id

    def to_record(self) -> dict[str, object]:
        return self.model_dump(exclude={"id", "version", "created_at", "updated_at"})


class TransactionTypeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    category: Direction

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class TransactionTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category: Direction


class ReconciliationRequest(BaseModel):
    original: TransactionInstance
    edited: TransactionTemplate
    expected_version: Optional[int] = None

    @model_validator(mode="after")
    def _check_original(self) -> "ReconciliationRequest":
        if self.original.id is None:
            raise ValueError("Only stored transactions can be edited")
        return self


class ReconciliationResult(BaseModel):
    transaction_id: int
    regenerated: bool
    deleted_ids: list[int] = Field(default_factory=list)
    created_ids: list[int] = Field(default_factory=list)


class Summary(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    balance: Decimal
    savings_rate: Decimal
    count: int = 0

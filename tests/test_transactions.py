from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import StoreWriteFailure, TransactionValidationError
from models import TRANSACTIONS, Direction, EndCondition, Frequency
from schemas import RecurrenceRule, TransactionTemplate, TransactionTypeIn
from services import TransactionService, TransactionTypeService
from store import ChangeFeed, SqlTransactionStore


def _store(session: Session) -> SqlTransactionStore:
    return SqlTransactionStore(session, ChangeFeed())


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _monthly(occurrences: int, **overrides) -> TransactionTemplate:
    data = dict(
        amount_cents=95000,
        description="Rent",
        direction=Direction.expense,
        due_date=date(2025, 1, 1),
        is_repeating=True,
        rule=RecurrenceRule(
            frequency=Frequency.monthly,
            end_condition=EndCondition.after_occurrences,
            occurrences=occurrences,
        ),
    )
    data.update(overrides)
    return TransactionTemplate(**data)


def test_one_off_transaction_is_its_own_record() -> None:
    with _session() as session:
        service = TransactionService(_store(session))
        [created] = service.create(
            TransactionTemplate(
                amount_cents=2500,
                description="  Salary bonus ",
                direction=Direction.income,
                due_date=date(2025, 3, 14),
            )
        )

        stored = service.get(created.id)
        assert stored.description == "Salary bonus"
        assert stored.is_repeating is False
        assert stored.recurring_id is None
        assert (stored.date, stored.month, stored.year) == (date(2025, 3, 14), 3, 2025)


def test_recurring_series_is_linked_to_master() -> None:
    with _session() as session:
        service = TransactionService(_store(session))
        created = service.create(_monthly(4))

        assert len(created) == 4
        masters = [i for i in created if i.is_master]
        assert len(masters) == 1
        master = masters[0]
        assert master.recurring_index == 0
        assert {i.recurring_id for i in created} == {master.id}
        assert service.get(master.recurring_id).is_master
        assert [i.due_date.month for i in created] == [1, 2, 3, 4]


def test_series_carries_type_name_for_matching_direction() -> None:
    with _session() as session:
        store = _store(session)
        housing = TransactionTypeService(store).create(
            TransactionTypeIn(name="Housing", category=Direction.expense)
        )
        created = TransactionService(store).create(_monthly(2, type_id=housing.id))
        assert {i.type_name for i in created} == {"Housing"}
        assert {i.type_id for i in created} == {housing.id}


def test_type_direction_mismatch_rejected_before_any_write() -> None:
    with _session() as session:
        store = _store(session)
        salary = TransactionTypeService(store).create(
            TransactionTypeIn(name="Salary", category=Direction.income)
        )
        with pytest.raises(TransactionValidationError):
            TransactionService(store).create(_monthly(3, type_id=salary.id))
        with pytest.raises(TransactionValidationError):
            TransactionService(store).create(_monthly(3, type_id=999))
        assert store.snapshot(TRANSACTIONS) == []


def test_missing_required_fields_fail_validation() -> None:
    with pytest.raises(ValidationError):
        TransactionTemplate(
            amount_cents=100, description="   ", direction=Direction.expense,
            due_date=date(2025, 1, 1),
        )
    with pytest.raises(ValidationError):
        TransactionTemplate(
            amount_cents=0, description="Snack", direction=Direction.expense,
            due_date=date(2025, 1, 1),
        )
    with pytest.raises(ValidationError):
        TransactionTemplate(
            amount_cents=100, description="Snack", direction=Direction.expense,
        )
    with pytest.raises(ValidationError):
        TransactionTemplate(
            amount_cents=100, description="Snack", direction=Direction.expense,
            due_date=date(2025, 1, 1), is_repeating=True,
        )


def test_rule_yielding_no_occurrences_is_rejected_before_writes() -> None:
    with _session() as session:
        store = _store(session)
        template = _monthly(
            3,
            due_date=date(2025, 5, 1),
            rule=RecurrenceRule(
                frequency=Frequency.daily,
                end_condition=EndCondition.on_date,
                end_date=date(2025, 4, 1),
            ),
        )
        with pytest.raises(TransactionValidationError):
            TransactionService(store).create(template)
        assert store.snapshot(TRANSACTIONS) == []


def test_failure_mid_series_leaves_written_instances(monkeypatch) -> None:
    with _session() as session:
        store = _store(session)
        original_create = store.create
        calls = {"n": 0}

        def flaky_create(collection, record):
            calls["n"] += 1
            if calls["n"] == 3:
                raise StoreWriteFailure("create", collection, "quota exceeded")
            return original_create(collection, record)

        monkeypatch.setattr(store, "create", flaky_create)
        with pytest.raises(StoreWriteFailure):
            TransactionService(store).create(_monthly(5))

        remaining = store.snapshot(TRANSACTIONS, "recurring_index")
        assert [r["recurring_index"] for r in remaining] == [0, 1]
        assert remaining[0]["recurring_id"] is None
        assert remaining[1]["recurring_id"] == remaining[0]["id"]


def test_delete_removes_only_one_instance() -> None:
    with _session() as session:
        service = TransactionService(_store(session))
        created = service.create(_monthly(3))
        service.delete(created[1].id)

        assert [i.recurring_index for i in service.series(created[0].id)] == [0, 2]


def test_list_is_newest_first() -> None:
    with _session() as session:
        service = TransactionService(_store(session))
        service.create(_monthly(3))
        assert [i.due_date.month for i in service.list()] == [3, 2, 1]


def test_type_options_filter_by_direction_and_reject_duplicates() -> None:
    with _session() as session:
        types = TransactionTypeService(_store(session))
        types.create(TransactionTypeIn(name="Salary", category=Direction.income))
        food = types.create(TransactionTypeIn(name="Food", category=Direction.expense))
        types.create(TransactionTypeIn(name="Rent", category=Direction.expense))

        assert [t.name for t in types.options_for(Direction.expense)] == ["Food", "Rent"]
        assert [t.name for t in types.options_for(Direction.income)] == ["Salary"]

        with pytest.raises(TransactionValidationError):
            types.create(TransactionTypeIn(name=" food ", category=Direction.expense))

        types.update(food.id, TransactionTypeIn(name="Groceries", category=Direction.expense))
        assert types.get(food.id).name == "Groceries"

        types.delete(food.id)
        assert [t.name for t in types.list_all()] == ["Rent", "Salary"]


def test_type_in_use_cannot_change_category_or_be_deleted() -> None:
    with _session() as session:
        store = _store(session)
        types = TransactionTypeService(store)
        housing = types.create(TransactionTypeIn(name="Housing", category=Direction.expense))
        [rent] = TransactionService(store).create(_monthly(1, type_id=housing.id))

        with pytest.raises(TransactionValidationError):
            types.update(housing.id, TransactionTypeIn(name="Housing", category=Direction.income))
        with pytest.raises(TransactionValidationError):
            types.delete(housing.id)

        renamed = types.update(
            housing.id, TransactionTypeIn(name="Home", category=Direction.expense)
        )
        assert renamed.name == "Home"
        assert types.get(housing.id).category == Direction.expense

        TransactionService(store).delete(rent.id)
        types.delete(housing.id)
        assert types.list_all() == []

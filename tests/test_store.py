from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import Base
from errors import (
    ConcurrentEditError,
    StoreReadFailure,
    StoreWriteFailure,
    TransactionNotFound,
)
from models import TRANSACTION_TYPES, TRANSACTIONS, Direction
from store import ChangeFeed, SqlTransactionStore


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _record(description: str = "Coffee", amount_cents: int = 350, **extra) -> dict:
    due = extra.pop("due_date", date(2025, 1, 5))
    record = {
        "amount_cents": amount_cents,
        "description": description,
        "direction": Direction.expense,
        "due_date": due,
        "date": due,
        "month": due.month,
        "year": due.year,
    }
    record.update(extra)
    return record


def test_create_query_and_update_bump_version() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        identity = store.create(TRANSACTIONS, _record())

        [stored] = store.query_by_field(TRANSACTIONS, "id", identity)
        assert stored["description"] == "Coffee"
        assert stored["version"] == 1
        assert stored["created_at"] is not None

        store.update(TRANSACTIONS, identity, {"description": "Tea"}, expected_version=1)

        [stored] = store.query_by_field(TRANSACTIONS, "id", identity)
        assert stored["description"] == "Tea"
        assert stored["version"] == 2


def test_update_with_stale_version_is_rejected() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        identity = store.create(TRANSACTIONS, _record())
        store.update(TRANSACTIONS, identity, {"amount_cents": 400})

        with pytest.raises(ConcurrentEditError) as excinfo:
            store.update(
                TRANSACTIONS, identity, {"amount_cents": 500}, expected_version=1
            )
        assert excinfo.value.actual == 2

        [stored] = store.query_by_field(TRANSACTIONS, "id", identity)
        assert stored["amount_cents"] == 400


def test_update_and_delete_unknown_identity() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        with pytest.raises(TransactionNotFound):
            store.update(TRANSACTIONS, 99, {"description": "x"})
        with pytest.raises(TransactionNotFound):
            store.delete(TRANSACTIONS, 99)


def test_query_by_field_matches_null() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        linked = store.create(TRANSACTIONS, _record(recurring_id=7))
        loose = store.create(TRANSACTIONS, _record())

        assert [r["id"] for r in store.query_by_field(TRANSACTIONS, "recurring_id", 7)] == [linked]
        assert [r["id"] for r in store.query_by_field(TRANSACTIONS, "recurring_id", None)] == [loose]


def test_unknown_collection_and_field_are_programming_errors() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        with pytest.raises(ValueError):
            store.create("budgets", {})
        with pytest.raises(ValueError):
            store.query_by_field(TRANSACTIONS, "colour", "red")


def test_failed_commit_raises_write_failure_and_rolls_back(monkeypatch) -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())

        def boom() -> None:
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(session, "commit", boom)
        with pytest.raises(StoreWriteFailure):
            store.create(TRANSACTIONS, _record())
        monkeypatch.undo()

        assert store.snapshot(TRANSACTIONS) == []


def test_failed_query_raises_read_failure(monkeypatch) -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())

        def boom(*args, **kwargs):
            raise SQLAlchemyError("connection lost")

        monkeypatch.setattr(session, "scalars", boom)
        with pytest.raises(StoreReadFailure):
            store.query_by_field(TRANSACTIONS, "id", 1)


def test_subscription_delivers_ordered_snapshots_until_unsubscribed() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        subscription = store.subscribe(TRANSACTIONS, "date", descending=True)

        store.create(TRANSACTIONS, _record("Early", due_date=date(2025, 1, 1)))
        store.create(TRANSACTIONS, _record("Late", due_date=date(2025, 2, 1)))
        store.create(TRANSACTION_TYPES, {"name": "Food", "category": Direction.expense})
        subscription.unsubscribe()
        store.create(TRANSACTIONS, _record("Ignored"))

        snapshots = list(subscription)
        assert [[r["description"] for r in s] for s in snapshots] == [
            [],
            ["Early"],
            ["Late", "Early"],
        ]


def test_subscription_context_manager_unsubscribes() -> None:
    with _session() as session:
        feed = ChangeFeed()
        store = SqlTransactionStore(session, feed)
        with store.subscribe(TRANSACTIONS) as subscription:
            assert feed.listeners(TRANSACTIONS) == [subscription]
        assert feed.listeners(TRANSACTIONS) == []
        assert subscription.closed
        assert subscription.get(timeout=0.1) == []
        assert subscription.get(timeout=0.1) is None


def test_nothing_is_delivered_after_unsubscribe() -> None:
    with _session() as session:
        store = SqlTransactionStore(session, ChangeFeed())
        subscription = store.subscribe(TRANSACTIONS)
        subscription.unsubscribe()

        subscription.push([_record("Late push")])
        subscription.fail(StoreReadFailure("snapshot", TRANSACTIONS, "offline"))

        assert list(subscription) == [[]]
        assert subscription.drain() == []

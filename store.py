import logging
import queue
import threading
from datetime import datetime
from typing import Any, Iterator, Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import (
    ConcurrentEditError,
    StoreReadFailure,
    StoreWriteFailure,
    TransactionNotFound,
)
from models import COLLECTIONS


logger = logging.getLogger(__name__)

Record = dict[str, Any]

_CLOSED = object()


class Subscription:
    """Push stream of full collection snapshots.

    Snapshots arrive in the order the store committed the writes that
    produced them. Iteration blocks until the next snapshot and ends once
    ``unsubscribe`` has been called and queued snapshots are drained.
    """

    def __init__(
        self,
        collection: str,
        order_by: Optional[str],
        descending: bool,
        feed: "ChangeFeed",
    ) -> None:
        self.collection = collection
        self.order_by = order_by
        self.descending = descending
        self.closed = False
        self._feed = feed
        self._lock = threading.Lock()
        self._queue: "queue.Queue[object]" = queue.Queue()

    def _put(self, item: object) -> None:
        # Nothing may be queued behind the close marker.
        with self._lock:
            if not self.closed:
                self._queue.put(item)

    def push(self, snapshot: list[Record]) -> None:
        self._put(snapshot)

    def fail(self, error: StoreReadFailure) -> None:
        self._put(error)

    def get(self, timeout: Optional[float] = None) -> Optional[list[Record]]:
        """Next snapshot, or None once the stream is closed.

        Raises ``queue.Empty`` when ``timeout`` elapses first, and
        ``StoreReadFailure`` when the store could not read a snapshot.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        if isinstance(item, StoreReadFailure):
            raise item
        return item

    def drain(self) -> list[list[Record]]:
        snapshots = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return snapshots
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return snapshots
            if isinstance(item, StoreReadFailure):
                raise item
            snapshots.append(item)

    def unsubscribe(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._queue.put(_CLOSED)
        self._feed.remove(self)

    def __iter__(self) -> Iterator[list[Record]]:
        while True:
            snapshot = self.get()
            if snapshot is None:
                return
            yield snapshot

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def add(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.append(subscription)

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def listeners(self, collection: str) -> list[Subscription]:
        with self._lock:
            return [s for s in self._subscriptions if s.collection == collection]


default_feed = ChangeFeed()


class TransactionStore(Protocol):
    def create(self, collection: str, record: Record) -> int: ...

    def update(
        self,
        collection: str,
        identity: int,
        partial: Record,
        *,
        expected_version: Optional[int] = None,
    ) -> None: ...

    def delete(self, collection: str, identity: int) -> None: ...

    def query_by_field(self, collection: str, field: str, value: Any) -> list[Record]: ...

    def snapshot(
        self,
        collection: str,
        order_by: Optional[str] = None,
        *,
        descending: bool = False,
    ) -> list[Record]: ...

    def subscribe(
        self,
        collection: str,
        order_by: Optional[str] = None,
        *,
        descending: bool = False,
    ) -> Subscription: ...


def _model_for(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def _to_record(row) -> Record:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


class SqlTransactionStore:
    """TransactionStore backed by a SQLAlchemy session.

    Every write commits on its own, so a failure part way through a
    multi-write operation leaves the earlier writes in place.
    """

    def __init__(self, session: Session, feed: Optional[ChangeFeed] = None) -> None:
        self.session = session
        self.feed = feed or default_feed

    def _columns(self, model, fields) -> None:
        known = set(model.__table__.columns.keys())
        unknown = sorted(set(fields) - known)
        if unknown:
            raise ValueError(f"Unknown fields for {model.__tablename__}: {unknown}")

    def _write_failed(self, operation: str, collection: str, exc: Exception):
        self.session.rollback()
        logger.error(f"store_write_failed: op={operation} collection={collection}")
        return StoreWriteFailure(operation, collection, str(exc))

    def _read_failed(self, operation: str, collection: str, exc: Exception):
        self.session.rollback()
        logger.error(f"store_read_failed: op={operation} collection={collection}")
        return StoreReadFailure(operation, collection, str(exc))

    def create(self, collection: str, record: Record) -> int:
        model = _model_for(collection)
        values = {k: v for k, v in record.items() if k != "id"}
        self._columns(model, values)
        now = datetime.utcnow()
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        row = model(**values)
        try:
            self.session.add(row)
            self.session.commit()
            identity = row.id
        except SQLAlchemyError as exc:
            raise self._write_failed("create", collection, exc) from exc
        self._publish(collection)
        return identity

    def update(
        self,
        collection: str,
        identity: int,
        partial: Record,
        *,
        expected_version: Optional[int] = None,
    ) -> None:
        model = _model_for(collection)
        values = {k: v for k, v in partial.items() if k != "id"}
        self._columns(model, values)
        values["updated_at"] = datetime.utcnow()
        stmt = update(model).where(model.id == identity)
        versioned = hasattr(model, "version")
        if versioned:
            values["version"] = model.version + 1
            if expected_version is not None:
                stmt = stmt.where(model.version == expected_version)
        try:
            result = self.session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._write_failed("update", collection, exc) from exc

        if result.rowcount == 0:
            current = self._fetch(collection, identity)
            if current is None:
                raise TransactionNotFound(f"{collection} record {identity} not found")
            raise ConcurrentEditError(
                collection, identity, expected_version, current["version"]
            )
        self._publish(collection)

    def delete(self, collection: str, identity: int) -> None:
        model = _model_for(collection)
        try:
            result = self.session.execute(
                delete(model)
                .where(model.id == identity)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._write_failed("delete", collection, exc) from exc
        if result.rowcount == 0:
            raise TransactionNotFound(f"{collection} record {identity} not found")
        self.session.expire_all()
        self._publish(collection)

    def _fetch(self, collection: str, identity: int) -> Optional[Record]:
        rows = self.query_by_field(collection, "id", identity)
        return rows[0] if rows else None

    def query_by_field(self, collection: str, field: str, value: Any) -> list[Record]:
        model = _model_for(collection)
        self._columns(model, [field])
        column = getattr(model, field)
        criterion = column.is_(None) if value is None else column == value
        stmt = (
            select(model)
            .where(criterion)
            .order_by(model.id)
            .execution_options(populate_existing=True)
        )
        try:
            rows = self.session.scalars(stmt).all()
        except SQLAlchemyError as exc:
            raise self._read_failed("query", collection, exc) from exc
        return [_to_record(row) for row in rows]

    def snapshot(
        self,
        collection: str,
        order_by: Optional[str] = None,
        *,
        descending: bool = False,
    ) -> list[Record]:
        model = _model_for(collection)
        stmt = select(model).execution_options(populate_existing=True)
        if order_by:
            self._columns(model, [order_by])
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        stmt = stmt.order_by(model.id.desc() if descending else model.id.asc())
        try:
            rows = self.session.scalars(stmt).all()
        except SQLAlchemyError as exc:
            raise self._read_failed("snapshot", collection, exc) from exc
        return [_to_record(row) for row in rows]

    def subscribe(
        self,
        collection: str,
        order_by: Optional[str] = None,
        *,
        descending: bool = False,
    ) -> Subscription:
        subscription = Subscription(collection, order_by, descending, self.feed)
        subscription.push(self.snapshot(collection, order_by, descending=descending))
        self.feed.add(subscription)
        logger.debug(f"subscribed: collection={collection} order_by={order_by}")
        return subscription

    def _publish(self, collection: str) -> None:
        for subscription in self.feed.listeners(collection):
            try:
                snapshot = self.snapshot(
                    collection,
                    subscription.order_by,
                    descending=subscription.descending,
                )
            except StoreReadFailure as exc:
                subscription.fail(exc)
                continue
            subscription.push(snapshot)

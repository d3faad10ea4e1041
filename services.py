from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from rapidfuzz.distance import Levenshtein

from config import Settings, get_settings
from errors import (
    ConcurrentEditError,
    TransactionNotFound,
    TransactionValidationError,
)
from models import TRANSACTION_TYPES, TRANSACTIONS, Direction
from recurrence import expand, link_instances
from schemas import (
    ReconciliationRequest,
    ReconciliationResult,
    TransactionInstance,
    TransactionTemplate,
    TransactionTypeIn,
    TransactionTypeOut,
)
from store import TransactionStore


logger = logging.getLogger(__name__)


def standalone_instance(
    template: TransactionTemplate, type_name: Optional[str] = None
) -> TransactionInstance:
    due = template.due_date
    return TransactionInstance(
        amount_cents=template.amount_cents,
        description=template.description,
        direction=template.direction,
        type_id=template.type_id,
        type_name=type_name,
        due_date=due,
        payment_date=template.payment_date,
        date=due,
        month=due.month,
        year=due.year,
        is_repeating=False,
    )


class TransactionTypeService:
    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    def list_all(self) -> list[TransactionTypeOut]:
        records = self.store.snapshot(TRANSACTION_TYPES, "name")
        return [TransactionTypeOut.model_validate(r) for r in records]

    def options_for(self, direction: Direction) -> list[TransactionTypeOut]:
        return [t for t in self.list_all() if t.category == direction]

    def get(self, type_id: int) -> TransactionTypeOut:
        records = self.store.query_by_field(TRANSACTION_TYPES, "id", type_id)
        if not records:
            raise TransactionNotFound("Transaction type not found")
        return TransactionTypeOut.model_validate(records[0])

    def _ensure_unique(self, data: TransactionTypeIn, exclude_id: Optional[int] = None):
        name = data.name.lower()
        for existing in self.options_for(data.category):
            if existing.id != exclude_id and existing.name.lower() == name:
                raise TransactionValidationError("Transaction type already exists")

    def create(self, data: TransactionTypeIn) -> TransactionTypeOut:
        self._ensure_unique(data)
        identity = self.store.create(
            TRANSACTION_TYPES, {"name": data.name, "category": data.category}
        )
        return TransactionTypeOut(id=identity, name=data.name, category=data.category)

    def _in_use(self, type_id: int) -> bool:
        return bool(self.store.query_by_field(TRANSACTIONS, "type_id", type_id))

    def update(self, type_id: int, data: TransactionTypeIn) -> TransactionTypeOut:
        current = self.get(type_id)
        self._ensure_unique(data, exclude_id=type_id)
        if current.category != data.category and self._in_use(type_id):
            raise TransactionValidationError(
                "Cannot change the category of a transaction type in use"
            )
        self.store.update(
            TRANSACTION_TYPES,
            type_id,
            {"name": data.name, "category": data.category},
        )
        return TransactionTypeOut(id=type_id, name=data.name, category=data.category)

    def delete(self, type_id: int) -> None:
        if self._in_use(type_id):
            raise TransactionValidationError("Transaction type is in use")
        self.store.delete(TRANSACTION_TYPES, type_id)

    def resolve(
        self, type_id: Optional[int], direction: Direction
    ) -> tuple[Optional[int], Optional[str]]:
        if type_id is None:
            return None, None
        try:
            txn_type = self.get(type_id)
        except TransactionNotFound as exc:
            raise TransactionValidationError("Transaction type not found") from exc
        if txn_type.category != direction:
            raise TransactionValidationError("Transaction type direction mismatch")
        return txn_type.id, txn_type.name


class TransactionService:
    def __init__(self, store: TransactionStore) -> None:
        self.store = store
        self.types = TransactionTypeService(store)

    def get(self, transaction_id: int) -> TransactionInstance:
        records = self.store.query_by_field(TRANSACTIONS, "id", transaction_id)
        if not records:
            raise TransactionNotFound("Transaction not found")
        return TransactionInstance.model_validate(records[0])

    def list(
        self, order_by: str = "date", *, descending: bool = True
    ) -> list[TransactionInstance]:
        records = self.store.snapshot(TRANSACTIONS, order_by, descending=descending)
        return [TransactionInstance.model_validate(r) for r in records]

    def series(self, recurring_id: int) -> list[TransactionInstance]:
        records = self.store.query_by_field(TRANSACTIONS, "recurring_id", recurring_id)
        instances = [TransactionInstance.model_validate(r) for r in records]
        return sorted(instances, key=lambda i: (i.recurring_index, i.id or 0))

    def create(self, template: TransactionTemplate) -> list[TransactionInstance]:
        _, type_name = self.types.resolve(template.type_id, template.direction)
        rule = template.effective_rule
        if rule is None:
            instance = standalone_instance(template, type_name)
            identity = self.store.create(TRANSACTIONS, instance.to_record())
            logger.info(f"transaction_created: id={identity}")
            return [instance.model_copy(update={"id": identity})]

        instances = expand(template, rule, template.due_date)
        if not instances:
            raise TransactionValidationError("Recurrence rule yields no occurrences")
        master_id = self._persist_series(instances, type_name)
        logger.info(
            f"series_created: recurring_id={master_id} count={len(instances)} "
            f"frequency={rule.frequency.value}"
        )
        return self.series(master_id)

    def _persist_series(
        self, instances: list[TransactionInstance], type_name: Optional[str]
    ) -> int:
        # Identities come from the store, so the master is written first and
        # its id becomes the series key for every other instance.
        master = instances[0].model_copy(
            update={"is_master": True, "type_name": type_name}
        )
        master_id = self.store.create(TRANSACTIONS, master.to_record())
        linked = link_instances(instances, master_id, type_name=type_name)
        for instance in linked[1:]:
            self.store.create(TRANSACTIONS, instance.to_record())
        self.store.update(TRANSACTIONS, master_id, {"recurring_id": master_id})
        return master_id

    def delete(self, transaction_id: int) -> None:
        self.store.delete(TRANSACTIONS, transaction_id)
        logger.info(f"transaction_deleted: id={transaction_id}")


@dataclass
class EditSession:
    """State of one edit dialog, independent of any UI toolkit."""

    editing_id: Optional[int] = None
    is_open: bool = False
    last_error: Optional[str] = None

    def open(self, transaction_id: int) -> None:
        self.editing_id = transaction_id
        self.is_open = True
        self.last_error = None

    def close(self) -> None:
        self.editing_id = None
        self.is_open = False


class ReconciliationService:
    def __init__(
        self, store: TransactionStore, settings: Optional[Settings] = None
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.types = TransactionTypeService(store)

    @staticmethod
    def needs_regeneration(
        original: TransactionInstance, edited: TransactionTemplate
    ) -> bool:
        was_recurring = original.is_repeating
        is_recurring = edited.is_repeating
        rule_changed = (
            was_recurring and is_recurring and original.rule != edited.effective_rule
        )
        return rule_changed or (not was_recurring and is_recurring)

    def reconcile(self, request: ReconciliationRequest) -> ReconciliationResult:
        original = request.original
        edited = request.edited
        identity = original.id
        expected_version = request.expected_version or original.version

        type_id, type_name = self.types.resolve(edited.type_id, edited.direction)
        regenerate = self.needs_regeneration(original, edited)
        instances: list[TransactionInstance] = []
        if regenerate:
            instances = expand(edited, edited.rule, edited.due_date)
            if not instances:
                raise TransactionValidationError(
                    "Recurrence rule yields no occurrences"
                )

        self._check_version(identity, expected_version)

        deleted_ids: list[int] = []
        created_ids: list[int] = []
        if regenerate:
            deleted_ids = self._delete_stale(original)
            linked = link_instances(instances, identity, type_name=type_name)
            for instance in linked[1:]:
                created_ids.append(self.store.create(TRANSACTIONS, instance.to_record()))

        fields = self._edited_fields(edited, type_id, type_name)
        if regenerate:
            fields.update(is_master=True, recurring_index=0, recurring_id=identity)
        elif original.is_repeating and not edited.is_repeating:
            # A one-off leaves its series so later regenerations cannot reach it.
            fields.update(
                is_master=False,
                recurring_index=0,
                recurring_id=None,
                frequency=None,
                end_condition=None,
                occurrences=None,
                end_date=None,
            )
        self.store.update(
            TRANSACTIONS, identity, fields, expected_version=expected_version
        )
        logger.info(
            f"reconciled: id={identity} regenerated={regenerate} "
            f"deleted={len(deleted_ids)} created={len(created_ids)}"
        )
        return ReconciliationResult(
            transaction_id=identity,
            regenerated=regenerate,
            deleted_ids=deleted_ids,
            created_ids=created_ids,
        )

    def submit(
        self, session: EditSession, request: ReconciliationRequest
    ) -> ReconciliationResult:
        """Reconcile one edit and close the edit session whatever happens."""
        try:
            result = self.reconcile(request)
        except Exception as exc:
            session.last_error = str(exc)
            logger.exception(f"reconcile_failed: id={request.original.id}")
            raise
        finally:
            session.close()
        session.last_error = None
        return result

    def _check_version(self, identity: int, expected_version: int) -> None:
        records = self.store.query_by_field(TRANSACTIONS, "id", identity)
        if not records:
            raise TransactionNotFound("Transaction not found")
        actual = records[0]["version"]
        if actual != expected_version:
            raise ConcurrentEditError(TRANSACTIONS, identity, expected_version, actual)

    def _delete_stale(self, original: TransactionInstance) -> list[int]:
        # Editing a non-master instance retires the whole old series; the
        # edited record becomes the master of the new one.
        stale = [
            r["id"]
            for r in self.store.query_by_field(
                TRANSACTIONS, "recurring_id", original.series_key
            )
            if r["id"] != original.id
        ]
        if self.settings.legacy_series_matching:
            stale.extend(i for i in self._legacy_matches(original) if i not in stale)
        for stale_id in stale:
            self.store.delete(TRANSACTIONS, stale_id)
        return stale

    def _legacy_matches(self, original: TransactionInstance) -> list[int]:
        """Unlinked records that look like copies of ``original``.

        Series generated before linkage existed carry no recurring_id, so
        they are matched on amount, direction, type and a description at
        most one edit away. This can delete look-alike records that were
        entered by hand; it only runs when legacy matching is enabled.
        """
        description = original.description.lower()
        matches = []
        for record in self.store.query_by_field(TRANSACTIONS, "recurring_id", None):
            if record["id"] == original.id or not record["is_repeating"]:
                continue
            if (
                record["amount_cents"] != original.amount_cents
                or record["direction"] != original.direction
                or record["type_id"] != original.type_id
            ):
                continue
            if Levenshtein.distance(description, record["description"].lower()) > 1:
                continue
            logger.warning(
                f"legacy_series_match: id={record['id']} original={original.id}"
            )
            matches.append(record["id"])
        return matches

    @staticmethod
    def _edited_fields(
        edited: TransactionTemplate,
        type_id: Optional[int],
        type_name: Optional[str],
    ) -> dict[str, object]:
        due = edited.due_date
        fields: dict[str, object] = {
            "amount_cents": edited.amount_cents,
            "description": edited.description,
            "direction": edited.direction,
            "type_id": type_id,
            "type_name": type_name,
            "due_date": due,
            "payment_date": edited.payment_date,
            "date": due,
            "month": due.month,
            "year": due.year,
            "is_repeating": edited.is_repeating,
        }
        if edited.is_repeating and edited.rule is not None:
            fields.update(
                frequency=edited.rule.frequency,
                end_condition=edited.rule.end_condition,
                occurrences=edited.rule.occurrences,
                end_date=edited.rule.end_date,
            )
        return fields

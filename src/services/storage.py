"""Relational-side storage: the audit index, business entities and records.

The ledger holds the tamper-evident copy of every audit record; the
stores in this module hold the queryable copy plus the business entities
the compliance, erasure and risk services operate on.

Each concern is a :class:`typing.Protocol` with an in-memory
implementation guarded by an :class:`asyncio.Lock`, which is sufficient
for single-process async workloads and for tests.  A database-backed
implementation only has to satisfy the same protocol.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import structlog
from pydantic import BaseModel

from src.models.audit import AuditFilter, AuditRecord
from src.services.errors import NotFoundError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def normalize_entity_type(entity_type: str) -> str:
    """Map ``"UserProfile"``, ``"user_profile"`` and ``"user-profile"`` to one key."""
    return entity_type.replace("_", "").replace("-", "").lower()


# ---------------------------------------------------------------------------
# Audit index
# ---------------------------------------------------------------------------


@runtime_checkable
class AuditIndex(Protocol):
    """Queryable store of :class:`AuditRecord` rows."""

    async def insert(self, record: AuditRecord) -> None: ...

    async def get(self, record_id: str) -> AuditRecord | None: ...

    async def query(
        self, entity_type: str, entity_id: str, filters: AuditFilter | None = None
    ) -> list[AuditRecord]: ...

    async def update_ledger_reference(
        self, record_id: str, tx_id: str, ledger_hash: str
    ) -> AuditRecord: ...

    async def delete(self, record_id: str) -> None: ...

    async def list_unverified(self, limit: int = 100) -> list[AuditRecord]: ...

    async def list_expiring(self, before: datetime) -> list[AuditRecord]: ...

    async def list_between(
        self, entity_types: Iterable[str], since: datetime, until: datetime
    ) -> list[AuditRecord]: ...


class InMemoryAuditIndex:
    """Dict-backed :class:`AuditIndex`."""

    __slots__ = ("_lock", "_rows")

    def __init__(self) -> None:
        self._rows: dict[str, AuditRecord] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: AuditRecord) -> None:
        async with self._lock:
            if record.record_id in self._rows:
                raise ValueError(f"audit record {record.record_id} already exists")
            self._rows[record.record_id] = record

    async def get(self, record_id: str) -> AuditRecord | None:
        return self._rows.get(record_id)

    async def query(
        self, entity_type: str, entity_id: str, filters: AuditFilter | None = None
    ) -> list[AuditRecord]:
        filters = filters or AuditFilter()
        kind = normalize_entity_type(entity_type)
        matched = [
            row
            for row in self._rows.values()
            if row.entity_id == entity_id
            and normalize_entity_type(row.entity_type) == kind
            and filters.matches(row)
        ]
        matched.sort(key=lambda r: r.created_at, reverse=True)
        return matched[: filters.limit]

    async def update_ledger_reference(
        self, record_id: str, tx_id: str, ledger_hash: str
    ) -> AuditRecord:
        async with self._lock:
            row = self._rows.get(record_id)
            if row is None:
                raise NotFoundError(f"audit record {record_id} not found")
            updated = row.with_ledger_reference(tx_id, ledger_hash)
            self._rows[record_id] = updated
            return updated

    async def delete(self, record_id: str) -> None:
        async with self._lock:
            self._rows.pop(record_id, None)

    async def list_unverified(self, limit: int = 100) -> list[AuditRecord]:
        rows = sorted(
            (r for r in self._rows.values() if not r.ledger_verified),
            key=lambda r: r.created_at,
        )
        return rows[:limit]

    async def list_expiring(self, before: datetime) -> list[AuditRecord]:
        return sorted(
            (r for r in self._rows.values() if r.retention_until <= before),
            key=lambda r: r.retention_until,
        )

    async def list_between(
        self, entity_types: Iterable[str], since: datetime, until: datetime
    ) -> list[AuditRecord]:
        """Rows of any of *entity_types* written in ``[since, until]``, oldest first."""
        kinds = {normalize_entity_type(t) for t in entity_types}
        return sorted(
            (
                r
                for r in self._rows.values()
                if normalize_entity_type(r.entity_type) in kinds and since <= r.created_at <= until
            ),
            key=lambda r: r.created_at,
        )

    def __len__(self) -> int:
        return len(self._rows)


# ---------------------------------------------------------------------------
# Business entities
# ---------------------------------------------------------------------------


@runtime_checkable
class EntityStore(Protocol):
    """Business entities as plain dicts keyed by entity type and ``id``."""

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    async def list(self, entity_type: str) -> list[dict[str, Any]]: ...

    async def find(self, entity_type: str, **match: Any) -> list[dict[str, Any]]: ...

    async def put(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, entity_type: str, entity_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete(self, entity_type: str, entity_id: str) -> bool: ...

    async def delete_where(self, entity_type: str, **match: Any) -> int: ...


class InMemoryEntityStore:
    """Dict-backed :class:`EntityStore`.

    Entity type names are normalised, so ``"UserProfile"`` and
    ``"user_profile"`` address the same table.  Callers always receive
    copies; mutation goes through :meth:`update`.
    """

    __slots__ = ("_lock", "_tables")

    def __init__(self, seed: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        for entity_type, rows in (seed or {}).items():
            table = self._tables.setdefault(normalize_entity_type(entity_type), {})
            for row in rows:
                table[str(row["id"])] = copy.deepcopy(row)

    def _table(self, entity_type: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(normalize_entity_type(entity_type), {})

    async def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        row = self._table(entity_type).get(entity_id)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, entity_type: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._table(entity_type).values()]

    async def find(self, entity_type: str, **match: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._table(entity_type).values()
            if all(row.get(k) == v for k, v in match.items())
        ]

    async def put(self, entity_type: str, entity: dict[str, Any]) -> dict[str, Any]:
        if "id" not in entity:
            raise ValueError("entity must carry an 'id'")
        async with self._lock:
            self._table(entity_type)[str(entity["id"])] = copy.deepcopy(entity)
        return copy.deepcopy(entity)

    async def update(
        self, entity_type: str, entity_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._lock:
            row = self._table(entity_type).get(entity_id)
            if row is None:
                raise NotFoundError(f"{entity_type}#{entity_id} not found")
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        async with self._lock:
            return self._table(entity_type).pop(entity_id, None) is not None

    async def delete_where(self, entity_type: str, **match: Any) -> int:
        async with self._lock:
            table = self._table(entity_type)
            doomed = [
                key for key, row in table.items() if all(row.get(k) == v for k, v in match.items())
            ]
            for key in doomed:
                del table[key]
            return len(doomed)


# ---------------------------------------------------------------------------
# Typed record repositories
# ---------------------------------------------------------------------------


class InMemoryRepository(Generic[ModelT]):
    """Keyed store of pydantic records (issues, erasure records, SCA attempts).

    Parameters
    ----------
    key_field:
        Name of the attribute holding each record's identifier.
    """

    __slots__ = ("_items", "_key_field", "_lock")

    def __init__(self, key_field: str) -> None:
        self._key_field = key_field
        self._items: dict[str, ModelT] = {}
        self._lock = asyncio.Lock()

    def _key(self, item: ModelT) -> str:
        return str(getattr(item, self._key_field))

    async def add(self, item: ModelT) -> ModelT:
        async with self._lock:
            self._items[self._key(item)] = item.model_copy(deep=True)
        return item

    async def get(self, key: str) -> ModelT | None:
        item = self._items.get(key)
        return item.model_copy(deep=True) if item is not None else None

    async def update(self, item: ModelT) -> ModelT:
        async with self._lock:
            key = self._key(item)
            if key not in self._items:
                raise NotFoundError(f"{key} not found")
            self._items[key] = item.model_copy(deep=True)
        return item

    async def list(self) -> list[ModelT]:
        return [item.model_copy(deep=True) for item in self._items.values()]

    async def filter(self, predicate: Callable[[ModelT], bool]) -> list[ModelT]:
        return [item.model_copy(deep=True) for item in self._items.values() if predicate(item)]

    async def compare_and_transition(
        self, key: str, field: str, expected: Any, changes: dict[str, Any]
    ) -> ModelT | None:
        """Apply *changes* only if ``item.<field> == expected``.

        Returns the updated record, or ``None`` when the record is missing
        or another caller already moved it away from *expected*.
        """
        async with self._lock:
            item = self._items.get(key)
            if item is None or getattr(item, field) != expected:
                return None
            updated = item.model_copy(update=changes, deep=True)
            self._items[key] = updated
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._items)

"""Transactional record store on top of the workbook data layer.

The store keeps every collection in memory as a table of frozen row
dataclasses keyed by integer identity, and uses the workbook purely as the
durable copy. All writes go through an atomic scope:

* ``RecordStore.transaction(*collections)`` hands out a
  :class:`StoreTransaction` working on private copies of the named tables.
* Scopes run one at a time under a single :class:`asyncio.Lock`, which gives
  a serial schedule for every read-modify-write workflow.
* When the scope body finishes cleanly the changed tables are written to the
  workbook, the workbook is saved (temp file + replace), and only then are
  the new tables published to readers. Any exception discards the copies.

Readers outside a scope always see the last published tables, so they
observe either the state before a scope or the state after it, never a mix.
"""

from __future__ import annotations

import asyncio
import dataclasses
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log, migrations
from .constants import CollectionName
from .data_manager import ConstraintError, StorageError


# Single-field indexes, by collection.
INDEXES: Mapping[CollectionName, Tuple[str, ...]] = {
    CollectionName.PRODUCTS: ("name", "is_active", "category", "updated_at"),
    CollectionName.RAW_MATERIALS: ("name", "unit", "stock_quantity", "min_stock", "updated_at"),
    CollectionName.PRODUCT_MATERIALS: ("product_id", "material_id"),
    CollectionName.TRANSACTIONS: (
        "status",
        "transaction_date",
        "receipt_number",
        "cashier_name",
        "total_amount",
    ),
    CollectionName.TRANSACTION_ITEMS: ("transaction_id", "product_id"),
}

COMPOUND_INDEXES: Mapping[CollectionName, Mapping[str, Tuple[str, ...]]] = {
    CollectionName.PRODUCT_MATERIALS: {
        "[product_id+material_id]": ("product_id", "material_id"),
    },
}

UNIQUE_INDEXES: Mapping[CollectionName, Tuple[str, ...]] = {
    CollectionName.PRODUCT_MATERIALS: ("[product_id+material_id]",),
    CollectionName.TRANSACTIONS: ("receipt_number",),
}

NEXT_ID_META_PREFIX = "next_id:"


@dataclasses.dataclass
class _Table:
    records: Dict[int, Any]
    next_id: int

    def copy(self) -> "_Table":
        # Rows are frozen, so a shallow copy isolates the scope completely.
        return _Table(records=dict(self.records), next_id=self.next_id)


def _index_fields(collection: CollectionName, index: str) -> Optional[Tuple[str, ...]]:
    compound = COMPOUND_INDEXES.get(collection, {})
    if index in compound:
        return compound[index]
    if index == "id" or index in INDEXES.get(collection, ()):
        return (index,)
    return None


def _require_index(collection: CollectionName, index: str) -> Tuple[str, ...]:
    fields = _index_fields(collection, index)
    if fields is None:
        raise StorageError(f"'{index}' is not an indexed field of '{collection.value}'")
    return fields


def _index_key(record: Any, fields: Tuple[str, ...]) -> Any:
    if len(fields) == 1:
        return getattr(record, fields[0])
    return tuple(getattr(record, name) for name in fields)


def _normalise(value: Any, ignore_case: bool) -> Any:
    if ignore_case and isinstance(value, str):
        return value.casefold()
    return value


def _ordered(table: _Table) -> List[Any]:
    return [table.records[key] for key in sorted(table.records)]


def _select_where(table: _Table, collection: CollectionName, index: str, value: Any, ignore_case: bool) -> List[Any]:
    fields = _require_index(collection, index)
    wanted = _normalise(value, ignore_case)
    return [
        record
        for record in _ordered(table)
        if _normalise(_index_key(record, fields), ignore_case) == wanted
    ]


def _select_any_of(table: _Table, collection: CollectionName, index: str, values: Iterable[Any]) -> List[Any]:
    fields = _require_index(collection, index)
    wanted = set(values)
    if not wanted:
        return []
    return [record for record in _ordered(table) if _index_key(record, fields) in wanted]


class StoreTransaction:
    """Operations available inside one atomic scope.

    Instances are only handed out by :meth:`RecordStore.transaction` and stop
    working once the scope exits.
    """

    def __init__(self, tables: Dict[CollectionName, _Table]) -> None:
        self._tables = tables
        self._dirty: set[CollectionName] = set()
        self._closed = False

    @property
    def collections(self) -> frozenset[CollectionName]:
        return frozenset(self._tables)

    @property
    def dirty(self) -> frozenset[CollectionName]:
        return frozenset(self._dirty)

    def _table(self, collection: CollectionName) -> _Table:
        if self._closed:
            raise StorageError("Transaction scope already closed")
        try:
            return self._tables[collection]
        except KeyError as exc:
            raise StorageError(f"Collection '{collection.value}' is not part of this transaction scope") from exc

    def _check_unique(self, collection: CollectionName, table: _Table, record: Any) -> None:
        for index in UNIQUE_INDEXES.get(collection, ()):
            fields = _require_index(collection, index)
            key = _index_key(record, fields)
            for other in table.records.values():
                if other.id != record.id and _index_key(other, fields) == key:
                    raise ConstraintError(
                        f"Unique index '{index}' of '{collection.value}' already holds {key!r}"
                    )

    async def add(self, collection: CollectionName, record: Any) -> Any:
        """Insert ``record`` and return it with its newly assigned identity."""

        table = self._table(collection)
        expected = data_manager.RECORD_TYPES[collection]
        if not isinstance(record, expected):
            raise TypeError(f"'{collection.value}' stores {expected.__name__}, got {type(record).__name__}")
        stored = dataclasses.replace(record, id=table.next_id)
        self._check_unique(collection, table, stored)
        table.records[stored.id] = stored
        table.next_id += 1
        self._dirty.add(collection)
        return stored

    async def bulk_add(self, collection: CollectionName, records: Iterable[Any]) -> List[Any]:
        return [await self.add(collection, record) for record in records]

    async def get(self, collection: CollectionName, record_id: int) -> Optional[Any]:
        return self._table(collection).records.get(record_id)

    async def where(self, collection: CollectionName, index: str, value: Any, *, ignore_case: bool = False) -> List[Any]:
        """Return records whose ``index`` equals ``value``, in id order.

        Compound indexes such as ``[product_id+material_id]`` take a tuple.
        """

        return _select_where(self._table(collection), collection, index, value, ignore_case)

    async def first(self, collection: CollectionName, index: str, value: Any, *, ignore_case: bool = False) -> Optional[Any]:
        matches = await self.where(collection, index, value, ignore_case=ignore_case)
        return matches[0] if matches else None

    async def any_of(self, collection: CollectionName, index: str, values: Iterable[Any]) -> List[Any]:
        return _select_any_of(self._table(collection), collection, index, values)

    async def all(self, collection: CollectionName) -> List[Any]:
        return _ordered(self._table(collection))

    async def count(self, collection: CollectionName) -> int:
        return len(self._table(collection).records)

    async def update(self, collection: CollectionName, record_id: int, **changes: Any) -> Optional[Any]:
        """Merge ``changes`` into the record and return the new version.

        Returns ``None`` when no record has ``record_id``.
        """

        if "id" in changes:
            raise StorageError("Record identity cannot be changed")
        table = self._table(collection)
        current = table.records.get(record_id)
        if current is None:
            return None
        updated = dataclasses.replace(current, **changes)
        self._check_unique(collection, table, updated)
        table.records[record_id] = updated
        self._dirty.add(collection)
        return updated

    async def delete(self, collection: CollectionName, record_id: int) -> bool:
        table = self._table(collection)
        if table.records.pop(record_id, None) is None:
            return False
        self._dirty.add(collection)
        return True

    async def bulk_delete(self, collection: CollectionName, record_ids: Iterable[int]) -> int:
        removed = 0
        for record_id in record_ids:
            if await self.delete(collection, record_id):
                removed += 1
        return removed

    def close(self) -> None:
        self._closed = True


class RecordStore:
    """Workbook-backed store of the five POS collections."""

    def __init__(self, data_file: Path, workbook: Workbook, tables: Dict[CollectionName, _Table]) -> None:
        self._data_file = Path(data_file)
        self._workbook = workbook
        self._tables = tables
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task[Any]] = None

    @classmethod
    async def open(cls, data_file: Path) -> "RecordStore":
        """Load ``data_file``, upgrade its schema if needed, and build the tables.

        Raises:
            FileNotFoundError: If the workbook does not exist.
            StorageError: If the workbook is unreadable or has an unsupported
                schema.
        """

        data_file = Path(data_file).expanduser().resolve()
        workbook = await asyncio.to_thread(data_manager.open_workbook, data_file)
        applied = migrations.upgrade_workbook(workbook)
        if applied:
            await asyncio.to_thread(data_manager.save_workbook, workbook, data_file)
        tables = _load_tables(workbook)
        log.info(
            "Opened store '%s' (schema v%d, %d products, %d raw materials)",
            data_file,
            migrations.read_schema_version(workbook),
            len(tables[CollectionName.PRODUCTS].records),
            len(tables[CollectionName.RAW_MATERIALS].records),
        )
        return cls(data_file, workbook, tables)

    @property
    def data_file(self) -> Path:
        return self._data_file

    @property
    def schema_version(self) -> int:
        return migrations.read_schema_version(self._workbook)

    @asynccontextmanager
    async def transaction(self, *collections: CollectionName) -> AsyncIterator[StoreTransaction]:
        """Open an atomic read-write scope over ``collections``.

        Scopes cannot nest: code already inside a scope must keep using the
        :class:`StoreTransaction` it was given.
        """

        if not collections:
            raise StorageError("A transaction scope needs at least one collection")
        current = asyncio.current_task()
        if current is not None and self._owner is current:
            raise StorageError("Nested transaction scope; reuse the open StoreTransaction instead")

        async with self._lock:
            self._owner = current
            staged = {collection: self._tables[collection].copy() for collection in set(collections)}
            tx = StoreTransaction(staged)
            try:
                yield tx
                if tx.dirty:
                    self._commit(staged, tx.dirty)
            finally:
                tx.close()
                self._owner = None

    def _commit(self, staged: Dict[CollectionName, _Table], dirty: frozenset[CollectionName]) -> None:
        # No suspension point between saving the file and publishing tables.
        try:
            for collection in dirty:
                data_manager.write_collection(self._workbook, collection, staged[collection].records.values())
            data_manager.write_meta(
                self._workbook,
                {f"{NEXT_ID_META_PREFIX}{collection.value}": staged[collection].next_id for collection in dirty},
            )
            data_manager.save_workbook(self._workbook, self._data_file)
        except Exception:
            # Drop the half-applied sheets; the file on disk is intact.
            self._workbook = data_manager.refresh_workbook(self._data_file)
            raise
        for collection in dirty:
            self._tables[collection] = staged[collection]
        log.debug("Committed scope touching %s", ", ".join(sorted(c.value for c in dirty)))

    # Committed reads. These never wait for a running scope.

    async def get(self, collection: CollectionName, record_id: int) -> Optional[Any]:
        return self._tables[collection].records.get(record_id)

    async def where(self, collection: CollectionName, index: str, value: Any, *, ignore_case: bool = False) -> List[Any]:
        return _select_where(self._tables[collection], collection, index, value, ignore_case)

    async def any_of(self, collection: CollectionName, index: str, values: Iterable[Any]) -> List[Any]:
        return _select_any_of(self._tables[collection], collection, index, values)

    async def all(self, collection: CollectionName) -> List[Any]:
        return _ordered(self._tables[collection])

    async def count(self, collection: CollectionName) -> int:
        return len(self._tables[collection].records)

    # Single-operation writes, each in its own scope.

    async def add(self, collection: CollectionName, record: Any) -> Any:
        async with self.transaction(collection) as tx:
            return await tx.add(collection, record)

    async def bulk_add(self, collection: CollectionName, records: Iterable[Any]) -> List[Any]:
        async with self.transaction(collection) as tx:
            return await tx.bulk_add(collection, records)

    async def update(self, collection: CollectionName, record_id: int, **changes: Any) -> Optional[Any]:
        async with self.transaction(collection) as tx:
            return await tx.update(collection, record_id, **changes)

    async def delete(self, collection: CollectionName, record_id: int) -> bool:
        async with self.transaction(collection) as tx:
            return await tx.delete(collection, record_id)

    async def bulk_delete(self, collection: CollectionName, record_ids: Iterable[int]) -> int:
        async with self.transaction(collection) as tx:
            return await tx.bulk_delete(collection, record_ids)


def _load_tables(workbook: Workbook) -> Dict[CollectionName, _Table]:
    meta = data_manager.read_meta(workbook)
    tables: Dict[CollectionName, _Table] = {}
    for collection in CollectionName:
        records = {record.id: record for record in data_manager.load_collection(workbook, collection)}
        next_id = max(records, default=0) + 1
        stored_next = meta.get(f"{NEXT_ID_META_PREFIX}{collection.value}")
        if stored_next is not None:
            next_id = max(next_id, int(stored_next))
        tables[collection] = _Table(records=records, next_id=next_id)
    return tables


__all__ = [
    "ConstraintError",
    "RecordStore",
    "StorageError",
    "StoreTransaction",
    "INDEXES",
    "COMPOUND_INDEXES",
    "UNIQUE_INDEXES",
]

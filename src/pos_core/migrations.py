"""Versioned schema evolution for the store workbook.

Version 1 is the original five-collection layout. Every later version only
adds columns, and each upgrade step backfills the new column so rows written
by older releases stay valid under the new shape. Steps run strictly in
version order and record their version on the ``Meta`` sheet as soon as they
finish, so re-running an upgrade is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import data_manager, log
from .constants import META_SHEET, SCHEMA_VERSION, CollectionName


SCHEMA_VERSION_KEY = "schema_version"

BASE_COLUMNS: Mapping[CollectionName, Tuple[str, ...]] = {
    CollectionName.PRODUCTS: ("id", "name", "price", "is_active", "created_at", "updated_at"),
    CollectionName.RAW_MATERIALS: ("id", "name", "unit", "stock_quantity", "created_at", "updated_at"),
    CollectionName.PRODUCT_MATERIALS: ("id", "product_id", "material_id", "quantity_needed"),
    CollectionName.TRANSACTIONS: (
        "id",
        "total_amount",
        "payment_method",
        "cashier_name",
        "transaction_date",
        "receipt_number",
        "status",
    ),
    CollectionName.TRANSACTION_ITEMS: (
        "id",
        "transaction_id",
        "product_id",
        "quantity",
        "unit_price",
        "total_price",
    ),
}


@dataclass(frozen=True)
class SchemaStep:
    """One schema version: the columns it adds and their backfill defaults."""

    version: int
    description: str
    added_columns: Mapping[CollectionName, Sequence[Tuple[str, object]]]


UPGRADE_STEPS: Tuple[SchemaStep, ...] = (
    SchemaStep(
        version=2,
        description="minimum stock threshold on raw materials",
        added_columns={CollectionName.RAW_MATERIALS: (("min_stock", Decimal("0")),)},
    ),
    SchemaStep(
        version=3,
        description="image reference on products",
        added_columns={CollectionName.PRODUCTS: (("image_url", ""),)},
    ),
    SchemaStep(
        version=4,
        description="category label on products",
        added_columns={CollectionName.PRODUCTS: (("category", ""),)},
    ),
)


def columns_for_version(version: int = SCHEMA_VERSION) -> Dict[CollectionName, Tuple[str, ...]]:
    """Return the column layout of every collection at ``version``."""

    if not 1 <= version <= SCHEMA_VERSION:
        raise ValueError(f"Unknown schema version: {version}")

    columns = {collection: list(names) for collection, names in BASE_COLUMNS.items()}
    for step in UPGRADE_STEPS:
        if step.version > version:
            break
        for collection, added in step.added_columns.items():
            columns[collection].extend(name for name, _ in added)
    return {collection: tuple(names) for collection, names in columns.items()}


def read_schema_version(workbook: Workbook) -> int:
    """Return the schema version recorded in the workbook.

    Workbooks without a ``Meta`` sheet predate versioning and are treated as
    version 1.
    """

    raw = data_manager.read_meta(workbook).get(SCHEMA_VERSION_KEY)
    if raw is None:
        return 1
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise data_manager.StorageError(f"Invalid schema version in workbook: {raw!r}") from exc


def create_store_workbook(version: int = SCHEMA_VERSION) -> Workbook:
    """Build an empty store workbook laid out for ``version``."""

    layout = {collection.value: names for collection, names in columns_for_version(version).items()}
    workbook = data_manager.new_workbook(layout)
    data_manager.write_meta(workbook, {SCHEMA_VERSION_KEY: version})
    return workbook


def _needs_backfill(value: object, default: object) -> bool:
    if value is None:
        return True
    if isinstance(default, str):
        return not isinstance(value, str)
    if isinstance(default, Decimal):
        return isinstance(value, bool) or not isinstance(value, (int, float, Decimal))
    return False


def _ensure_column(sheet: Worksheet, name: str, default: object) -> int:
    """Add column ``name`` if absent and backfill its empty cells.

    Returns the number of cells that were backfilled.
    """

    header = data_manager.read_header(sheet)
    if name in header:
        column_index = header.index(name) + 1
    else:
        column_index = len(header) + 1
        data_manager.write_header(sheet, [*header, name])

    filled = 0
    for row_index in range(2, sheet.max_row + 1):
        row_values = [cell.value for cell in sheet[row_index]]
        if not any(value is not None for value in row_values):
            continue
        cell = sheet.cell(row=row_index, column=column_index)
        if _needs_backfill(cell.value, default):
            cell.value = default
            filled += 1
    return filled


def apply_step(workbook: Workbook, step: SchemaStep) -> None:
    """Apply one upgrade step and stamp its version on the ``Meta`` sheet."""

    for collection, added in step.added_columns.items():
        sheet = data_manager.get_sheet(workbook, collection.value)
        for name, default in added:
            filled = _ensure_column(sheet, name, default)
            log.debug(
                "Schema v%d: column '%s.%s' ready (%d rows backfilled)",
                step.version,
                collection.value,
                name,
                filled,
            )
    data_manager.write_meta(workbook, {SCHEMA_VERSION_KEY: step.version})


def upgrade_workbook(workbook: Workbook, *, target: int = SCHEMA_VERSION) -> List[int]:
    """Bring ``workbook`` up to ``target`` one version at a time.

    Args:
        workbook (Workbook): Workbook to upgrade in place.
        target (int): Version to stop at. Defaults to the latest version.

    Returns:
        list[int]: Versions applied, in order. Empty when already current.

    Raises:
        StorageError: If the workbook was written by a newer schema or lacks
            one of the collection sheets.
    """

    current = read_schema_version(workbook)
    if current > SCHEMA_VERSION:
        log.error("Workbook schema v%d is newer than supported v%d", current, SCHEMA_VERSION)
        raise data_manager.StorageError(
            f"Workbook schema version {current} is newer than supported version {SCHEMA_VERSION}"
        )

    for collection in CollectionName:
        data_manager.get_sheet(workbook, collection.value)
    if META_SHEET not in workbook.sheetnames:
        data_manager.write_meta(workbook, {SCHEMA_VERSION_KEY: current})

    applied: List[int] = []
    for step in UPGRADE_STEPS:
        if step.version <= current or step.version > target:
            continue
        apply_step(workbook, step)
        applied.append(step.version)
        log.info("Upgraded workbook schema to v%d (%s)", step.version, step.description)
    return applied

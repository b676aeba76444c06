"""Data access layer for the POS core.

This module provides low-level helpers that read from and write to the
``.xlsx`` workbook backing the record store. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: converting worksheet rows to typed records and writing
   whole collections back.
"""


from __future__ import annotations

import configparser
import os
import zipfile
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Sequence

from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import META_SHEET, CollectionName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_CASHIER_NAME = "Kasir"


class StorageError(Exception):
    """Raised when the backing workbook cannot be read, validated, or saved."""


class ConstraintError(StorageError):
    """Raised when a write would break a unique index of a collection."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    default_cashier_name: str = DEFAULT_CASHIER_NAME


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``products`` sheet."""

    id: Optional[int]
    name: str
    price: Decimal
    is_active: bool
    image_url: str = ""
    category: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class RawMaterialRow:
    """In-memory view of a row from the ``raw_materials`` sheet."""

    id: Optional[int]
    name: str
    unit: str
    stock_quantity: Decimal
    min_stock: Decimal = Decimal("0")
    created_at: str = ""
    updated_at: str = ""

    @property
    def alerts_enabled(self) -> bool:
        # A zero threshold means the operator never asked for alerts.
        return self.min_stock > 0

    @property
    def is_low_stock(self) -> bool:
        return self.alerts_enabled and self.stock_quantity <= self.min_stock


@dataclass(frozen=True)
class ProductMaterialRow:
    """In-memory view of a row from the ``product_materials`` sheet."""

    id: Optional[int]
    product_id: int
    material_id: int
    quantity_needed: Decimal


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``transactions`` sheet."""

    id: Optional[int]
    total_amount: Decimal
    payment_method: str
    cashier_name: str
    transaction_date: str
    receipt_number: str
    status: str


@dataclass(frozen=True)
class TransactionItemRow:
    """In-memory view of a row from the ``transaction_items`` sheet."""

    id: Optional[int]
    transaction_id: int
    product_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return ``explicit_path``, or the nearest ``config.ini`` above the working directory.

    Raises:
        FileNotFoundError: No directory between the working directory and the
            filesystem root holds a ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    start = Path.cwd()
    for directory in (start, *start.parents):
        if (directory / CONFIG_FILE_NAME).is_file():
            return directory / CONFIG_FILE_NAME
    raise FileNotFoundError(f"No {CONFIG_FILE_NAME} in {start} or any parent directory")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Read the INI file at ``config_path`` (``~`` expanded) as UTF-8.

    Only existence is checked here; :func:`parse_settings` validates entries.
    """

    resolved = Path(config_path).expanduser().resolve()
    if not resolved.is_file():
        raise FileNotFoundError(f"Configuration file not found: {resolved}")

    config = configparser.ConfigParser()
    config.read(resolved, encoding="utf-8")
    return config


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` paths are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback. The
    ``[Defaults]`` section is optional; the cashier name falls back to
    :data:`DEFAULT_CASHIER_NAME`.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    cashier_name = parser.get("Defaults", "CashierName", fallback=DEFAULT_CASHIER_NAME)

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        default_cashier_name=cashier_name.strip() or DEFAULT_CASHIER_NAME,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageError: If the file exists but is not a readable workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        log.error("Unable to load workbook '%s': %s", data_file, exc)
        raise StorageError(f"Unable to load workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` atomically.

    The workbook is first written to a sibling temporary file which then
    replaces the destination, so readers of the file never observe a
    half-written workbook.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.

    Raises:
        StorageError: If the workbook cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    temp = dest.with_name(f".{dest.name}.tmp")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(temp)
        os.replace(temp, dest)
    except OSError as exc:
        temp.unlink(missing_ok=True)
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StorageError(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def new_workbook(sheet_columns: Mapping[str, Sequence[str]]) -> Workbook:
    """Build an empty workbook with one bold header row per sheet."""

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        write_header(worksheet, columns)
    return workbook


def write_header(sheet: Worksheet, columns: Sequence[str]) -> None:
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(columns, start=1):
        cell = sheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font


def read_header(sheet: Worksheet) -> list[str]:
    """Return the header titles of ``sheet`` in column order."""

    return [cell.value for cell in sheet[1] if cell.value is not None]


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise StorageError(f"Workbook is missing the '{sheet_name}' sheet") from exc


def iter_sheet_mappings(sheet: Worksheet) -> Iterator[Dict[str, Any]]:
    """Yield each populated data row of ``sheet`` as a header-keyed mapping.

    The header row and rows whose cells are all ``None`` are skipped. Header
    lookups make the reader independent of column order, which lets schema
    upgrades append columns without breaking older code paths.
    """

    header = read_header(sheet)
    for raw in sheet.iter_rows(min_row=2, max_col=len(header), values_only=True):
        if any(cell is not None for cell in raw):
            yield dict(zip(header, raw))


def rewrite_sheet(sheet: Worksheet, rows: Iterable[Sequence[object]]) -> None:
    """Replace every data row of ``sheet`` with ``rows``, keeping the header.

    Cells are assigned by index rather than through ``Worksheet.append``
    because ``append`` keeps counting from the pre-deletion row cursor.
    """

    previous_max = sheet.max_row
    last_row = 1
    for last_row, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=last_row, column=column_index).value = value
    if previous_max > last_row:
        sheet.delete_rows(last_row + 1, previous_max - last_row)


def read_meta(workbook: Workbook) -> Dict[str, Any]:
    """Return the key/value pairs stored on the ``Meta`` sheet."""

    if META_SHEET not in workbook.sheetnames:
        return {}
    return {
        str(row["key"]): row.get("value")
        for row in iter_sheet_mappings(workbook[META_SHEET])
        if row.get("key") is not None
    }


def write_meta(workbook: Workbook, values: Mapping[str, Any]) -> None:
    """Merge ``values`` into the ``Meta`` sheet, creating it when absent."""

    if META_SHEET not in workbook.sheetnames:
        sheet = workbook.create_sheet(title=META_SHEET)
        write_header(sheet, ("key", "value"))
    merged = read_meta(workbook)
    merged.update(values)
    rewrite_sheet(workbook[META_SHEET], sorted(merged.items()))


def to_decimal(raw: object, default: str = "0") -> Decimal:
    """Coerce a worksheet cell into :class:`~decimal.Decimal`.

    Excel hands numbers back as ``float`` or ``int``; routing them through
    ``str`` keeps ``0.1`` from turning into a binary approximation.
    """

    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise StorageError(f"Invalid numeric cell value: {raw!r}") from exc


def _to_int(raw: object) -> int:
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Invalid integer cell value: {raw!r}") from exc


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def deserialize_product(raw: Mapping[str, object]) -> ProductRow:
    """Convert a header-keyed worksheet row into a :class:`ProductRow`."""

    return ProductRow(
        id=_to_int(raw.get("id")),
        name=_to_text(raw.get("name")),
        price=to_decimal(raw.get("price")),
        is_active=_to_bool(raw.get("is_active")),
        image_url=_to_text(raw.get("image_url")),
        category=_to_text(raw.get("category")),
        created_at=_to_text(raw.get("created_at")),
        updated_at=_to_text(raw.get("updated_at")),
    )


def deserialize_raw_material(raw: Mapping[str, object]) -> RawMaterialRow:
    """Convert a header-keyed worksheet row into a :class:`RawMaterialRow`."""

    return RawMaterialRow(
        id=_to_int(raw.get("id")),
        name=_to_text(raw.get("name")),
        unit=_to_text(raw.get("unit")),
        stock_quantity=to_decimal(raw.get("stock_quantity")),
        min_stock=to_decimal(raw.get("min_stock")),
        created_at=_to_text(raw.get("created_at")),
        updated_at=_to_text(raw.get("updated_at")),
    )


def deserialize_product_material(raw: Mapping[str, object]) -> ProductMaterialRow:
    return ProductMaterialRow(
        id=_to_int(raw.get("id")),
        product_id=_to_int(raw.get("product_id")),
        material_id=_to_int(raw.get("material_id")),
        quantity_needed=to_decimal(raw.get("quantity_needed")),
    )


def deserialize_transaction(raw: Mapping[str, object]) -> TransactionRow:
    """Convert a header-keyed worksheet row into a :class:`TransactionRow`.

    Monetary columns become :class:`~decimal.Decimal` instances and textual
    columns default to empty strings so downstream code never sees ``None``
    where it expects text.
    """

    return TransactionRow(
        id=_to_int(raw.get("id")),
        total_amount=to_decimal(raw.get("total_amount")),
        payment_method=_to_text(raw.get("payment_method")),
        cashier_name=_to_text(raw.get("cashier_name")),
        transaction_date=_to_text(raw.get("transaction_date")),
        receipt_number=_to_text(raw.get("receipt_number")),
        status=_to_text(raw.get("status")),
    )


def deserialize_transaction_item(raw: Mapping[str, object]) -> TransactionItemRow:
    return TransactionItemRow(
        id=_to_int(raw.get("id")),
        transaction_id=_to_int(raw.get("transaction_id")),
        product_id=_to_int(raw.get("product_id")),
        quantity=_to_int(raw.get("quantity")),
        unit_price=to_decimal(raw.get("unit_price")),
        total_price=to_decimal(raw.get("total_price")),
    )


RECORD_TYPES: Mapping[CollectionName, type] = {
    CollectionName.PRODUCTS: ProductRow,
    CollectionName.RAW_MATERIALS: RawMaterialRow,
    CollectionName.PRODUCT_MATERIALS: ProductMaterialRow,
    CollectionName.TRANSACTIONS: TransactionRow,
    CollectionName.TRANSACTION_ITEMS: TransactionItemRow,
}

DESERIALIZERS: Mapping[CollectionName, Callable[[Mapping[str, object]], Any]] = {
    CollectionName.PRODUCTS: deserialize_product,
    CollectionName.RAW_MATERIALS: deserialize_raw_material,
    CollectionName.PRODUCT_MATERIALS: deserialize_product_material,
    CollectionName.TRANSACTIONS: deserialize_transaction,
    CollectionName.TRANSACTION_ITEMS: deserialize_transaction_item,
}


def serialize_record(record: Any, columns: Sequence[str]) -> list[object]:
    """Convert a row dataclass into the worksheet column ordering.

    :class:`~decimal.Decimal` values are preserved so Excel keeps their
    precision when the workbook is saved. Columns the record does not define
    are written as ``None``.
    """

    values = asdict(record)
    return [values.get(column) for column in columns]


def load_collection(workbook: Workbook, collection: CollectionName) -> list[Any]:
    """Deserialize every populated row of ``collection``'s worksheet."""

    sheet = get_sheet(workbook, collection.value)
    deserialize = DESERIALIZERS[collection]
    return [deserialize(raw) for raw in iter_sheet_mappings(sheet)]


def write_collection(workbook: Workbook, collection: CollectionName, records: Iterable[Any]) -> None:
    """Overwrite ``collection``'s worksheet with ``records`` in id order."""

    sheet = get_sheet(workbook, collection.value)
    columns = read_header(sheet)
    ordered = sorted(records, key=lambda record: record.id)
    rewrite_sheet(sheet, (serialize_record(record, columns) for record in ordered))

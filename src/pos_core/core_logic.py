"""Shared business-logic plumbing for the POS core.

Holds the runtime context every workflow receives, the domain error
taxonomy, and the validation helpers the catalog and transaction workflows
use to reject malformed input before touching the store.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional, Sequence

from . import data_manager, log
from .constants import SCHEMA_VERSION
from .store import RecordStore, StorageError


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced product, material, or transaction is unknown."""


# Older name kept for callers written against the first API.
MissingReferenceError = NotFoundError


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when caller input is malformed (empty names, bad numbers)."""


class DuplicateNameError(ValidationError):
    """Raised when a raw material name is already taken (case-insensitively)."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a transaction status change leaves a terminal state."""


@dataclass(frozen=True)
class MaterialShortage:
    """One raw material whose stock cannot cover the requested amount."""

    material_id: int
    name: str
    required: Decimal
    available: Decimal
    unit: str

    def describe(self) -> str:
        return f"{self.name}: need {self.required} {self.unit}, have {self.available} {self.unit}"


class InsufficientStockError(BusinessRuleViolation):
    """Raised by ``mark_paid`` when aggregated requirements exceed stock.

    The transaction stays ``pending`` and can be paid again after a restock.
    """

    def __init__(self, shortages: Sequence[MaterialShortage], *, transaction_id: Optional[int] = None) -> None:
        self.shortages = tuple(shortages)
        self.transaction_id = transaction_id
        detail = ", ".join(shortage.describe() for shortage in self.shortages)
        super().__init__(f"Insufficient raw material stock: {detail}")

    def with_transaction(self, transaction_id: int) -> "InsufficientStockError":
        return InsufficientStockError(self.shortages, transaction_id=transaction_id)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the open record store."""

    settings: data_manager.ConfigSettings
    store: RecordStore
    _clock: Any = field(default=None, repr=False, compare=False)


async def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the record store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the catalog, availability,
            transaction, and reporting workflows.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        StorageError: When the workbook cannot be loaded or upgraded.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = await RecordStore.open(settings.data_file)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that the open store is at the schema version this code writes.

    Raises:
        RuntimeError: If the store's schema version differs from
            :data:`~pos_core.constants.SCHEMA_VERSION`.
    """
    found = context.store.schema_version
    if found != SCHEMA_VERSION:
        log.error("Workbook schema mismatch: expected %s, found %s", SCHEMA_VERSION, found)
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s" % (SCHEMA_VERSION, found)
        )

    log.debug("Schema version '%s' validated", found)


def utcnow(context: Optional[RuntimeContext] = None) -> datetime:
    """Return the current UTC time, honouring a clock injected into ``context``."""

    if context is not None and context._clock is not None:
        return context._clock()
    return datetime.now(UTC)


def now_iso(context: Optional[RuntimeContext] = None) -> str:
    return utcnow(context).isoformat()


def generate_receipt_number(*, prefix: str = "R", when: Optional[datetime] = None) -> str:
    """Generate a human-readable, sortable receipt code.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSS}-{XXXXXX}`` where the suffix is six
            random upper-case hex digits, so two receipts issued in the same
            second still differ.
    """
    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6].upper()}"


def require_text(value: Any, field_name: str) -> str:
    """Return ``value`` stripped, rejecting ``None`` and blank strings."""

    text = "" if value is None else str(value).strip()
    if not text:
        log.error("Validation failed: %s must not be empty", field_name)
        raise ValidationError(f"{field_name} must not be empty")
    return text


def parse_decimal(value: Any, field_name: str, *, default: str = "0") -> Decimal:
    """Convert caller input into a finite, non-negative :class:`Decimal`.

    ``None`` and empty strings mean "not supplied" and produce ``default``.
    Anything else that is not a finite non-negative number is rejected rather
    than silently coerced.

    Raises:
        ValidationError: If ``value`` is not numeric, not finite, or negative.
    """

    if value is None or (isinstance(value, str) and not value.strip()):
        return Decimal(default)
    if isinstance(value, bool):
        log.error("Validation failed: %s must be numeric, got %r", field_name, value)
        raise ValidationError(f"{field_name} must be numeric")
    if isinstance(value, float) and not math.isfinite(value):
        log.error("Validation failed: %s must be finite, got %r", field_name, value)
        raise ValidationError(f"{field_name} must be a finite number")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        log.error("Validation failed: %s must be numeric, got %r", field_name, value)
        raise ValidationError(f"{field_name} must be numeric") from exc
    if not number.is_finite():
        log.error("Validation failed: %s must be finite, got %r", field_name, value)
        raise ValidationError(f"{field_name} must be a finite number")
    if number < 0:
        log.error("Validation failed: %s must not be negative, got %s", field_name, number)
        raise ValidationError(f"{field_name} must be zero or positive")
    return number


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a cart quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an integer greater than zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")
    return quantity


__all__ = [
    "BusinessRuleViolation",
    "DuplicateNameError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "MaterialShortage",
    "MissingReferenceError",
    "NotFoundError",
    "RuntimeContext",
    "StorageError",
    "ValidationError",
    "ensure_schema_version",
    "generate_receipt_number",
    "load_runtime_context",
    "now_iso",
    "parse_decimal",
    "require_positive_quantity",
    "require_text",
    "utcnow",
]

"""Enumerations shared across the POS core modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the command-line front-end rely on a single source of
truth for collection names, transaction states, and payment conventions.
"""

from __future__ import annotations

from enum import Enum


# Latest workbook schema version understood by this code base. Older
# workbooks are upgraded step by step when the store is opened.
SCHEMA_VERSION = 4

# Payment method recorded for cash sales. Any other value counts as cashless.
CASH_PAYMENT_METHOD = "cash"

META_SHEET = "Meta"


class CollectionName(str, Enum):
    """Enumerate the record collections (one worksheet each) in the store."""

    PRODUCTS = "products"
    RAW_MATERIALS = "raw_materials"
    PRODUCT_MATERIALS = "product_materials"
    TRANSACTIONS = "transactions"
    TRANSACTION_ITEMS = "transaction_items"


class TransactionStatus(str, Enum):
    """Enumerate the lifecycle states of a sales transaction."""

    PENDING = "pending"
    PAID = "paid"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


__all__ = [
    "SCHEMA_VERSION",
    "CASH_PAYMENT_METHOD",
    "META_SHEET",
    "CollectionName",
    "TransactionStatus",
]

"""Transaction engine: pending sales, payment, and cancellation.

Lifecycle::

    pending --mark_paid--> paid       (terminal)
    pending --cancel-----> canceled   (terminal)

Stock is neither reserved when a transaction is created nor touched when it
is canceled. It is checked and deducted only by :func:`mark_paid`, inside one
atomic scope that also flips the status, so a transaction can deduct stock at
most once and two payments competing for the same material are serialised by
the store.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log
from .availability import reevaluate_all, reevaluate_in
from .constants import CollectionName, TransactionStatus
from .core_logic import (
    InsufficientStockError,
    InvalidTransitionError,
    MaterialShortage,
    NotFoundError,
    RuntimeContext,
    ValidationError,
    generate_receipt_number,
    require_positive_quantity,
    require_text,
    utcnow,
)
from .data_manager import RawMaterialRow, TransactionItemRow, TransactionRow
from .store import StoreTransaction


PAYMENT_SCOPE: Tuple[CollectionName, ...] = (
    CollectionName.TRANSACTIONS,
    CollectionName.TRANSACTION_ITEMS,
    CollectionName.PRODUCT_MATERIALS,
    CollectionName.RAW_MATERIALS,
    CollectionName.PRODUCTS,
)


@dataclass(frozen=True)
class CartItem:
    """One cart line handed to :func:`create_pending`."""

    product_id: int
    quantity: int


async def create_pending(
    context: RuntimeContext,
    items: Sequence[CartItem],
    payment_method: str,
    cashier_name: Optional[str] = None,
) -> TransactionRow:
    """Create a ``pending`` transaction with snapshotted item prices.

    Each item's ``unit_price`` is copied from the product's current price and
    never re-read afterwards; ``total_amount`` is the sum of the item totals.
    The transaction and its items are inserted in one scope.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        items (Sequence[CartItem]): Non-empty cart lines with positive integer
            quantities.
        payment_method (str): ``"cash"`` or any cashless method label.
        cashier_name (str | None): Cashier recorded on the receipt. Defaults to
            the configured cashier.

    Returns:
        TransactionRow: The stored pending transaction.

    Raises:
        ValidationError: If the cart is empty, a quantity is not a positive
            integer, or the payment method is blank.
        NotFoundError: If any referenced product does not exist. Nothing is
            persisted in that case.
    """
    if not items:
        log.error("Attempted to create a transaction without items")
        raise ValidationError("A transaction needs at least one item")
    for item in items:
        require_positive_quantity(item.quantity)
    method = require_text(payment_method, "payment_method")
    cashier = require_text(cashier_name or context.settings.default_cashier_name, "cashier_name")

    when = utcnow(context)
    async with context.store.transaction(
        CollectionName.PRODUCTS,
        CollectionName.TRANSACTIONS,
        CollectionName.TRANSACTION_ITEMS,
    ) as tx:
        products = {
            product.id: product
            for product in await tx.any_of(CollectionName.PRODUCTS, "id", [item.product_id for item in items])
        }
        lines: List[TransactionItemRow] = []
        total = Decimal("0")
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                log.warning("Pending transaction references unknown product '%s'", item.product_id)
                raise NotFoundError(f"Unknown product id: {item.product_id}")
            line_total = product.price * item.quantity
            total += line_total
            lines.append(
                TransactionItemRow(
                    id=None,
                    transaction_id=0,
                    product_id=product.id,
                    quantity=item.quantity,
                    unit_price=product.price,
                    total_price=line_total,
                )
            )

        transaction = await tx.add(
            CollectionName.TRANSACTIONS,
            TransactionRow(
                id=None,
                total_amount=total,
                payment_method=method,
                cashier_name=cashier,
                transaction_date=when.isoformat(),
                receipt_number=generate_receipt_number(when=when),
                status=TransactionStatus.PENDING.value,
            ),
        )
        await tx.bulk_add(
            CollectionName.TRANSACTION_ITEMS,
            [replace(line, transaction_id=transaction.id) for line in lines],
        )

    log.info(
        "Created pending transaction '%s' (%s, %d items, total=%s)",
        transaction.id,
        transaction.receipt_number,
        len(lines),
        transaction.total_amount,
    )
    return transaction


async def aggregate_requirements(tx: StoreTransaction, items: Iterable[TransactionItemRow]) -> Dict[int, Decimal]:
    """Sum, per raw material, what all ``items`` consume together.

    Returns:
        dict[int, Decimal]: ``material_id`` -> ``quantity_needed x quantity``
            summed over every item whose product maps to that material.
    """

    required: Dict[int, Decimal] = defaultdict(Decimal)
    for item in items:
        for mapping in await tx.where(CollectionName.PRODUCT_MATERIALS, "product_id", item.product_id):
            required[mapping.material_id] += mapping.quantity_needed * item.quantity
    return dict(required)


def find_shortages(required: Dict[int, Decimal], materials: Dict[int, RawMaterialRow]) -> List[MaterialShortage]:
    shortages: List[MaterialShortage] = []
    for material_id, need in required.items():
        material = materials.get(material_id)
        have = material.stock_quantity if material is not None else Decimal("0")
        if have < need:
            shortages.append(
                MaterialShortage(
                    material_id=material_id,
                    name=material.name if material is not None else "Unknown",
                    required=need,
                    available=have,
                    unit=material.unit if material is not None else "-",
                )
            )
    return shortages


async def _load_transaction(tx: StoreTransaction, transaction_id: int) -> TransactionRow:
    transaction = await tx.get(CollectionName.TRANSACTIONS, transaction_id)
    if transaction is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")
    return transaction


async def mark_paid(context: RuntimeContext, transaction_id: int) -> TransactionRow:
    """Validate stock and commit the deduction for a pending transaction.

    Inside one scope the transaction is re-read, the per-material requirement
    of all its items is aggregated and compared with current stock. When
    every material suffices, the requirement is deducted, the status becomes
    ``paid``, and availability is re-evaluated in the same scope. When any
    material falls short nothing is written, availability is re-evaluated
    separately so affected products show as unavailable, and
    :class:`InsufficientStockError` lists every short material.

    Paying an already ``paid`` transaction returns it unchanged without
    deducting again.

    Raises:
        NotFoundError: If the transaction or its items do not exist.
        InvalidTransitionError: If the transaction was canceled.
        InsufficientStockError: If stock cannot cover the transaction.
    """

    shortages: List[MaterialShortage] = []
    async with context.store.transaction(*PAYMENT_SCOPE) as tx:
        transaction = await _load_transaction(tx, transaction_id)
        if transaction.status == TransactionStatus.PAID.value:
            log.info("Transaction '%s' is already paid; nothing to deduct", transaction_id)
            return transaction
        if TransactionStatus(transaction.status).is_terminal:
            log.error("Cannot pay transaction '%s' in status '%s'", transaction_id, transaction.status)
            raise InvalidTransitionError(
                f"Transaction {transaction_id} is {transaction.status} and cannot be paid"
            )

        items = await tx.where(CollectionName.TRANSACTION_ITEMS, "transaction_id", transaction_id)
        if not items:
            log.warning("Transaction '%s' has no items", transaction_id)
            raise NotFoundError(f"Transaction {transaction_id} has no items")

        required = await aggregate_requirements(tx, items)
        materials = {
            material.id: material
            for material in await tx.any_of(CollectionName.RAW_MATERIALS, "id", required)
        }
        shortages = find_shortages(required, materials)

        if not shortages:
            timestamp = utcnow(context).isoformat()
            for material_id, need in required.items():
                material = materials[material_id]
                await tx.update(
                    CollectionName.RAW_MATERIALS,
                    material_id,
                    stock_quantity=material.stock_quantity - need,
                    updated_at=timestamp,
                )
            transaction = await tx.update(
                CollectionName.TRANSACTIONS,
                transaction_id,
                status=TransactionStatus.PAID.value,
            )
            await reevaluate_in(tx, timestamp=timestamp)

    if shortages:
        log.warning(
            "Payment of transaction '%s' rejected: %s",
            transaction_id,
            "; ".join(shortage.describe() for shortage in shortages),
        )
        await reevaluate_all(context)
        raise InsufficientStockError(shortages, transaction_id=transaction_id)

    log.info(
        "Transaction '%s' paid; deducted %d raw materials",
        transaction_id,
        len(required),
    )
    return transaction


async def cancel(context: RuntimeContext, transaction_id: int) -> TransactionRow:
    """Cancel a pending transaction without touching stock.

    Canceling an already canceled transaction returns it unchanged.

    Raises:
        NotFoundError: If the transaction does not exist.
        InvalidTransitionError: If the transaction is already paid.
    """

    async with context.store.transaction(CollectionName.TRANSACTIONS) as tx:
        transaction = await _load_transaction(tx, transaction_id)
        if transaction.status == TransactionStatus.CANCELED.value:
            return transaction
        if TransactionStatus(transaction.status).is_terminal:
            log.error("Cannot cancel transaction '%s' in status '%s'", transaction_id, transaction.status)
            raise InvalidTransitionError(
                f"Transaction {transaction_id} is {transaction.status} and cannot be canceled"
            )
        transaction = await tx.update(
            CollectionName.TRANSACTIONS,
            transaction_id,
            status=TransactionStatus.CANCELED.value,
        )

    log.info("Canceled transaction '%s'", transaction_id)
    return transaction


async def checkout(
    context: RuntimeContext,
    items: Sequence[CartItem],
    payment_method: str,
    cashier_name: Optional[str] = None,
) -> TransactionRow:
    """Create a pending transaction and pay it straight away.

    On insufficient stock the pending transaction stays in place so the
    cashier can retry after a restock or cancel it; the raised error carries
    its ``transaction_id``.
    """

    pending = await create_pending(context, items, payment_method, cashier_name)
    try:
        return await mark_paid(context, pending.id)
    except InsufficientStockError as error:
        raise error.with_transaction(pending.id) from error


async def get_transaction(context: RuntimeContext, transaction_id: int) -> TransactionRow:
    transaction = await context.store.get(CollectionName.TRANSACTIONS, transaction_id)
    if transaction is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise NotFoundError(f"Unknown transaction id: {transaction_id}")
    return transaction


async def get_transaction_by_receipt(context: RuntimeContext, receipt_number: str) -> TransactionRow:
    matches = await context.store.where(CollectionName.TRANSACTIONS, "receipt_number", receipt_number)
    if not matches:
        log.warning("Receipt lookup failed for '%s'", receipt_number)
        raise NotFoundError(f"Unknown receipt number: {receipt_number}")
    return matches[0]


async def list_transaction_items(context: RuntimeContext, transaction_id: int) -> List[TransactionItemRow]:
    return await context.store.where(CollectionName.TRANSACTION_ITEMS, "transaction_id", transaction_id)


async def list_transactions(
    context: RuntimeContext,
    *,
    status: Optional[TransactionStatus] = None,
) -> List[TransactionRow]:
    """Return transactions, newest first, optionally filtered by status."""

    if status is None:
        rows = await context.store.all(CollectionName.TRANSACTIONS)
    else:
        rows = await context.store.where(CollectionName.TRANSACTIONS, "status", TransactionStatus(status).value)
    return sorted(rows, key=lambda row: (row.transaction_date, row.id), reverse=True)

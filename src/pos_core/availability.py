"""Availability evaluator: can a product be sold with the current stock?

A product is available when every raw material it maps to has at least the
quantity one unit of the product needs. Products without mappings are always
available. The stored ``ProductRow.is_active`` flag is a projection of this
rule; :func:`reevaluate_all` is the only code that writes it after creation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Tuple

from . import log
from .constants import CollectionName
from .core_logic import NotFoundError, RuntimeContext, now_iso
from .data_manager import ProductMaterialRow, RawMaterialRow
from .store import StoreTransaction


EVALUATION_SCOPE: Tuple[CollectionName, ...] = (
    CollectionName.PRODUCTS,
    CollectionName.PRODUCT_MATERIALS,
    CollectionName.RAW_MATERIALS,
)

UNKNOWN_MATERIAL_NAME = "Unknown"
UNKNOWN_MATERIAL_UNIT = "-"


@dataclass(frozen=True)
class MissingMaterial:
    """A mapped material whose stock is below one unit's requirement."""

    material_id: int
    name: str
    required: Decimal
    available: Decimal
    unit: str


@dataclass(frozen=True)
class AvailabilityResult:
    """Outcome of :func:`check_availability`."""

    ok: bool
    missing: Tuple[MissingMaterial, ...] = ()


def evaluate_mappings(
    mappings: Iterable[ProductMaterialRow],
    materials: Dict[int, RawMaterialRow],
) -> AvailabilityResult:
    """Compare one product's mappings against a material snapshot.

    A mapping whose material no longer exists counts as zero stock.
    """

    missing: List[MissingMaterial] = []
    for mapping in mappings:
        material = materials.get(mapping.material_id)
        available = material.stock_quantity if material is not None else Decimal("0")
        if available < mapping.quantity_needed:
            missing.append(
                MissingMaterial(
                    material_id=mapping.material_id,
                    name=material.name if material is not None else UNKNOWN_MATERIAL_NAME,
                    required=mapping.quantity_needed,
                    available=available,
                    unit=material.unit if material is not None else UNKNOWN_MATERIAL_UNIT,
                )
            )
    return AvailabilityResult(ok=not missing, missing=tuple(missing))


async def check_availability_in(tx: StoreTransaction, product_id: int) -> AvailabilityResult:
    """Evaluate ``product_id`` inside an already open scope."""

    mappings = await tx.where(CollectionName.PRODUCT_MATERIALS, "product_id", product_id)
    if not mappings:
        return AvailabilityResult(ok=True)
    materials = await tx.any_of(
        CollectionName.RAW_MATERIALS,
        "id",
        [mapping.material_id for mapping in mappings],
    )
    return evaluate_mappings(mappings, {material.id: material for material in materials})


async def check_availability(context: RuntimeContext, product_id: int) -> AvailabilityResult:
    """Decide whether ``product_id`` can currently be sold.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        product_id (int): Identity of the product to evaluate.

    Returns:
        AvailabilityResult: ``ok`` is ``True`` when no mapped material is
            short; otherwise ``missing`` lists each short material with its
            required and available amounts.

    Raises:
        NotFoundError: If the product does not exist.
    """

    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        if await tx.get(CollectionName.PRODUCTS, product_id) is None:
            log.warning("Availability check failed for unknown product '%s'", product_id)
            raise NotFoundError(f"Unknown product id: {product_id}")
        return await check_availability_in(tx, product_id)


async def reevaluate_in(tx: StoreTransaction, *, timestamp: str) -> FrozenSet[int]:
    """Recompute every product's ``is_active`` flag inside an open scope.

    Products, mappings, and materials are read once from the scope, so every
    flag is computed from the same material snapshot.

    Returns:
        frozenset[int]: Identities of the products whose flag changed.
    """

    products = await tx.all(CollectionName.PRODUCTS)
    materials = {material.id: material for material in await tx.all(CollectionName.RAW_MATERIALS)}
    mappings_by_product: Dict[int, List[ProductMaterialRow]] = {}
    for mapping in await tx.all(CollectionName.PRODUCT_MATERIALS):
        mappings_by_product.setdefault(mapping.product_id, []).append(mapping)

    changed = set()
    for product in products:
        should_be_active = evaluate_mappings(mappings_by_product.get(product.id, ()), materials).ok
        if product.is_active != should_be_active:
            await tx.update(
                CollectionName.PRODUCTS,
                product.id,
                is_active=should_be_active,
                updated_at=timestamp,
            )
            changed.add(product.id)
            log.info(
                "Product '%s' (%s) is now %s",
                product.name,
                product.id,
                "available" if should_be_active else "unavailable",
            )
    return frozenset(changed)


async def reevaluate_all(context: RuntimeContext) -> FrozenSet[int]:
    """Re-run availability for every product and toggle ``is_active``.

    Runs in a single atomic scope over products, mappings, and raw materials.
    Only the ``is_active`` and ``updated_at`` fields of products whose result
    differs from the stored flag are written.

    Returns:
        frozenset[int]: Identities of the products whose flag changed.
    """

    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        changed = await reevaluate_in(tx, timestamp=now_iso(context))
    log.debug("Availability re-evaluation changed %d products", len(changed))
    return changed

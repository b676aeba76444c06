"""Catalog and raw-material administration.

Every mutation here runs in one atomic scope over products, mappings, and raw
materials, and re-evaluates product availability inside that same scope, so
readers never observe a stock or recipe change without the matching
``is_active`` flags. Callers can never set ``is_active`` directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence

from . import log
from .availability import EVALUATION_SCOPE, reevaluate_in
from .constants import CollectionName
from .core_logic import (
    DuplicateNameError,
    NotFoundError,
    RuntimeContext,
    ValidationError,
    now_iso,
    parse_decimal,
    require_text,
)
from .data_manager import ProductMaterialRow, ProductRow, RawMaterialRow
from .store import StoreTransaction


DEFAULT_SEARCH_LIMIT = 50
EMPTY_SEARCH_LIMIT = 20


@dataclass(frozen=True)
class MaterialRequirement:
    """How much of one raw material a single unit of a product consumes."""

    material_id: int
    quantity_needed: Any


@dataclass(frozen=True)
class ProductMaterialDetail:
    """A mapping joined with the material's display fields."""

    material_id: int
    quantity_needed: Decimal
    name: str
    unit: str


async def _require_material(tx: StoreTransaction, material_id: int) -> RawMaterialRow:
    material = await tx.get(CollectionName.RAW_MATERIALS, material_id)
    if material is None:
        log.warning("Raw material lookup failed for id '%s'", material_id)
        raise NotFoundError(f"Unknown raw material id: {material_id}")
    return material


async def _ensure_unique_name(tx: StoreTransaction, name: str, *, exclude_id: Optional[int] = None) -> None:
    for existing in await tx.where(CollectionName.RAW_MATERIALS, "name", name, ignore_case=True):
        if existing.id != exclude_id:
            log.error("Raw material name '%s' already used by id '%s'", name, existing.id)
            raise DuplicateNameError(f"A raw material named '{existing.name}' already exists")


async def create_raw_material(
    context: RuntimeContext,
    name: str,
    unit: str,
    stock_quantity: Any = None,
    min_stock: Any = None,
) -> RawMaterialRow:
    """Register a new raw material.

    Args:
        context (RuntimeContext): Runtime context providing the store.
        name (str): Display name, unique regardless of case.
        unit (str): Free-text unit label such as ``"gram"`` or ``"sachet"``.
        stock_quantity: Starting stock. Absent means ``0``.
        min_stock: Low-stock threshold. Absent or ``0`` disables the alert.

    Returns:
        RawMaterialRow: The stored material.

    Raises:
        ValidationError: If the name or unit is blank or a number is invalid.
        DuplicateNameError: If another material already has this name.
    """
    clean_name = require_text(name, "name")
    clean_unit = require_text(unit, "unit")
    stock = parse_decimal(stock_quantity, "stock_quantity")
    threshold = parse_decimal(min_stock, "min_stock")

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        await _ensure_unique_name(tx, clean_name)
        material = await tx.add(
            CollectionName.RAW_MATERIALS,
            RawMaterialRow(
                id=None,
                name=clean_name,
                unit=clean_unit,
                stock_quantity=stock,
                min_stock=threshold,
                created_at=timestamp,
                updated_at=timestamp,
            ),
        )
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Created raw material '%s' (%s) with %s %s", material.name, material.id, stock, clean_unit)
    return material


async def ensure_raw_material(
    context: RuntimeContext,
    name: str,
    unit: str,
    stock_quantity: Any = None,
) -> int:
    """Return the id of the material called ``name``, creating it if needed.

    The name match ignores case; an existing material is returned untouched.
    """

    existing = await find_raw_material_by_name(context, name)
    if existing is not None:
        return existing.id
    return (await create_raw_material(context, name, unit, stock_quantity)).id


async def update_raw_material(
    context: RuntimeContext,
    material_id: int,
    *,
    name: Optional[str] = None,
    unit: Optional[str] = None,
    stock_quantity: Any = None,
    min_stock: Any = None,
) -> RawMaterialRow:
    """Apply a partial update; arguments left as ``None`` are not changed.

    Raises:
        NotFoundError: If the material does not exist.
        ValidationError: If a supplied value is blank or not a valid number.
        DuplicateNameError: If the new name collides with another material.
    """
    changes: dict = {}
    if name is not None:
        changes["name"] = require_text(name, "name")
    if unit is not None:
        changes["unit"] = require_text(unit, "unit")
    if stock_quantity is not None:
        changes["stock_quantity"] = parse_decimal(stock_quantity, "stock_quantity")
    if min_stock is not None:
        changes["min_stock"] = parse_decimal(min_stock, "min_stock")

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        await _require_material(tx, material_id)
        if "name" in changes:
            await _ensure_unique_name(tx, changes["name"], exclude_id=material_id)
        material = await tx.update(CollectionName.RAW_MATERIALS, material_id, updated_at=timestamp, **changes)
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Updated raw material '%s' (%s): %s", material.name, material_id, ", ".join(sorted(changes)) or "touch")
    return material


async def delete_raw_material(context: RuntimeContext, material_id: int) -> None:
    """Delete a material together with every mapping that references it.

    Products that only depended on this material become available again.

    Raises:
        NotFoundError: If the material does not exist.
    """

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        material = await _require_material(tx, material_id)
        mappings = await tx.where(CollectionName.PRODUCT_MATERIALS, "material_id", material_id)
        await tx.bulk_delete(CollectionName.PRODUCT_MATERIALS, [mapping.id for mapping in mappings])
        await tx.delete(CollectionName.RAW_MATERIALS, material_id)
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Deleted raw material '%s' (%s) and %d mappings", material.name, material_id, len(mappings))


async def get_raw_material(context: RuntimeContext, material_id: int) -> RawMaterialRow:
    material = await context.store.get(CollectionName.RAW_MATERIALS, material_id)
    if material is None:
        log.warning("Raw material lookup failed for id '%s'", material_id)
        raise NotFoundError(f"Unknown raw material id: {material_id}")
    return material


async def find_raw_material_by_name(context: RuntimeContext, name: str) -> Optional[RawMaterialRow]:
    matches = await context.store.where(CollectionName.RAW_MATERIALS, "name", name.strip(), ignore_case=True)
    return matches[0] if matches else None


def _by_name(rows: Iterable[Any]) -> List[Any]:
    return sorted(rows, key=lambda row: (row.name.casefold(), row.id))


async def list_raw_materials(context: RuntimeContext, keyword: Optional[str] = None) -> List[RawMaterialRow]:
    """Return materials ordered by name, filtered by a case-insensitive substring."""

    materials = _by_name(await context.store.all(CollectionName.RAW_MATERIALS))
    query = (keyword or "").strip().casefold()
    if not query:
        return materials
    return [material for material in materials if query in material.name.casefold()]


async def search_raw_materials(
    context: RuntimeContext,
    keyword: str,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> List[RawMaterialRow]:
    """Bounded name search for pickers.

    An empty keyword returns the first twenty materials by name.
    """

    if not (keyword or "").strip():
        return (await list_raw_materials(context))[:EMPTY_SEARCH_LIMIT]
    return (await list_raw_materials(context, keyword))[:limit]


async def low_stock_materials(context: RuntimeContext) -> List[RawMaterialRow]:
    """Return materials at or below their configured minimum stock."""

    return [material for material in await list_raw_materials(context) if material.is_low_stock]


async def _require_product(tx: StoreTransaction, product_id: int) -> ProductRow:
    product = await tx.get(CollectionName.PRODUCTS, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    return product


async def _build_mappings(
    tx: StoreTransaction,
    product_id: int,
    materials: Sequence[MaterialRequirement],
) -> List[ProductMaterialRow]:
    seen = set()
    rows: List[ProductMaterialRow] = []
    for requirement in materials:
        if requirement.material_id in seen:
            log.error("Material '%s' listed twice for product '%s'", requirement.material_id, product_id)
            raise ValidationError(f"Raw material {requirement.material_id} is listed more than once")
        seen.add(requirement.material_id)
        await _require_material(tx, requirement.material_id)
        rows.append(
            ProductMaterialRow(
                id=None,
                product_id=product_id,
                material_id=requirement.material_id,
                quantity_needed=parse_decimal(requirement.quantity_needed, "quantity_needed"),
            )
        )
    return rows


async def create_product(
    context: RuntimeContext,
    name: str,
    price: Any,
    *,
    image_url: str = "",
    category: str = "",
    materials: Sequence[MaterialRequirement] = (),
) -> ProductRow:
    """Create a product and its material mappings in one scope.

    The ``is_active`` flag is computed from the new mappings before the scope
    commits.

    Raises:
        ValidationError: If the name is blank, the price invalid, or a
            material is listed twice.
        NotFoundError: If a mapping references an unknown material.
    """
    clean_name = require_text(name, "name")
    clean_price = parse_decimal(price, "price")

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        product = await tx.add(
            CollectionName.PRODUCTS,
            ProductRow(
                id=None,
                name=clean_name,
                price=clean_price,
                is_active=True,
                image_url=(image_url or "").strip(),
                category=(category or "").strip(),
                created_at=timestamp,
                updated_at=timestamp,
            ),
        )
        mappings = await _build_mappings(tx, product.id, materials)
        await tx.bulk_add(CollectionName.PRODUCT_MATERIALS, mappings)
        await reevaluate_in(tx, timestamp=timestamp)
        product = await tx.get(CollectionName.PRODUCTS, product.id)

    log.info("Created product '%s' (%s) with %d materials", product.name, product.id, len(mappings))
    return product


async def update_product(
    context: RuntimeContext,
    product_id: int,
    name: str,
    price: Any,
    materials: Sequence[MaterialRequirement],
    *,
    image_url: Optional[str] = None,
    category: Optional[str] = None,
) -> ProductRow:
    """Update a product and replace its whole mapping set.

    Old mappings are removed and ``materials`` inserted in the same scope, so
    no reader sees the product with a partial recipe. ``image_url`` and
    ``category`` are left untouched when ``None``.
    """
    clean_name = require_text(name, "name")
    clean_price = parse_decimal(price, "price")
    changes = {"name": clean_name, "price": clean_price}
    if image_url is not None:
        changes["image_url"] = image_url.strip()
    if category is not None:
        changes["category"] = category.strip()

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        await _require_product(tx, product_id)
        await tx.update(CollectionName.PRODUCTS, product_id, updated_at=timestamp, **changes)
        old = await tx.where(CollectionName.PRODUCT_MATERIALS, "product_id", product_id)
        await tx.bulk_delete(CollectionName.PRODUCT_MATERIALS, [mapping.id for mapping in old])
        await tx.bulk_add(CollectionName.PRODUCT_MATERIALS, await _build_mappings(tx, product_id, materials))
        await reevaluate_in(tx, timestamp=timestamp)
        product = await tx.get(CollectionName.PRODUCTS, product_id)

    log.info("Updated product '%s' (%s); recipe now has %d materials", product.name, product_id, len(materials))
    return product


async def delete_product(context: RuntimeContext, product_id: int) -> None:
    """Delete a product and its mappings. Past transaction items keep their snapshot."""

    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        product = await _require_product(tx, product_id)
        mappings = await tx.where(CollectionName.PRODUCT_MATERIALS, "product_id", product_id)
        await tx.bulk_delete(CollectionName.PRODUCT_MATERIALS, [mapping.id for mapping in mappings])
        await tx.delete(CollectionName.PRODUCTS, product_id)
        await reevaluate_in(tx, timestamp=now_iso(context))

    log.info("Deleted product '%s' (%s) and %d mappings", product.name, product_id, len(mappings))


async def get_product(context: RuntimeContext, product_id: int) -> ProductRow:
    product = await context.store.get(CollectionName.PRODUCTS, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError(f"Unknown product id: {product_id}")
    return product


async def list_products(context: RuntimeContext, *, category: Optional[str] = None) -> List[ProductRow]:
    if category is None:
        return _by_name(await context.store.all(CollectionName.PRODUCTS))
    return _by_name(await context.store.where(CollectionName.PRODUCTS, "category", category, ignore_case=True))


async def get_product_materials(context: RuntimeContext, product_id: int) -> List[ProductMaterialDetail]:
    """Return a product's recipe with each material's name and unit."""

    mappings = await context.store.where(CollectionName.PRODUCT_MATERIALS, "product_id", product_id)
    materials = {
        material.id: material
        for material in await context.store.any_of(
            CollectionName.RAW_MATERIALS, "id", [mapping.material_id for mapping in mappings]
        )
    }
    details = []
    for mapping in mappings:
        material = materials.get(mapping.material_id)
        details.append(
            ProductMaterialDetail(
                material_id=mapping.material_id,
                quantity_needed=mapping.quantity_needed,
                name=material.name if material is not None else "Unknown",
                unit=material.unit if material is not None else "-",
            )
        )
    return details


async def upsert_product_material(
    context: RuntimeContext,
    product_id: int,
    material_id: int,
    quantity_needed: Any,
) -> ProductMaterialRow:
    """Set how much of ``material_id`` one unit of ``product_id`` needs."""

    quantity = parse_decimal(quantity_needed, "quantity_needed")
    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        await _require_product(tx, product_id)
        await _require_material(tx, material_id)
        existing = await tx.first(
            CollectionName.PRODUCT_MATERIALS, "[product_id+material_id]", (product_id, material_id)
        )
        if existing is not None:
            mapping = await tx.update(CollectionName.PRODUCT_MATERIALS, existing.id, quantity_needed=quantity)
        else:
            mapping = await tx.add(
                CollectionName.PRODUCT_MATERIALS,
                ProductMaterialRow(id=None, product_id=product_id, material_id=material_id, quantity_needed=quantity),
            )
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Product '%s' now needs %s of material '%s'", product_id, quantity, material_id)
    return mapping


async def remove_product_material(context: RuntimeContext, product_id: int, material_id: int) -> bool:
    """Drop one mapping. Returns ``False`` when there was nothing to remove."""

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        existing = await tx.first(
            CollectionName.PRODUCT_MATERIALS, "[product_id+material_id]", (product_id, material_id)
        )
        if existing is None:
            return False
        await tx.delete(CollectionName.PRODUCT_MATERIALS, existing.id)
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Removed material '%s' from product '%s'", material_id, product_id)
    return True


async def seed_if_empty(context: RuntimeContext) -> bool:
    """Load the starter menu into a store that has no products yet.

    Returns:
        bool: ``True`` when data was seeded, ``False`` when products existed.
    """

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        if await tx.count(CollectionName.PRODUCTS):
            return False

        def material(name: str, stock: int) -> RawMaterialRow:
            return RawMaterialRow(
                id=None,
                name=name,
                unit="gram",
                stock_quantity=Decimal(stock),
                created_at=timestamp,
                updated_at=timestamp,
            )

        def product(name: str, price: int) -> ProductRow:
            return ProductRow(
                id=None,
                name=name,
                price=Decimal(price),
                is_active=True,
                category="Makanan",
                created_at=timestamp,
                updated_at=timestamp,
            )

        rice, chicken, spice = await tx.bulk_add(
            CollectionName.RAW_MATERIALS,
            [material("Beras", 5000), material("Ayam", 3000), material("Bumbu", 1000)],
        )
        nasi_ayam, ayam_goreng = await tx.bulk_add(
            CollectionName.PRODUCTS,
            [product("Nasi Ayam", 20000), product("Ayam Goreng", 15000)],
        )
        await tx.bulk_add(
            CollectionName.PRODUCT_MATERIALS,
            [
                ProductMaterialRow(None, nasi_ayam.id, rice.id, Decimal("150")),
                ProductMaterialRow(None, nasi_ayam.id, chicken.id, Decimal("100")),
                ProductMaterialRow(None, nasi_ayam.id, spice.id, Decimal("10")),
                ProductMaterialRow(None, ayam_goreng.id, chicken.id, Decimal("150")),
                ProductMaterialRow(None, ayam_goreng.id, spice.id, Decimal("8")),
            ],
        )
        await reevaluate_in(tx, timestamp=timestamp)

    log.info("Seeded starter menu with 3 raw materials and 2 products")
    return True


async def seed_examples_if_missing(context: RuntimeContext) -> None:
    """Make sure the Extrajoss + Susu SKM combo drink and its materials exist.

    Missing pieces are added; an existing ``Jossu`` product only gains the
    mappings it lacks.
    """

    timestamp = now_iso(context)
    async with context.store.transaction(*EVALUATION_SCOPE) as tx:
        ingredient_ids = []
        for name in ("Extrajoss", "Susu SKM"):
            existing = await tx.first(CollectionName.RAW_MATERIALS, "name", name, ignore_case=True)
            if existing is None:
                existing = await tx.add(
                    CollectionName.RAW_MATERIALS,
                    RawMaterialRow(
                        id=None,
                        name=name,
                        unit="sachet",
                        stock_quantity=Decimal("100"),
                        created_at=timestamp,
                        updated_at=timestamp,
                    ),
                )
                log.info("Seeded example raw material '%s'", name)
            ingredient_ids.append(existing.id)

        jossu = await tx.first(CollectionName.PRODUCTS, "name", "Jossu", ignore_case=True)
        if jossu is None:
            jossu = await tx.add(
                CollectionName.PRODUCTS,
                ProductRow(
                    id=None,
                    name="Jossu",
                    price=Decimal("8000"),
                    is_active=True,
                    category="Minuman",
                    created_at=timestamp,
                    updated_at=timestamp,
                ),
            )
            log.info("Seeded example product 'Jossu'")

        mapped = {
            mapping.material_id
            for mapping in await tx.where(CollectionName.PRODUCT_MATERIALS, "product_id", jossu.id)
        }
        await tx.bulk_add(
            CollectionName.PRODUCT_MATERIALS,
            [
                ProductMaterialRow(None, jossu.id, material_id, Decimal("1"))
                for material_id in ingredient_ids
                if material_id not in mapped
            ],
        )
        await reevaluate_in(tx, timestamp=timestamp)

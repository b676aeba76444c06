"""Command-line entry points for the POS core.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the catalog, transaction, availability,
and reporting workflows, and printing their results. Keeping the CLI thin
ensures the same parser configuration can be reused by tests, scripts, or a
cashier front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import availability, catalog, core_logic, log, reporting, transactions
from .constants import CASH_PAYMENT_METHOD
from .data_manager import ProductRow, RawMaterialRow, TransactionRow


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the offline POS inventory store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to searching upward from the current directory).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _command_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    """Build a spec whose registrar adds ``name`` and lets ``configure`` add its flags."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _register_all(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    specs: Sequence[CommandSpec],
) -> Dict[str, CommandSpec]:
    for spec in specs:
        spec.register(subparsers)
    return {spec.name: spec for spec in specs}


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkouts and restocks."""
    return _register_all(
        subparsers,
        [
            _command_spec("add-material", "Register a new raw material.", run_add_material, _add_material_arguments),
            _command_spec(
                "update-material",
                "Change a raw material's name, unit, stock, or threshold.",
                run_update_material,
                _update_material_arguments,
            ),
            _command_spec(
                "delete-material",
                "Delete a raw material and every recipe line that uses it.",
                run_delete_material,
                _material_id_argument,
            ),
            _command_spec(
                "add-product",
                "Register a new product with its recipe.",
                run_add_product,
                _add_product_arguments,
            ),
            _command_spec(
                "update-product",
                "Update a product and replace its recipe.",
                run_update_product,
                _update_product_arguments,
            ),
            _command_spec(
                "reevaluate",
                "Recompute which products can be sold with the current stock.",
                run_reevaluate,
            ),
            _command_spec("checkout", "Create a transaction for a cart and pay it.", run_checkout, _checkout_arguments),
            _command_spec(
                "pay",
                "Pay a pending transaction and deduct its raw materials.",
                run_pay,
                _transaction_id_argument,
            ),
            _command_spec("cancel", "Cancel a pending transaction.", run_cancel, _transaction_id_argument),
            _command_spec("seed", "Load the starter menu into an empty store.", run_seed, _seed_arguments),
        ],
    )


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    return _register_all(
        subparsers,
        [
            _command_spec(
                "materials",
                "List raw materials and their stock.",
                run_materials,
                lambda parser: parser.add_argument("--keyword", default=None),
            ),
            _command_spec("low-stock", "List raw materials at or below their minimum stock.", run_low_stock),
            _command_spec(
                "products",
                "List products and whether they can be sold.",
                run_products,
                lambda parser: parser.add_argument("--category", default=None),
            ),
            _command_spec(
                "availability",
                "Explain whether one product can be sold right now.",
                run_availability,
                lambda parser: parser.add_argument("--product-id", type=int, required=True),
            ),
            _command_spec("dashboard", "Display today's and the last 30 days' paid sales.", run_dashboard),
        ],
    )


def parse_pair(text: str) -> Tuple[int, str]:
    """Split ``ID:AMOUNT`` into an integer id and the raw amount text."""
    identifier, separator, amount = text.partition(":")
    if not separator or not amount.strip():
        raise argparse.ArgumentTypeError(f"expected ID:AMOUNT, got {text!r}")
    try:
        return int(identifier), amount.strip()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"id must be an integer, got {identifier!r}") from exc


def parse_cart_item(text: str) -> transactions.CartItem:
    """Parse ``PRODUCT_ID:QUANTITY`` into a cart line."""
    product_id, amount = parse_pair(text)
    try:
        quantity = int(amount)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"quantity must be a whole number, got {amount!r}") from exc
    return transactions.CartItem(product_id=product_id, quantity=quantity)


def parse_material_requirement(text: str) -> catalog.MaterialRequirement:
    """Parse ``MATERIAL_ID:QUANTITY_NEEDED`` into a recipe line."""
    material_id, amount = parse_pair(text)
    return catalog.MaterialRequirement(material_id=material_id, quantity_needed=amount)


def _material_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--material-id", type=int, required=True)


def _transaction_id_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--transaction-id", type=int, required=True)


def _add_material_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--unit", required=True)
    parser.add_argument("--stock", default=None, help="Starting stock (defaults to 0).")
    parser.add_argument("--min-stock", default=None, help="Low-stock threshold; 0 disables the alert.")


def _update_material_arguments(parser: argparse.ArgumentParser) -> None:
    _material_id_argument(parser)
    for flag in ("--name", "--unit", "--stock", "--min-stock"):
        parser.add_argument(flag, default=None)


def _add_product_arguments(parser: argparse.ArgumentParser, *, replaces_recipe: bool = False) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--price", required=True)
    parser.add_argument("--image-url", default=None)
    parser.add_argument("--category", default=None)
    parser.add_argument(
        "--material",
        dest="materials",
        action="append",
        type=parse_material_requirement,
        default=None,
        metavar="MATERIAL_ID:QTY",
        help="Recipe line; repeat for each material%s." % (" (replaces the whole recipe)" if replaces_recipe else ""),
    )


def _update_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", type=int, required=True)
    _add_product_arguments(parser, replaces_recipe=True)


def _checkout_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_cart_item,
        required=True,
        metavar="PRODUCT_ID:QTY",
        help="Cart line; repeat for each product.",
    )
    parser.add_argument("--payment-method", default=CASH_PAYMENT_METHOD)
    parser.add_argument("--cashier", default=None, help="Defaults to the configured cashier name.")
    parser.add_argument(
        "--pending",
        action="store_true",
        help="Only create the pending transaction; pay it later with 'pay'.",
    )


def _seed_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--examples", action="store_true", help="Also add the Jossu combo drink.")


async def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return await core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


async def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return await spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def format_material(material: RawMaterialRow) -> str:
    line = f"#{material.id} {material.name}: {material.stock_quantity} {material.unit}"
    if material.alerts_enabled:
        line += f" (min {material.min_stock})"
    if material.is_low_stock:
        line += " LOW"
    return line


def format_product(product: ProductRow) -> str:
    state = "available" if product.is_active else "unavailable"
    category = f" [{product.category}]" if product.category else ""
    return f"#{product.id} {product.name}{category}: {product.price} ({state})"


def format_transaction(transaction: TransactionRow) -> str:
    return (
        f"#{transaction.id} {transaction.receipt_number} {transaction.status} "
        f"{transaction.total_amount} via {transaction.payment_method} by {transaction.cashier_name}"
    )


def _print_lines(lines: Iterable[str], empty: str) -> None:
    printed = False
    for line in lines:
        print(line)
        printed = True
    if not printed:
        print(empty)


def translate_materials(args: argparse.Namespace) -> List[catalog.MaterialRequirement]:
    """Translate repeated ``--material`` flags into recipe lines."""
    return list(getattr(args, "materials", None) or [])


def translate_cart(args: argparse.Namespace) -> List[transactions.CartItem]:
    """Translate repeated ``--item`` flags into cart lines."""
    return list(args.items)


async def run_add_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-raw-material workflow."""
    material = await catalog.create_raw_material(
        context, args.name, args.unit, stock_quantity=args.stock, min_stock=args.min_stock
    )
    print(format_material(material))
    return 0


async def run_update_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the partial raw-material update workflow."""
    material = await catalog.update_raw_material(
        context,
        args.material_id,
        name=args.name,
        unit=args.unit,
        stock_quantity=args.stock,
        min_stock=args.min_stock,
    )
    print(format_material(material))
    return 0


async def run_delete_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cascading raw-material delete workflow."""
    await catalog.delete_raw_material(context, args.material_id)
    print(f"Deleted raw material #{args.material_id}")
    return 0


async def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-product workflow."""
    product = await catalog.create_product(
        context,
        args.name,
        args.price,
        image_url=args.image_url or "",
        category=args.category or "",
        materials=translate_materials(args),
    )
    print(format_product(product))
    return 0


async def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow, replacing the recipe."""
    product = await catalog.update_product(
        context,
        args.product_id,
        args.name,
        args.price,
        translate_materials(args),
        image_url=args.image_url,
        category=args.category,
    )
    print(format_product(product))
    return 0


async def run_reevaluate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the availability re-evaluation workflow."""
    changed = await availability.reevaluate_all(context)
    print(f"{len(changed)} products changed availability")
    return 0


async def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow, or only create the pending transaction."""
    items = translate_cart(args)
    if args.pending:
        transaction = await transactions.create_pending(context, items, args.payment_method, args.cashier)
    else:
        transaction = await transactions.checkout(context, items, args.payment_method, args.cashier)
    print(format_transaction(transaction))
    return 0


async def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the mark-paid workflow."""
    transaction = await transactions.mark_paid(context, args.transaction_id)
    print(format_transaction(transaction))
    return 0


async def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancel workflow."""
    transaction = await transactions.cancel(context, args.transaction_id)
    print(format_transaction(transaction))
    return 0


async def run_seed(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the demo-data seeding workflows."""
    seeded = await catalog.seed_if_empty(context)
    print("Seeded starter menu" if seeded else "Store already has products; starter menu skipped")
    if args.examples:
        await catalog.seed_examples_if_missing(context)
        print("Example products ensured")
    return 0


async def run_materials(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the raw-material listing."""
    materials = await catalog.list_raw_materials(context, args.keyword)
    _print_lines((format_material(material) for material in materials), "No raw materials found")
    return 0


async def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the low-stock listing."""
    materials = await catalog.low_stock_materials(context)
    _print_lines((format_material(material) for material in materials), "No raw materials are low on stock")
    return 0


async def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the product listing."""
    products = await catalog.list_products(context, category=args.category)
    _print_lines((format_product(product) for product in products), "No products found")
    return 0


async def run_availability(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the single-product availability check."""
    result = await availability.check_availability(context, args.product_id)
    if result.ok:
        print(f"Product #{args.product_id} is available")
        return 0
    print(f"Product #{args.product_id} is unavailable:")
    for missing in result.missing:
        print(f"  {missing.name}: need {missing.required} {missing.unit}, have {missing.available} {missing.unit}")
    return 0


async def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the owner dashboard report."""
    dashboard = await reporting.owner_dashboard(context)
    daily, monthly = dashboard.daily, dashboard.monthly
    print(f"Store: {context.settings.store_name}")
    print(
        f"Today: {daily.sales} from {daily.transactions} transactions "
        f"(cash {daily.cash_payments}, cashless {daily.cashless_payments})"
    )
    print(f"Top product today: {daily.top_product.name} x{daily.top_product.quantity}")
    print(
        f"Last 30 days: {monthly.sales} from {monthly.transactions} transactions "
        f"(sales growth {monthly.sales_growth:.1f}%, transaction growth {monthly.transaction_growth:.1f}%)"
    )
    print(
        f"Top product (30 days): {monthly.top_product.name} "
        f"x{monthly.top_product.quantity} = {monthly.top_product.revenue}"
    )
    for peak in monthly.peak_hours:
        if peak.transactions:
            print(f"  {peak.hour}: {peak.transactions} transactions ({peak.percentage:.0f}%)")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.InsufficientStockError):
        log.error("%s", error)
        if error.transaction_id is not None:
            log.error("Transaction %s is still pending", error.transaction_id)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


async def run_command(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Open the store named by ``--config`` and run the parsed command."""
    context = await load_runtime_context(getattr(args, "config", None))
    return await dispatch_command(context, args, command_table)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        return asyncio.run(run_command(args, command_table))
    except Exception as error:
        return handle_cli_error(error)

"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from pos_core import catalog, cli, core_logic, store, transactions
from pos_core.constants import CollectionName, TransactionStatus


WRITE_COMMANDS = {
    "add-material",
    "update-material",
    "delete-material",
    "add-product",
    "update-product",
    "reevaluate",
    "checkout",
    "pay",
    "cancel",
    "seed",
}

READ_COMMANDS = {
    "materials",
    "low-stock",
    "products",
    "availability",
    "dashboard",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "pos-cli"
    assert "POS" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and read-only sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS


def test_checkout_command_configures_arguments():
    """checkout should accept repeated --item flags and optional metadata."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["checkout", "--item", "1:2", "--item", "3:1", "--payment-method", "qris", "--cashier", "Budi"]
    )

    assert args.command == "checkout"
    assert args.items == [transactions.CartItem(1, 2), transactions.CartItem(3, 1)]
    assert args.payment_method == "qris"
    assert args.cashier == "Budi"
    assert args.pending is False


def test_checkout_defaults_to_cash():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(["checkout", "--item", "1:1"])

    assert args.payment_method == "cash"
    assert args.cashier is None


def test_add_product_command_configures_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["add-product", "--name", "Jossu", "--price", "8000", "--material", "1:1", "--material", "2:0.5"]
    )

    assert args.materials == [catalog.MaterialRequirement(1, "1"), catalog.MaterialRequirement(2, "0.5")]
    assert args.category is None


def test_update_product_without_materials_clears_recipe():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(["update-product", "--product-id", "4", "--name", "Es Teh", "--price", "3000"])

    assert args.product_id == 4
    assert cli.translate_materials(args) == []


@pytest.mark.parametrize("text", ["12", "x:1", "1:", "1:abc", "1:2.5"])
def test_parse_cart_item_rejects_malformed_values(text):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_cart_item(text)


def test_parse_material_requirement_keeps_raw_amount():
    """Amounts are validated by the catalog, not the parser."""

    assert cli.parse_material_requirement("7: 1.25 ") == catalog.MaterialRequirement(7, "1.25")


def test_malformed_item_exits_with_usage_error(capsys):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["checkout", "--item", "nasi"])
    assert excinfo.value.code == 2
    assert "expected ID:AMOUNT" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch, run):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    async def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert run(cli.load_runtime_context(config_file)) is sentinel_context


def test_load_runtime_context_supports_defaults(config_bundle, monkeypatch, run):
    """Without --config the configuration is discovered from the working directory."""

    monkeypatch.chdir(config_bundle.directory)
    context = run(cli.load_runtime_context())
    assert context.settings.store_name == config_bundle.store_name
    assert context.store.data_file == config_bundle.workbook_path.resolve()


def test_dispatch_command_invokes_executor(runtime_context, run):
    called = {}

    async def _execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = context
        return 7

    spec = cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), _execute)
    result = run(cli.dispatch_command(runtime_context, argparse.Namespace(command="alpha"), {"alpha": spec}))

    assert result == 7
    assert called["context"] is runtime_context


def test_dispatch_command_handles_unknown_commands(runtime_context, run):
    with pytest.raises(KeyError):
        run(cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {}))


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error,expected",
    [
        (core_logic.InsufficientStockError([], transaction_id=3), 4),
        (core_logic.ValidationError("bad"), 2),
        (core_logic.NotFoundError("gone"), 2),
        (core_logic.InvalidTransitionError("paid"), 2),
        (FileNotFoundError("config.ini"), 3),
        (store.StorageError("locked"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, expected):
    assert cli.handle_cli_error(error) == expected


def test_handle_cli_error_logs_pending_transaction(caplog):
    error = core_logic.InsufficientStockError([], transaction_id=12)
    with caplog.at_level("ERROR", logger="pos_core"):
        cli.handle_cli_error(error)
    assert "Transaction 12 is still pending" in caplog.text


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def _main(config_file: Path, *argv: str) -> int:
    return cli.main(["--config", str(config_file), *argv])


def _open(config_bundle, run) -> store.RecordStore:
    return run(store.RecordStore.open(config_bundle.workbook_path))


def test_main_manages_materials(config_bundle, config_file, capsys, run):
    assert _main(config_file, "add-material", "--name", "Gula", "--unit", "gram", "--stock", "50",
                 "--min-stock", "60") == 0
    assert "#1 Gula: 50 gram (min 60) LOW" in capsys.readouterr().out

    assert _main(config_file, "update-material", "--material-id", "1", "--stock", "80") == 0
    assert "LOW" not in capsys.readouterr().out

    assert _main(config_file, "low-stock") == 0
    assert "No raw materials are low on stock" in capsys.readouterr().out

    material = run(_open(config_bundle, run).get(CollectionName.RAW_MATERIALS, 1))
    assert material.stock_quantity == Decimal("80")

    assert _main(config_file, "delete-material", "--material-id", "1") == 0
    assert run(_open(config_bundle, run).count(CollectionName.RAW_MATERIALS)) == 0


def test_main_seed_checkout_and_dashboard(config_bundle, config_file, capsys, run):
    assert _main(config_file, "seed") == 0
    assert "Seeded starter menu" in capsys.readouterr().out

    assert _main(config_file, "products", "--category", "makanan") == 0
    listing = capsys.readouterr().out
    assert "Nasi Ayam [Makanan]: 20000 (available)" in listing

    assert _main(config_file, "checkout", "--item", "1:2") == 0
    receipt_line = capsys.readouterr().out
    assert "paid 40000 via cash by " + config_bundle.cashier_name in receipt_line

    assert _main(config_file, "dashboard") == 0
    dashboard = capsys.readouterr().out
    assert "Store: " + config_bundle.store_name in dashboard
    assert "Last 30 days: 40000 from 1 transactions" in dashboard

    record_store = _open(config_bundle, run)
    rice = run(record_store.first(CollectionName.RAW_MATERIALS, "name", "Beras"))
    assert rice.stock_quantity == Decimal("4700")


def test_main_pending_then_cancel(config_bundle, config_file, capsys, run):
    _main(config_file, "seed")
    assert _main(config_file, "checkout", "--item", "2:1", "--pending", "--payment-method", "qris") == 0
    assert " pending 15000 via qris" in capsys.readouterr().out

    assert _main(config_file, "cancel", "--transaction-id", "1") == 0
    assert " canceled " in capsys.readouterr().out
    assert _main(config_file, "pay", "--transaction-id", "1") == 2

    transaction = run(_open(config_bundle, run).get(CollectionName.TRANSACTIONS, 1))
    assert transaction.status == TransactionStatus.CANCELED.value


def test_main_reports_shortage_with_exit_code(config_bundle, config_file, capsys, run):
    _main(config_file, "seed")
    capsys.readouterr()

    assert _main(config_file, "checkout", "--item", "2:100") == 4

    record_store = _open(config_bundle, run)
    (pending,) = run(record_store.all(CollectionName.TRANSACTIONS))
    assert pending.status == TransactionStatus.PENDING.value
    chicken = run(record_store.first(CollectionName.RAW_MATERIALS, "name", "Ayam"))
    assert chicken.stock_quantity == Decimal("3000")


def test_main_availability_explains_shortage(config_file, capsys):
    _main(config_file, "add-material", "--name", "Ayam", "--unit", "gram", "--stock", "100")
    _main(config_file, "add-product", "--name", "Ayam Goreng", "--price", "15000", "--material", "1:150")
    capsys.readouterr()

    assert _main(config_file, "availability", "--product-id", "1") == 0
    output = capsys.readouterr().out
    assert "Product #1 is unavailable:" in output
    assert "Ayam: need 150 gram, have 100 gram" in output


def test_main_validation_error_exit_code(config_file):
    assert _main(config_file, "add-material", "--name", "Gula", "--unit", "gram", "--stock", "-5") == 2


def test_main_missing_workbook_exit_code(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = nowhere.xlsx\nStoreName = Kosong\n", encoding="utf-8")

    assert cli.main(["--config", str(config_path), "materials"]) == 3


def test_main_routes_errors_through_handler(monkeypatch, config_file):
    """main should hand any raised exception to handle_cli_error."""

    async def fake_run_command(*_: Any) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "run_command", fake_run_command)
    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)

    assert _main(config_file, "reevaluate") == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]

"""Unit tests for the shared business-logic plumbing."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

import pos_core
from pos_core import constants, core_logic, data_manager, migrations, setup_workbook


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_reads_settings(config_bundle, run):
    context = run(core_logic.load_runtime_context(config_bundle.config_path))

    assert context.settings.store_name == config_bundle.store_name
    assert context.settings.default_cashier_name == config_bundle.cashier_name
    assert context.store.data_file == config_bundle.workbook_path.resolve()


def test_load_runtime_context_resolves_relative_data_file(config_factory, run):
    bundle = config_factory(make_relative=True)

    context = run(core_logic.load_runtime_context(bundle.config_path))

    assert context.settings.data_file == bundle.workbook_path.resolve()


def test_load_runtime_context_missing_config(tmp_path, run):
    with pytest.raises(FileNotFoundError):
        run(core_logic.load_runtime_context(tmp_path / "missing.ini"))


def test_load_runtime_context_upgrades_old_workbook(config_factory, run):
    bundle = config_factory(version=1)

    context = run(core_logic.load_runtime_context(bundle.config_path))

    core_logic.ensure_schema_version(context)
    assert context.store.schema_version == constants.SCHEMA_VERSION


def test_ensure_schema_version_rejects_mismatch(runtime_context, monkeypatch):
    monkeypatch.setattr(core_logic, "SCHEMA_VERSION", constants.SCHEMA_VERSION + 1)
    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(runtime_context)


def test_utcnow_prefers_injected_clock(runtime_context, clock):
    assert core_logic.utcnow(runtime_context) == clock.moment
    assert core_logic.now_iso(runtime_context) == "2025-03-14T10:30:00+00:00"
    assert core_logic.utcnow().tzinfo is not None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw,expected",
    [
        (None, Decimal("0")),
        ("", Decimal("0")),
        ("  ", Decimal("0")),
        ("12.50", Decimal("12.50")),
        (" 7 ", Decimal("7")),
        (3, Decimal("3")),
        (0.1, Decimal("0.1")),
        (Decimal("4.2"), Decimal("4.2")),
    ],
)
def test_parse_decimal_accepts_numbers(raw, expected):
    assert core_logic.parse_decimal(raw, "amount") == expected


@pytest.mark.parametrize("raw", ["abc", "1,5", True, float("nan"), float("-inf"), "NaN", "-0.01", -3])
def test_parse_decimal_rejects_non_numbers(raw):
    with pytest.raises(core_logic.ValidationError):
        core_logic.parse_decimal(raw, "amount")


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        core_logic.parse_decimal("abc", "amount")


def test_require_text_strips_and_rejects_blank():
    assert core_logic.require_text("  Kopi ", "name") == "Kopi"
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_text(None, "name")
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_text(" \t", "name")


@pytest.mark.parametrize("quantity", [0, -1, 1.0, "2", True, None])
def test_require_positive_quantity_rejects(quantity):
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_positive_quantity(quantity)


def test_require_positive_quantity_accepts_integers():
    assert core_logic.require_positive_quantity(3) == 3


def test_generate_receipt_number_format():
    moment = datetime(2025, 3, 14, 10, 30, 5, tzinfo=UTC)

    first = core_logic.generate_receipt_number(when=moment)
    second = core_logic.generate_receipt_number(when=moment)

    assert re.fullmatch(r"R20250314103005-[0-9A-F]{6}", first)
    assert first != second
    assert core_logic.generate_receipt_number(prefix="T", when=moment).startswith("T2025")


def test_insufficient_stock_error_describes_every_shortage():
    shortages = [
        core_logic.MaterialShortage(1, "Ayam", Decimal("300"), Decimal("200"), "gram"),
        core_logic.MaterialShortage(2, "Bumbu", Decimal("16"), Decimal("5"), "gram"),
    ]

    error = core_logic.InsufficientStockError(shortages)
    attached = error.with_transaction(9)

    assert "Ayam: need 300 gram, have 200 gram" in str(error)
    assert "Bumbu: need 16 gram, have 5 gram" in str(error)
    assert error.transaction_id is None
    assert attached.transaction_id == 9
    assert attached.shortages == error.shortages
    assert core_logic.MissingReferenceError is core_logic.NotFoundError


# ---------------------------------------------------------------------------
# Workbook setup script
# ---------------------------------------------------------------------------


def test_create_store_workbook_file_writes_current_schema(tmp_path):
    path = setup_workbook.create_store_workbook_file(tmp_path / "nested" / "store.xlsx")

    workbook = data_manager.open_workbook(path)
    assert migrations.read_schema_version(workbook) == constants.SCHEMA_VERSION
    for collection in constants.CollectionName:
        assert collection.value in workbook.sheetnames


def test_create_store_workbook_file_refuses_overwrite(store_workbook_path):
    with pytest.raises(FileExistsError):
        setup_workbook.create_store_workbook_file(store_workbook_path)
    assert setup_workbook.create_store_workbook_file(store_workbook_path, overwrite=True) == store_workbook_path


def test_setup_main_creates_workbook_from_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile = data/store.xlsx\nStoreName = Warung Baru\n", encoding="utf-8")

    assert setup_workbook.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out
    assert (tmp_path / "data" / "store.xlsx").exists()

    assert setup_workbook.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_workbook.main(["--config", str(config_path), "--force"]) == 0


@pytest.mark.parametrize(
    "content",
    [None, "[System]\nStoreName = Tanpa Data\n"],
)
def test_setup_main_reports_config_problems(tmp_path, capsys, content):
    config_path: Path = tmp_path / "config.ini"
    if content is not None:
        config_path.write_text(content, encoding="utf-8")

    assert setup_workbook.main(["--config", str(config_path)]) == 1
    assert "[ERROR]" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Package logging
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw,expected",
    [("debug", logging.DEBUG), (" Warning ", logging.WARNING), ("chatty", logging.INFO), (None, logging.INFO)],
)
def test_resolve_level_falls_back_to_info(raw, expected):
    assert pos_core._resolve_level(raw) == expected


def test_package_logger_is_configured_once():
    assert pos_core.log is logging.getLogger("pos_core")
    assert pos_core._configure_logging() is pos_core.log
    assert len(pos_core.log.handlers) in (1, 2)

"""Shared pytest fixtures and utilities for POS core tests."""

from __future__ import annotations

import argparse
import asyncio
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_core import catalog, cli, constants, core_logic, data_manager, migrations, store  # noqa: E402
from pos_core.setup_workbook import create_store_workbook_file  # noqa: E402

DEFAULT_STORE_NAME = "Warung Test"
DEFAULT_CASHIER_NAME = "Sari"
DEFAULT_MOMENT = datetime(2025, 3, 14, 10, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n\n"
    "[Defaults]\n"
    "CashierName = {cashier_name}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    store_name: str
    cashier_name: str


class FixedClock:
    """Callable clock injected into runtime contexts; tests move it by hand."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def loop() -> Iterator[asyncio.AbstractEventLoop]:
    """Provide one event loop per test so store locks never cross loops."""

    event_loop = asyncio.new_event_loop()
    try:
        yield event_loop
    finally:
        event_loop.run_until_complete(event_loop.shutdown_default_executor())
        event_loop.close()


@pytest.fixture
def run(loop: asyncio.AbstractEventLoop) -> Callable[[Awaitable[Any]], Any]:
    """Run a coroutine to completion on the test's event loop."""

    return loop.run_until_complete


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(DEFAULT_MOMENT)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "pos_store.xlsx",
        version: int = constants.SCHEMA_VERSION,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        if version == constants.SCHEMA_VERSION:
            return create_store_workbook_file(workbook_path, overwrite=True)
        workbook = migrations.create_store_workbook(version)
        data_manager.save_workbook(workbook, workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = DEFAULT_STORE_NAME,
        cashier_name: str = DEFAULT_CASHIER_NAME,
        version: int = constants.SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name, version=version)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                cashier_name=cashier_name,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            store_name=store_name,
            cashier_name=cashier_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path, run, clock: FixedClock) -> core_logic.RuntimeContext:
    """Load the runtime context through the public API and pin its clock."""

    loaded = run(core_logic.load_runtime_context(config_file))
    core_logic.ensure_schema_version(loaded)
    return core_logic.RuntimeContext(settings=loaded.settings, store=loaded.store, _clock=clock)


@pytest.fixture
def reopen(run, clock: FixedClock) -> Callable[[core_logic.RuntimeContext], core_logic.RuntimeContext]:
    """Open a second context on the same workbook to check what was persisted."""

    def _reopen(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
        record_store = run(store.RecordStore.open(context.settings.data_file))
        return core_logic.RuntimeContext(settings=context.settings, store=record_store, _clock=clock)

    return _reopen


@pytest.fixture
def kitchen(runtime_context: core_logic.RuntimeContext, run) -> dict:
    """Stock a small kitchen: rice, chicken, and spice with two recipes.

    * Nasi Ayam (20000): 150 g rice, 100 g chicken, 10 g spice.
    * Ayam Goreng (15000): 150 g chicken, 8 g spice.
    """

    rice = run(catalog.create_raw_material(runtime_context, "Beras", "gram", "5000", min_stock="500"))
    chicken = run(catalog.create_raw_material(runtime_context, "Ayam", "gram", "3000"))
    spice = run(catalog.create_raw_material(runtime_context, "Bumbu", "gram", "1000"))
    nasi_ayam = run(
        catalog.create_product(
            runtime_context,
            "Nasi Ayam",
            "20000",
            category="Makanan",
            materials=[
                catalog.MaterialRequirement(rice.id, "150"),
                catalog.MaterialRequirement(chicken.id, "100"),
                catalog.MaterialRequirement(spice.id, "10"),
            ],
        )
    )
    ayam_goreng = run(
        catalog.create_product(
            runtime_context,
            "Ayam Goreng",
            "15000",
            category="Makanan",
            materials=[
                catalog.MaterialRequirement(chicken.id, "150"),
                catalog.MaterialRequirement(spice.id, "8"),
            ],
        )
    )
    return {
        "rice": rice,
        "chicken": chicken,
        "spice": spice,
        "nasi_ayam": nasi_ayam,
        "ayam_goreng": ayam_goreng,
    }


@pytest.fixture
def stock_of(run) -> Callable[[core_logic.RuntimeContext, int], Decimal]:
    """Return a helper reading a material's committed stock."""

    def _stock_of(context: core_logic.RuntimeContext, material_id: int) -> Decimal:
        return run(catalog.get_raw_material(context, material_id)).stock_quantity

    return _stock_of


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    async def _execute(*_: Any) -> int:
        return 0

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            _execute,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]

"""Utility for initializing an empty POS store workbook.

The module doubles as a script (``pos-setup``) and as a library used by tests
or other tooling. The workbook it writes carries every collection sheet at the
latest schema version plus the ``Meta`` sheet, so the record store opens it
without running any upgrade step.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence
import sys

from . import data_manager, log, migrations
from .constants import SCHEMA_VERSION


def create_store_workbook_file(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty store workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing store workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook = migrations.create_store_workbook(SCHEMA_VERSION)
    data_manager.save_workbook(workbook, destination)
    log.info("Created store workbook '%s' at schema v%d", destination, SCHEMA_VERSION)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_store_workbook_file(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pos-setup", description="Create an empty POS store workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="INI file whose [System] DataFile names the workbook (default: %(default)s)",
    )
    parser.add_argument("--force", action="store_true", help="Replace a workbook that already exists.")
    return parser.parse_args(argv)


def _failure_hint(exc: Exception) -> str:
    if isinstance(exc, FileExistsError):
        return f"{exc}\nPass --force to replace it."
    if isinstance(exc, (data_manager.StorageError, OSError)) and not isinstance(exc, FileNotFoundError):
        return f"Unable to write workbook: {exc}"
    return str(exc)


def main(argv: Sequence[str] | None = None) -> int:
    """Create the configured workbook and report the outcome on stdout."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    print(f"pos-setup: reading {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, FileExistsError, KeyError, data_manager.StorageError, OSError) as exc:
        log.error("Workbook setup failed: %s", exc)
        print(f"[ERROR] {_failure_hint(exc)}")
        return 1

    print(f"[SUCCESS] Store workbook ready at '{output_path}'.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Utility for initializing the shop ledger workbook.

The module doubles as a script (``python -m shop_ledger.setup_workbook``) and
as a library used by tests or other tooling.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from . import core_logic, data_manager

CONFIG_FILE = "config.ini"


def create_ledger_workbook(destination: Path, *, overwrite: bool = False, seed_payment_terms: bool = True) -> Path:
    """Create an empty ledger workbook at ``destination``.

    The workbook is built at the current schema version and, unless disabled,
    holds the default payment terms. When ``overwrite`` is ``False`` (the
    default) an existing file is left alone and ``FileExistsError`` is raised.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    workbook = data_manager.create_workbook()
    settings = data_manager.ConfigSettings(
        data_file=destination,
        business_name="",
        autosave=False,
        seed_payment_terms=seed_payment_terms,
    )
    context = core_logic.RuntimeContext(settings=settings, workbook=workbook)
    if seed_payment_terms:
        core_logic.seed_default_payment_terms(context)
    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``'s ``DataFile`` entry."""

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_ledger_workbook(
        settings.data_file,
        overwrite=overwrite,
        seed_payment_terms=settings.seed_payment_terms,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the shop ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config)

    print("--- Shop Ledger Setup ---")
    print(f"Using configuration: {config_path.expanduser().resolve()}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except data_manager.StorageFailure as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())

"""Utility for initializing a tenant workbook.

The module doubles as a script (``retail-ledger-setup``) and as a library
used by tests or other tooling. The empty workbook carries one sheet per
collection; an owner can be seeded so the tenant is usable straight away.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from . import data_manager
from .constants import CollectionName, Role


def create_tenant_workbook(
    destination: Path,
    *,
    owner: Optional[data_manager.User] = None,
    overwrite: bool = False,
) -> Path:
    """Create an empty tenant workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing tenant workbook: {destination}")

    workbook = data_manager.initialize_workbook()
    if owner is not None:
        if owner.role is not Role.OWNER:
            raise ValueError("The seeded user must hold the Owner role")
        data_manager.replace_records(workbook, CollectionName.USERS.value, [owner])

    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(
    config_path: Path,
    *,
    owner: Optional[data_manager.User] = None,
    overwrite: bool = False,
) -> Path:
    """Create the workbook for the tenant named in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=Path(config_path).expanduser().resolve().parent)
    store = data_manager.WorkbookStore(directory=settings.data_directory)
    return create_tenant_workbook(store.workbook_path(settings.tenant_id), owner=owner, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize a retail ledger tenant workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--owner-id", help="Seed an owner user with this identifier.")
    parser.add_argument("--owner-name", default="Owner", help="Display name of the seeded owner.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    owner = (
        data_manager.User(user_id=args.owner_id, name=args.owner_name, role=Role.OWNER)
        if args.owner_id
        else None
    )

    print("--- Retail Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, owner=owner, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created tenant workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())

"""Create empty Smart Till store files from ``config.ini``."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence

from . import data_manager
from .constants import CATALOG_HEADER, CUSTOMER_HEADER, SALES_HEADER
from .data_manager import ConfigSettings, ProductRecord


DEMO_CATALOG = (
    ProductRecord("Rice", Decimal("40.00"), 100, "10000001", "Grocery", "Golden Harvest", 10),
    ProductRecord("Lentils", Decimal("120.00"), 40, "10000002", "Grocery", "Golden Harvest", 8),
    ProductRecord("Soybean Oil", Decimal("185.00"), 24, "10000003", "Grocery", None, 6),
    ProductRecord("Milk", Decimal("90.00"), 30, "20000001", "Dairy", "Fresh Farm", 10),
    ProductRecord("Bread", Decimal("55.00"), 4, None, "Bakery", None, 5),
    ProductRecord("Soap", Decimal("35.00"), 60, "30000001", "Household", None, 5),
)


def create_stores(settings: ConfigSettings, *, force: bool = False, demo: bool = False) -> list[Path]:
    """Create the catalog, customer and sales stores with header lines only.

    Args:
        settings (ConfigSettings): Parsed configuration naming the store paths.
        force (bool): Overwrite stores that already exist.
        demo (bool): Seed the catalog with a handful of demo products.

    Returns:
        list[Path]: The store files that were written.

    Raises:
        FileExistsError: If a store exists and ``force`` is ``False``. No file
            is touched in that case.
    """
    stores = (
        (settings.catalog_file, CATALOG_HEADER),
        (settings.customers_file, CUSTOMER_HEADER),
        (settings.sales_file, SALES_HEADER),
    )
    existing = [path for path, _ in stores if path.exists()]
    if existing and not force:
        raise FileExistsError(
            "Refusing to overwrite existing store(s): " + ", ".join(str(path) for path in existing)
        )

    created = [data_manager.initialize_store(path, header, overwrite=force) for path, header in stores]
    if demo:
        data_manager.save_products(settings.catalog_file, DEMO_CATALOG)
    return created


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="till-setup",
        description="Initialize empty Smart Till store files.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Optional path to config.ini.")
    parser.add_argument("--force", action="store_true", help="Overwrite existing store files.")
    parser.add_argument("--demo", action="store_true", help="Seed the catalog with demo products.")
    args = parser.parse_args(argv)

    print("Initializing Smart Till stores...")
    config_path: Optional[Path] = data_manager.find_config_file(args.config)
    config_path = Path(config_path).expanduser().resolve()
    settings = data_manager.parse_settings(data_manager.read_config(config_path), base_path=config_path.parent)

    try:
        created = create_stores(settings, force=args.force, demo=args.demo)
    except FileExistsError as exc:
        print(f"Error: {exc}. Use --force to re-initialize.")
        return 1
    except data_manager.PersistenceFailure as exc:
        print(f"An error occurred while writing the stores: {exc}")
        return 1

    for path in created:
        print(f"Created store: '{path}'")
    if args.demo:
        print(f"Added {len(DEMO_CATALOG)} demo products to the catalog.")
    print(f"\nSuccessfully initialized stores for '{settings.store_name}'.")
    print("You can now run 'till-cli' to ring up sales.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

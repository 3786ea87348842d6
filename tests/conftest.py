"""Shared pytest fixtures and utilities for Smart Till tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Iterator, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from smart_till import cli, constants, core_logic, data_manager  # noqa: E402
from smart_till.data_manager import CustomerRecord, ProductRecord  # noqa: E402
from smart_till.setup_stores import create_stores  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDir = {data_dir}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Pricing]\n"
    "LowStockThreshold = 5\n"
)

RICE = ProductRecord("Rice", Decimal("40.00"), 100, "12345678", "Grocery", "Golden Harvest", 5)
MILK = ProductRecord("Milk", Decimal("90.00"), 30, None, "Dairy", None, 10)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    schema_version: str
    store_name: str


class SequentialIds:
    """Deterministic customer id source recording every ledger it was shown."""

    def __init__(self, prefix: str = "TEST", start: int = 1) -> None:
        self.prefix = prefix
        self.next_value = start
        self.calls: list[int] = []

    def __call__(self, existing: Sequence[CustomerRecord] = ()) -> str:
        self.calls.append(len(existing))
        value = self.next_value
        self.next_value += 1
        return f"{self.prefix}{value}"


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/store bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = True,
        store_name: str = "Test Mart",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        initialize: bool = True,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = bundle_dir / "data"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_dir="data" if make_relative else str(data_dir),
                store_name=store_name,
                schema_version=schema_version,
            ),
            encoding="utf-8",
        )
        if initialize:
            parser = data_manager.read_config(config_path)
            create_stores(data_manager.parse_settings(parser, base_path=bundle_dir))
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir.resolve(),
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def id_generator() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def runtime_context(config_file: Path, id_generator: SequentialIds) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, id_generator=id_generator)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def seed_catalog(runtime_context: core_logic.RuntimeContext) -> Callable[..., list[ProductRecord]]:
    """Write the given products (Rice and Milk by default) to the catalog."""

    def _seed(products: Iterable[ProductRecord] = (RICE, MILK)) -> list[ProductRecord]:
        records = list(products)
        data_manager.save_products(runtime_context.settings.catalog_file, records)
        return records

    return _seed


@pytest.fixture
def seed_customers(runtime_context: core_logic.RuntimeContext) -> Callable[..., list[CustomerRecord]]:
    """Write the given customers to the ledger."""

    def _seed(customers: Iterable[CustomerRecord]) -> list[CustomerRecord]:
        records = list(customers)
        data_manager.save_customers(runtime_context.settings.customers_file, records)
        return records

    return _seed


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="till-cli", description="Till CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply

"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, List
from unittest.mock import AsyncMock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from stock_ledger.constants import ActivityType, SignalKind  # noqa: E402
from stock_ledger.domain import Activity, DataQualitySignal, Product  # noqa: E402
from stock_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "LowStockThreshold = {low_stock_threshold}\n"
    "PageSize = {page_size}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


class RecordingSink:
    """Data-quality sink that keeps every signal in memory."""

    def __init__(self) -> None:
        self.signals: List[DataQualitySignal] = []

    def emit(self, signal: DataQualitySignal) -> None:
        self.signals.append(signal)

    def of_kind(self, kind: SignalKind) -> List[DataQualitySignal]:
        return [signal for signal in self.signals if signal.kind == kind]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_activity() -> Callable[..., Activity]:
    """Build activities with sensible defaults; keyword arguments override."""

    def _make(**overrides) -> Activity:
        values = {
            "activity_id": f"A-{uuid.uuid4().hex[:8]}",
            "date": "2025-01-15T10:00:00.000Z",
            "activity_type": ActivityType.SALE,
            "product_id": "P1",
            "quantity": Decimal("-1"),
            "amount": Decimal("20"),
            "note": None,
        }
        values.update(overrides)
        for name in ("quantity", "amount"):
            values[name] = Decimal(str(values[name]))
        return Activity(**values)

    return _make


@pytest.fixture
def make_product() -> Callable[..., Product]:
    """Build products with sensible defaults; keyword arguments override."""

    def _make(product_id: str = "P1", **overrides) -> Product:
        values = {
            "unit_cost": Decimal("10"),
            "sale_price": Decimal("20"),
            "stock": Decimal("10"),
        }
        values.update(overrides)
        for name in ("unit_cost", "sale_price", "stock"):
            values[name] = Decimal(str(values[name]))
        return Product(product_id=product_id, **values)

    return _make


# ---------------------------------------------------------------------------
# Store doubles
# ---------------------------------------------------------------------------


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def activity_store() -> AsyncMock:
    return AsyncMock(name="activities")


@pytest.fixture
def product_store() -> AsyncMock:
    return AsyncMock(name="products")


@pytest.fixture
def cost_store() -> AsyncMock:
    store = AsyncMock(name="costs")
    store.get_monthly_cost.return_value = None
    return store


@pytest.fixture
def context(activity_store, product_store, cost_store, sink) -> core_logic.RuntimeContext:
    """Runtime context wired to AsyncMock stores and a recording sink."""

    return core_logic.RuntimeContext(
        activities=activity_store,
        products=product_store,
        costs=cost_store,
        sink=sink,
    )


@pytest.fixture
def ledger_context(context, activity_store, product_store):
    """Return a helper that seeds the store doubles' ``list`` results."""

    def _seed(activities=(), products=()) -> core_logic.RuntimeContext:
        activity_store.list.return_value = list(activities)
        product_store.list.return_value = list(products)
        return context

    return _seed


# ---------------------------------------------------------------------------
# Workbook fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def workbook(master_workbook_path: Path):
    """Opened openpyxl workbook with every ledger sheet and no data rows."""

    return data_manager.open_workbook(master_workbook_path)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        low_stock_threshold: int = constants.DEFAULT_LOW_STOCK_THRESHOLD,
        page_size: int = constants.DEFAULT_PAGE_SIZE,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                low_stock_threshold=low_stock_threshold,
                page_size=page_size,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path, sink: RecordingSink) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file, sink=sink)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    async def _noop(*_):
        return 0

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            _noop,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]

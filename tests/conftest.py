"""Shared pytest fixtures and utilities for the warehouse returns tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import openpyxl
import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from wms_returns import cli, constants, core_logic, data_manager  # noqa: E402
from wms_returns.setup_workbook import create_master_workbook  # noqa: E402
from wms_returns.store import WorkbookStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "WarehouseName = {warehouse_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Transactions]\n"
    "MaxAttempts = 3\n"
    "BackoffSeconds = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    warehouse_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "wms_master.xlsx") -> Path:
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
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        warehouse_name: str = "Test Warehouse",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                warehouse_name=warehouse_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            warehouse_name=warehouse_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a file-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "wms_master.xlsx",
        warehouse_name="Test Warehouse",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        max_attempts=3,
        backoff_seconds=0.0,
    )


@pytest.fixture
def memory_store(master_workbook_path: Path) -> WorkbookStore:
    """Store over a freshly bootstrapped workbook that never touches disk."""

    workbook = openpyxl.load_workbook(master_workbook_path)
    return WorkbookStore(workbook, max_attempts=3, backoff_seconds=0.0, sleep=lambda _: None)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, memory_store: WorkbookStore) -> core_logic.RuntimeContext:
    """Assemble an in-memory runtime context."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)


def make_stock(
    stock_id: str = "P1",
    *,
    count: int = 10,
    brand: str = "Honda",
    motor_type: str = "Beat",
    part: str = "Front Fender",
    available_color: str = "Red",
    supplier_id: str = "SUP-1",
    warehouse_position: str = constants.Warehouse.FINISHED_GOODS.value,
    sell_price: Decimal = Decimal("1000"),
    purchase_price: Decimal = Decimal("700"),
) -> data_manager.StockRecord:
    return data_manager.StockRecord(
        stock_id=stock_id,
        brand=brand,
        motor_type=motor_type,
        part=part,
        available_color=available_color,
        supplier_id=supplier_id,
        warehouse_position=warehouse_position,
        count=count,
        sell_price=sell_price,
        purchase_price=purchase_price,
    )


def make_broken(
    broken_id: str = "BP1",
    *,
    count: int = 4,
    warehouse_position: str = constants.Warehouse.FINISHED_GOODS.value,
    brand: str = "Honda",
    available_color: str = "Red",
) -> data_manager.BrokenProductRecord:
    return data_manager.BrokenProductRecord(
        broken_id=broken_id,
        brand=brand,
        motor_type="Beat",
        part="Front Fender",
        available_color=available_color,
        supplier_id="SUP-1",
        warehouse_position=warehouse_position,
        count=count,
        sell_price=Decimal("1000"),
    )


def make_invoice(
    invoice_id: str = "INV-001",
    *,
    items: tuple[data_manager.LineItem, ...] | None = None,
    total_price: Decimal | None = None,
    customer_id: str = "C1",
) -> data_manager.InvoiceRecord:
    if items is None:
        items = (data_manager.LineItem(product_id="P1", amount=5, price=Decimal("1000"), product_name="Front Fender"),)
    if total_price is None:
        total_price = sum((item.subtotal for item in items), Decimal("0"))
    return data_manager.InvoiceRecord(
        invoice_id=invoice_id,
        customer_id=customer_id,
        customer_name="Toko Jaya",
        total_price=total_price,
        payment_method=constants.PaymentMethod.CASH.value,
        items=items,
        date="2026-10-01",
    )


@pytest.fixture
def seed(memory_store: WorkbookStore) -> Callable[..., None]:
    """Write records straight into the in-memory store."""

    def _seed(*records: object) -> None:
        for record in records:
            if isinstance(record, data_manager.StockRecord):
                memory_store.set("product", data_manager.serialize_stock(record))
            elif isinstance(record, data_manager.InvoiceRecord):
                memory_store.set("invoice", data_manager.serialize_invoice(record))
            elif isinstance(record, data_manager.BrokenProductRecord):
                memory_store.set("broken_product", data_manager.serialize_broken_product(record))
            elif isinstance(record, data_manager.CustomerRecord):
                memory_store.set("customer", data_manager.serialize_customer(record))
            else:
                raise TypeError(f"Cannot seed {type(record).__name__}")

    return _seed


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


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="wms-cli", description="Warehouse CLI")


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

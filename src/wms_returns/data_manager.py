"""Data access layer for the warehouse returns engine.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record types: frozen dataclasses for every collection together with
   ``serialize_*``/``deserialize_*`` converters to and from plain documents.
4. Sheet operations: iterating documents and inserting, updating, or
   deleting individual rows keyed by the ``id`` column.
"""


from __future__ import annotations

import configparser
import json
import os
import tempfile
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CollectionName, META_SHEET, Warehouse


CONFIG_FILE_NAME = "config.ini"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 0.05
ID_COLUMN = "id"
REVISION_KEY = "revision"
SCHEMA_VERSION_KEY = "schema_version"

Document = Dict[str, Any]

_IDENTITY_COLUMNS = [
    "brand",
    "motor_type",
    "part",
    "available_color",
    "supplier_id",
]

COLLECTION_COLUMNS: Mapping[str, Sequence[str]] = {
    CollectionName.PRODUCT.value: [
        ID_COLUMN,
        *_IDENTITY_COLUMNS,
        "warehouse_position",
        "count",
        "sell_price",
        "purchase_price",
    ],
    CollectionName.BROKEN_PRODUCT.value: [
        ID_COLUMN,
        *_IDENTITY_COLUMNS,
        "warehouse_position",
        "count",
        "sell_price",
    ],
    CollectionName.RETURNED_PRODUCT.value: [
        ID_COLUMN,
        *_IDENTITY_COLUMNS,
        "count",
    ],
    CollectionName.INVOICE.value: [
        ID_COLUMN,
        "customer_id",
        "customer_name",
        "date",
        "total_price",
        "payment_method",
        "items",
    ],
    CollectionName.VOID_INVOICE.value: [
        ID_COLUMN,
        "customer_id",
        "customer_name",
        "date",
        "total_price",
        "payment_method",
        "items",
        "voided_at",
    ],
    CollectionName.PENDING_TRANSACTION.value: [
        ID_COLUMN,
        "customer_id",
        "customer_name",
        "total_price",
        "payment_method",
        "items",
        "staged_at",
    ],
    CollectionName.DISPATCH_NOTE.value: [
        ID_COLUMN,
        "date",
        "painter",
        "dispatch_items",
    ],
    CollectionName.ON_DISPATCH.value: [
        ID_COLUMN,
        "product_id",
        *_IDENTITY_COLUMNS,
        "warehouse_position",
        "count",
        "status",
        "dispatch_note_id",
        "sell_price",
    ],
    CollectionName.CUSTOMER.value: [
        ID_COLUMN,
        "customer_name",
        "special_prices",
    ],
}

# Columns holding nested sequences, stored as JSON text in a single cell.
JSON_COLUMNS = frozenset({"items", "dispatch_items", "special_prices"})


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    warehouse_name: str
    schema_version: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS


@dataclass(frozen=True)
class ProductIdentity:
    """Composite key deciding whether two stock rows are the same product.

    Matching is exact and case-sensitive on all six fields.
    """

    brand: str
    motor_type: str
    part: str
    available_color: str
    supplier_id: str
    warehouse_position: str

    def pinned_to(self, warehouse: Warehouse) -> "ProductIdentity":
        return replace(self, warehouse_position=warehouse.value)

    def matches(self, document: Mapping[str, Any]) -> bool:
        return all(
            _to_text(document.get(name)) == getattr(self, name)
            for name in (*_IDENTITY_COLUMNS, "warehouse_position")
        )

    def supplier_key(self) -> str:
        """Key used by the supplier-facing returned-product ledger."""
        return "|".join(getattr(self, name) for name in _IDENTITY_COLUMNS)


@dataclass(frozen=True)
class StockRecord:
    """In-memory view of a row from the ``product`` sheet."""

    stock_id: str
    brand: str
    motor_type: str
    part: str
    available_color: str
    supplier_id: str
    warehouse_position: str
    count: int
    sell_price: Decimal
    purchase_price: Decimal

    @property
    def identity(self) -> ProductIdentity:
        return _identity_of(self)


@dataclass(frozen=True)
class BrokenProductRecord:
    """Aggregated defective stock for one product identity."""

    broken_id: str
    brand: str
    motor_type: str
    part: str
    available_color: str
    supplier_id: str
    warehouse_position: str
    count: int
    sell_price: Decimal

    @property
    def identity(self) -> ProductIdentity:
        return _identity_of(self)


@dataclass(frozen=True)
class ReturnedProductRecord:
    """Supplier-facing restock count, keyed by :meth:`ProductIdentity.supplier_key`."""

    returned_id: str
    brand: str
    motor_type: str
    part: str
    available_color: str
    supplier_id: str
    count: int


@dataclass(frozen=True)
class LineItem:
    """One product line on an invoice."""

    product_id: str
    amount: int
    price: Decimal
    product_name: str = ""
    warehouse_position: str = ""
    is_returned: bool = False

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.amount


@dataclass(frozen=True)
class InvoiceRecord:
    """In-memory view of a row from the ``invoice`` sheet."""

    invoice_id: str
    customer_id: str
    customer_name: str
    total_price: Decimal
    payment_method: str
    items: Tuple[LineItem, ...]
    date: Optional[str] = None


@dataclass(frozen=True)
class VoidedInvoiceRecord:
    """Immutable snapshot of a voided invoice."""

    invoice_id: str
    customer_id: str
    customer_name: str
    total_price: Decimal
    payment_method: str
    items: Tuple[LineItem, ...]
    date: Optional[str]
    voided_at: str


@dataclass(frozen=True)
class PendingReplacementRecord:
    """Replacement transaction staged after a void, keyed by the voided invoice."""

    voided_invoice_id: str
    customer_id: str
    customer_name: str
    total_price: Decimal
    payment_method: str
    items: Tuple[LineItem, ...]
    staged_at: str


@dataclass(frozen=True)
class DispatchItem:
    amount: int
    color: str
    product_id: str


@dataclass(frozen=True)
class DispatchNoteRecord:
    """Note handed to a painter together with the goods to rework."""

    dispatch_note_id: str
    date: str
    painter: str
    dispatch_items: Tuple[DispatchItem, ...]


@dataclass(frozen=True)
class InProcessStockRecord:
    """Stock sitting with a painter, tracked apart from the sellable ledger."""

    record_id: str
    product_id: str
    brand: str
    motor_type: str
    part: str
    available_color: str
    supplier_id: str
    warehouse_position: str
    count: int
    status: str
    dispatch_note_id: str
    sell_price: Decimal


@dataclass(frozen=True)
class SpecialPrice:
    product_id: str
    price: Decimal


@dataclass(frozen=True)
class CustomerRecord:
    """Customer with optional negotiated per-product prices."""

    customer_id: str
    customer_name: str
    special_prices: Tuple[SpecialPrice, ...] = ()


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Transactions]`` section is
    optional and tunes the retry budget of the record store. Relative
    ``DataFile`` entries are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If a ``[Transactions]`` value is not a valid number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        warehouse_name = parser.get("System", "WarehouseName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_attempts = parser.getint(
        "Transactions", "MaxAttempts", fallback=DEFAULT_MAX_ATTEMPTS)
    backoff_seconds = parser.getfloat(
        "Transactions", "BackoffSeconds", fallback=DEFAULT_BACKOFF_SECONDS)
    if max_attempts < 1:
        raise ValueError("MaxAttempts must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        warehouse_name=warehouse_name,
        schema_version=schema_version,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook by writing a sibling temp file and swapping it in.

    Readers never observe a partially written workbook: the file at
    ``destination`` is either the previous version or the new one.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        workbook.save(tmp_path)
        tmp_path.replace(dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any in-memory changes."""

    return open_workbook(data_file)


def read_revision(workbook: Workbook) -> int:
    """Return the commit counter stored on the ``Meta`` sheet (0 when absent)."""

    if META_SHEET not in workbook.sheetnames:
        return 0
    for key, value in workbook[META_SHEET].iter_rows(min_row=2, max_col=2, values_only=True):
        if key == REVISION_KEY:
            return _to_int(value)
    return 0


def read_schema_version(workbook: Workbook) -> Optional[str]:
    """Return the schema version recorded on the ``Meta`` sheet, if any."""

    if META_SHEET not in workbook.sheetnames:
        return None
    for key, value in workbook[META_SHEET].iter_rows(min_row=2, max_col=2, values_only=True):
        if key == SCHEMA_VERSION_KEY:
            return _to_optional_text(value)
    return None


def read_revision_from_file(data_file: Path) -> int:
    """Read the commit counter straight from disk without keeping the file open."""

    workbook = openpyxl.load_workbook(Path(data_file), read_only=True)
    try:
        return read_revision(workbook)
    finally:
        workbook.close()


def write_revision(workbook: Workbook, revision: int) -> None:
    """Store ``revision`` on the ``Meta`` sheet, creating the row if needed."""

    if META_SHEET not in workbook.sheetnames:
        sheet = workbook.create_sheet(title=META_SHEET)
        sheet.append(["key", "value"])
    sheet = workbook[META_SHEET]
    for row in sheet.iter_rows(min_row=2, max_col=2):
        if row[0].value == REVISION_KEY:
            row[1].value = revision
            return
    sheet.append([REVISION_KEY, revision])


def header_map(workbook: Workbook, collection: str) -> Dict[str, int]:
    """Map header titles of ``collection`` to 1-based column indices.

    Raises:
        KeyError: If the workbook has no sheet for ``collection``.
    """

    if collection not in workbook.sheetnames:
        raise KeyError(f"Unknown collection: {collection}")
    sheet = workbook[collection]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_documents(workbook: Workbook, collection: str) -> Iterable[Document]:
    """Stream every populated row of ``collection`` as a decoded document.

    Header and fully empty rows are skipped. JSON columns are decoded into
    Python lists; all other cells are passed through unchanged.
    """

    headers = header_map(workbook, collection)
    names = sorted(headers, key=headers.get)
    sheet = workbook[collection]
    for raw in sheet.iter_rows(min_row=2, max_col=len(names), values_only=True):
        if any(cell is not None for cell in raw):
            yield {name: decode_cell(name, value) for name, value in zip(names, raw)}


def locate_row(workbook: Workbook, collection: str, record_id: str) -> Optional[int]:
    """Find the 1-based row index of the document whose ``id`` equals ``record_id``.

    Returns:
        int | None: Row index when a match is found, otherwise ``None``.
    """

    headers = header_map(workbook, collection)
    if ID_COLUMN not in headers:
        raise KeyError(f"Collection '{collection}' has no '{ID_COLUMN}' column")
    key_col_index = headers[ID_COLUMN]
    sheet = workbook[collection]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(row) >= key_col_index and _to_text(row[key_col_index - 1]) == record_id:
            return row_idx
    return None


def write_document(workbook: Workbook, collection: str, document: Mapping[str, Any]) -> None:
    """Insert ``document`` or overwrite the row that already carries its ``id``.

    Raises:
        KeyError: If the document has a field the sheet has no column for.
    """

    headers = header_map(workbook, collection)
    unknown = set(document) - set(headers)
    if unknown:
        raise KeyError(f"Unknown {collection} field(s): {', '.join(sorted(unknown))}")

    sheet = workbook[collection]
    row_index = locate_row(workbook, collection, str(document[ID_COLUMN]))
    if row_index is None:
        row_index = sheet.max_row + 1
    for name, col in headers.items():
        sheet.cell(row=row_index, column=col, value=encode_cell(name, document.get(name)))


def update_document(workbook: Workbook, collection: str, record_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns for an existing document.

    Raises:
        KeyError: If the document or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, collection, record_id)
    if row_index is None:
        raise KeyError(f"{collection} not found: {record_id}")

    headers = header_map(workbook, collection)
    sheet = workbook[collection]
    for name, value in field_values.items():
        if name not in headers:
            raise KeyError(f"Unknown {collection} field: {name}")
        sheet.cell(row=row_index, column=headers[name], value=encode_cell(name, value))


def delete_document(workbook: Workbook, collection: str, record_id: str) -> bool:
    """Remove the row for ``record_id``; returns ``False`` when nothing matched."""

    row_index = locate_row(workbook, collection, record_id)
    if row_index is None:
        return False
    workbook[collection].delete_rows(row_index)
    return True


def encode_cell(name: str, value: Any) -> Any:
    """Convert a document value into something openpyxl can store losslessly."""

    if name in JSON_COLUMNS:
        return json.dumps(value if value is not None else [], default=str)
    if isinstance(value, Decimal):
        return str(value)
    return value


def decode_cell(name: str, value: Any) -> Any:
    if name in JSON_COLUMNS:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                log.error("Corrupt JSON in column '%s': %r", name, value)
                raise
        return value
    return value


# ---------------------------------------------------------------------------
# Record converters
# ---------------------------------------------------------------------------


def serialize_stock(record: StockRecord) -> Document:
    return {
        ID_COLUMN: record.stock_id,
        **_identity_fields(record),
        "warehouse_position": record.warehouse_position,
        "count": record.count,
        "sell_price": record.sell_price,
        "purchase_price": record.purchase_price,
    }


def deserialize_stock(document: Mapping[str, Any]) -> StockRecord:
    """Convert a ``product`` document into a :class:`StockRecord`.

    Counts arrive as text in older workbooks, so every numeric field is
    coerced explicitly.
    """

    return StockRecord(
        stock_id=_to_text(document.get(ID_COLUMN)),
        **_read_identity(document),
        warehouse_position=_to_text(document.get("warehouse_position")),
        count=_to_int(document.get("count")),
        sell_price=_to_decimal(document.get("sell_price")),
        purchase_price=_to_decimal(document.get("purchase_price")),
    )


def serialize_broken_product(record: BrokenProductRecord) -> Document:
    return {
        ID_COLUMN: record.broken_id,
        **_identity_fields(record),
        "warehouse_position": record.warehouse_position,
        "count": record.count,
        "sell_price": record.sell_price,
    }


def deserialize_broken_product(document: Mapping[str, Any]) -> BrokenProductRecord:
    return BrokenProductRecord(
        broken_id=_to_text(document.get(ID_COLUMN)),
        **_read_identity(document),
        warehouse_position=_to_text(document.get("warehouse_position")),
        count=_to_int(document.get("count")),
        sell_price=_to_decimal(document.get("sell_price")),
    )


def serialize_returned_product(record: ReturnedProductRecord) -> Document:
    return {
        ID_COLUMN: record.returned_id,
        **_identity_fields(record),
        "count": record.count,
    }


def deserialize_returned_product(document: Mapping[str, Any]) -> ReturnedProductRecord:
    return ReturnedProductRecord(
        returned_id=_to_text(document.get(ID_COLUMN)),
        **_read_identity(document),
        count=_to_int(document.get("count")),
    )


def serialize_line_item(item: LineItem) -> Document:
    return {
        "product_id": item.product_id,
        "amount": item.amount,
        "price": str(item.price),
        "product_name": item.product_name,
        "warehouse_position": item.warehouse_position,
        "is_returned": item.is_returned,
    }


def deserialize_line_item(raw: Mapping[str, Any]) -> LineItem:
    return LineItem(
        product_id=_to_text(raw.get("product_id")),
        amount=_to_int(raw.get("amount")),
        price=_to_decimal(raw.get("price")),
        product_name=_to_text(raw.get("product_name")),
        warehouse_position=_to_text(raw.get("warehouse_position")),
        is_returned=_to_bool(raw.get("is_returned")),
    )


def serialize_invoice(record: InvoiceRecord) -> Document:
    return {
        ID_COLUMN: record.invoice_id,
        "customer_id": record.customer_id,
        "customer_name": record.customer_name,
        "date": record.date,
        "total_price": record.total_price,
        "payment_method": record.payment_method,
        "items": [serialize_line_item(item) for item in record.items],
    }


def deserialize_invoice(document: Mapping[str, Any]) -> InvoiceRecord:
    """Convert an ``invoice`` document into an :class:`InvoiceRecord`.

    Line items keep their stored order, which is the order the operator sees.
    """

    return InvoiceRecord(
        invoice_id=_to_text(document.get(ID_COLUMN)),
        customer_id=_to_text(document.get("customer_id")),
        customer_name=_to_text(document.get("customer_name")),
        total_price=_to_decimal(document.get("total_price")),
        payment_method=_to_text(document.get("payment_method")),
        items=tuple(deserialize_line_item(raw) for raw in document.get("items") or []),
        date=_to_optional_text(document.get("date")),
    )


def serialize_voided_invoice(record: VoidedInvoiceRecord) -> Document:
    return {
        ID_COLUMN: record.invoice_id,
        "customer_id": record.customer_id,
        "customer_name": record.customer_name,
        "date": record.date,
        "total_price": record.total_price,
        "payment_method": record.payment_method,
        "items": [serialize_line_item(item) for item in record.items],
        "voided_at": record.voided_at,
    }


def deserialize_voided_invoice(document: Mapping[str, Any]) -> VoidedInvoiceRecord:
    return VoidedInvoiceRecord(
        invoice_id=_to_text(document.get(ID_COLUMN)),
        customer_id=_to_text(document.get("customer_id")),
        customer_name=_to_text(document.get("customer_name")),
        total_price=_to_decimal(document.get("total_price")),
        payment_method=_to_text(document.get("payment_method")),
        items=tuple(deserialize_line_item(raw) for raw in document.get("items") or []),
        date=_to_optional_text(document.get("date")),
        voided_at=_to_text(document.get("voided_at")),
    )


def serialize_pending_replacement(record: PendingReplacementRecord) -> Document:
    return {
        ID_COLUMN: record.voided_invoice_id,
        "customer_id": record.customer_id,
        "customer_name": record.customer_name,
        "total_price": record.total_price,
        "payment_method": record.payment_method,
        "items": [serialize_line_item(item) for item in record.items],
        "staged_at": record.staged_at,
    }


def deserialize_pending_replacement(document: Mapping[str, Any]) -> PendingReplacementRecord:
    return PendingReplacementRecord(
        voided_invoice_id=_to_text(document.get(ID_COLUMN)),
        customer_id=_to_text(document.get("customer_id")),
        customer_name=_to_text(document.get("customer_name")),
        total_price=_to_decimal(document.get("total_price")),
        payment_method=_to_text(document.get("payment_method")),
        items=tuple(deserialize_line_item(raw) for raw in document.get("items") or []),
        staged_at=_to_text(document.get("staged_at")),
    )


def serialize_dispatch_note(record: DispatchNoteRecord) -> Document:
    return {
        ID_COLUMN: record.dispatch_note_id,
        "date": record.date,
        "painter": record.painter,
        "dispatch_items": [
            {"amount": item.amount, "color": item.color, "product_id": item.product_id}
            for item in record.dispatch_items
        ],
    }


def deserialize_dispatch_note(document: Mapping[str, Any]) -> DispatchNoteRecord:
    return DispatchNoteRecord(
        dispatch_note_id=_to_text(document.get(ID_COLUMN)),
        date=_to_text(document.get("date")),
        painter=_to_text(document.get("painter")),
        dispatch_items=tuple(
            DispatchItem(
                amount=_to_int(raw.get("amount")),
                color=_to_text(raw.get("color")),
                product_id=_to_text(raw.get("product_id")),
            )
            for raw in document.get("dispatch_items") or []
        ),
    )


def serialize_in_process_stock(record: InProcessStockRecord) -> Document:
    return {
        ID_COLUMN: record.record_id,
        "product_id": record.product_id,
        **_identity_fields(record),
        "warehouse_position": record.warehouse_position,
        "count": record.count,
        "status": record.status,
        "dispatch_note_id": record.dispatch_note_id,
        "sell_price": record.sell_price,
    }


def deserialize_in_process_stock(document: Mapping[str, Any]) -> InProcessStockRecord:
    return InProcessStockRecord(
        record_id=_to_text(document.get(ID_COLUMN)),
        product_id=_to_text(document.get("product_id")),
        **_read_identity(document),
        warehouse_position=_to_text(document.get("warehouse_position")),
        count=_to_int(document.get("count")),
        status=_to_text(document.get("status")),
        dispatch_note_id=_to_text(document.get("dispatch_note_id")),
        sell_price=_to_decimal(document.get("sell_price")),
    )


def serialize_customer(record: CustomerRecord) -> Document:
    return {
        ID_COLUMN: record.customer_id,
        "customer_name": record.customer_name,
        "special_prices": [
            {"product_id": special.product_id, "price": str(special.price)}
            for special in record.special_prices
        ],
    }


def deserialize_customer(document: Mapping[str, Any]) -> CustomerRecord:
    return CustomerRecord(
        customer_id=_to_text(document.get(ID_COLUMN)),
        customer_name=_to_text(document.get("customer_name")),
        special_prices=tuple(
            SpecialPrice(product_id=_to_text(raw.get("product_id")), price=_to_decimal(raw.get("price")))
            for raw in document.get("special_prices") or []
        ),
    )


def _identity_of(record: Any) -> ProductIdentity:
    return ProductIdentity(
        **{name: getattr(record, name) for name in _IDENTITY_COLUMNS},
        warehouse_position=record.warehouse_position,
    )


def _identity_fields(record: Any) -> Document:
    return {name: getattr(record, name) for name in _IDENTITY_COLUMNS}


def _read_identity(document: Mapping[str, Any]) -> Dict[str, str]:
    return {name: _to_text(document.get(name)) for name in _IDENTITY_COLUMNS}


def _to_text(raw: Any) -> str:
    return "" if raw is None else str(raw)


def _to_optional_text(raw: Any) -> Optional[str]:
    return None if raw is None or raw == "" else str(raw)


def _to_int(raw: Any) -> int:
    if raw is None or raw == "":
        return 0
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a whole number: {raw!r}") from exc
    if value != value.to_integral_value():
        raise ValueError(f"Not a whole number: {raw!r}")
    return int(value)


def _to_decimal(raw: Any) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {raw!r}") from exc


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)

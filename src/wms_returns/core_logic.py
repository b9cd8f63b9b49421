"""Business logic layer for the warehouse returns engine.

This module contains the Return/Exchange/Void transaction engine and the
disposition rules for broken products. It consumes the record store for all
I/O; every mutating workflow runs inside a single
:meth:`~wms_returns.store.WorkbookStore.run_atomic` call so the invoice, the
stock ledger, and the broken-product ledger change together or not at all.

Each mode is split into a pure planner (current records in, new records
out) and a thin transaction body that reads, plans, and buffers the writes.
Transaction bodies may be re-run by the store on conflict, so they only
touch the transaction handle.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    CollectionName,
    DispositionReason,
    Mode,
    PaymentMethod,
    StockStatus,
    Warehouse,
)
from .errors import (
    EngineError,
    InsufficientStock,
    InvalidDisposition,
    InvalidSelection,
    InvoiceNotFound,
    MissingReferenceError,
    TotalPriceMismatch,
)
from .store import RecordStore, Transaction, WorkbookStore


PRODUCT = CollectionName.PRODUCT.value
BROKEN_PRODUCT = CollectionName.BROKEN_PRODUCT.value
RETURNED_PRODUCT = CollectionName.RETURNED_PRODUCT.value
INVOICE = CollectionName.INVOICE.value
VOID_INVOICE = CollectionName.VOID_INVOICE.value
PENDING_TRANSACTION = CollectionName.PENDING_TRANSACTION.value
DISPATCH_NOTE = CollectionName.DISPATCH_NOTE.value
ON_DISPATCH = CollectionName.ON_DISPATCH.value
CUSTOMER = CollectionName.CUSTOMER.value


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the record store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: RecordStore


@dataclass(frozen=True)
class SelectedItem:
    """One invoice line picked by the operator, with the amount to take back.

    ``price`` defaults to the invoice line's price. A caller-supplied price
    that disagrees with the line surfaces as :class:`TotalPriceMismatch`.
    """

    product_id: str
    amount: int
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class ReplacementItem:
    product_id: str
    amount: int
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class ReplacementTransaction:
    """New sale the operator stages while voiding an invoice.

    Customer fields default to the voided invoice's customer.
    """

    payment_method: PaymentMethod
    items: Tuple[ReplacementItem, ...]
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for returning goods from an invoice."""

    invoice_number: str
    items: Tuple[SelectedItem, ...]


@dataclass(frozen=True)
class ExchangeCommand:
    """User intent for swapping defective goods from an invoice for fresh stock."""

    invoice_number: str
    items: Tuple[SelectedItem, ...]


@dataclass(frozen=True)
class VoidCommand:
    """User intent for voiding an invoice, optionally staging a replacement."""

    invoice_number: str
    replacement: Optional[ReplacementTransaction] = None
    timestamp: Optional[datetime] = None


EngineCommand = Union[ReturnCommand, ExchangeCommand, VoidCommand]


@dataclass(frozen=True)
class ReturnOutcome:
    invoice: data_manager.InvoiceRecord
    broken_products: Tuple[data_manager.BrokenProductRecord, ...]


@dataclass(frozen=True)
class ExchangeOutcome:
    stock: Tuple[data_manager.StockRecord, ...]
    broken_products: Tuple[data_manager.BrokenProductRecord, ...]


@dataclass(frozen=True)
class VoidOutcome:
    voided_invoice: data_manager.VoidedInvoiceRecord
    replacement: Optional[data_manager.PendingReplacementRecord] = None


@dataclass(frozen=True)
class PainterDispatch:
    dispatch_note: data_manager.DispatchNoteRecord
    in_process_stock: data_manager.InProcessStockRecord


EngineOutcome = Union[ReturnOutcome, ExchangeOutcome, VoidOutcome]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the record store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context ready for the engine operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = WorkbookStore.from_settings(settings)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Both the version declared in ``config.ini`` and, for workbook-backed
    stores, the version recorded on the workbook's ``Meta`` sheet must equal
    ``EXPECTED_SCHEMA_VERSION``. Workbooks without a recorded version are
    judged by the configuration alone.

    Raises:
        RuntimeError: If either schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    found = {"config.ini": context.settings.schema_version}
    if isinstance(context.store, WorkbookStore):
        recorded = data_manager.read_schema_version(context.store.workbook)
        if recorded is not None:
            found["workbook"] = recorded

    for source, version in found.items():
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Workbook schema mismatch in %s: expected %s, found %s",
                source,
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Workbook schema mismatch in %s: expected %s, found %s"
                % (source, EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", EXPECTED_SCHEMA_VERSION)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_command(
    mode: Union[Mode, str],
    invoice_number: str,
    selected_items: Sequence[SelectedItem] = (),
    replacement: Optional[ReplacementTransaction] = None,
) -> EngineCommand:
    """Translate a mode flag into the matching command object.

    Raises:
        InvalidSelection: If ``mode`` is not a known mode, or a selection is
            passed to ``void`` (which always covers the whole invoice).
    """
    try:
        resolved = Mode(mode)
    except ValueError as exc:
        raise InvalidSelection(f"Unknown mode: {mode!r}") from exc

    if resolved is Mode.RETURN:
        return ReturnCommand(invoice_number=invoice_number, items=tuple(selected_items))
    if resolved is Mode.EXCHANGE:
        return ExchangeCommand(invoice_number=invoice_number, items=tuple(selected_items))
    if selected_items:
        raise InvalidSelection("Void applies to the whole invoice; do not select items")
    return VoidCommand(invoice_number=invoice_number, replacement=replacement)


def execute(
    context: RuntimeContext,
    mode: Union[Mode, str],
    invoice_number: str,
    selected_items: Sequence[SelectedItem] = (),
    replacement: Optional[ReplacementTransaction] = None,
) -> EngineOutcome:
    """Run one Return, Exchange, or Void against ``invoice_number``.

    This is the single entry point for the presentation layer. The selected
    procedure runs as one atomic unit; on failure nothing is written and a
    subclass of :class:`EngineError` is raised.
    """
    command = build_command(mode, invoice_number, selected_items, replacement)
    return run_command(context, command)


def run_command(context: RuntimeContext, command: EngineCommand) -> EngineOutcome:
    """Dispatch a command object to its procedure."""
    if isinstance(command, ReturnCommand):
        return record_return(context, command)
    if isinstance(command, ExchangeCommand):
        return record_exchange(context, command)
    if isinstance(command, VoidCommand):
        return record_void(context, command)
    raise EngineError(f"Unsupported command type: {type(command).__name__}")


# ---------------------------------------------------------------------------
# Pure planners
# ---------------------------------------------------------------------------


def validate_selection(
    invoice: data_manager.InvoiceRecord,
    items: Sequence[SelectedItem],
) -> Dict[str, data_manager.LineItem]:
    """Check a selection against the invoice's current lines.

    Every selected product must appear on the invoice at most once in the
    selection, with ``0 < amount <= line.amount``.

    Returns:
        dict[str, LineItem]: The matched invoice line per selected product id.

    Raises:
        InvalidSelection: On an empty selection, a duplicate or unknown
            product id, or an out-of-range amount.
    """
    if not items:
        raise InvalidSelection("No items selected")

    lines: Dict[str, data_manager.LineItem] = {}
    for line in invoice.items:
        lines.setdefault(line.product_id, line)

    matched: Dict[str, data_manager.LineItem] = {}
    for item in items:
        if item.product_id in matched:
            log.warning("Product '%s' selected twice on invoice '%s'", item.product_id, invoice.invoice_id)
            raise InvalidSelection(f"Product '{item.product_id}' is selected more than once")
        line = lines.get(item.product_id)
        if line is None:
            log.warning("Product '%s' is not on invoice '%s'", item.product_id, invoice.invoice_id)
            raise InvalidSelection(f"Product '{item.product_id}' is not on invoice '{invoice.invoice_id}'")
        require_positive_amount(item.amount)
        if item.amount > line.amount:
            log.warning(
                "Requested %s of '%s' but invoice '%s' only has %s",
                item.amount,
                item.product_id,
                invoice.invoice_id,
                line.amount,
            )
            raise InvalidSelection(
                f"Cannot take back {item.amount} of '{item.product_id}'; the invoice only has {line.amount}"
            )
        matched[item.product_id] = line
    return matched


def plan_return(
    invoice: data_manager.InvoiceRecord,
    items: Sequence[SelectedItem],
) -> data_manager.InvoiceRecord:
    """Compute the invoice that remains after returning ``items``.

    A line whose whole amount comes back is dropped. Otherwise its amount is
    reduced and it is flagged ``is_returned``. The new total is recomputed
    from the remaining lines and must equal the old total minus the returned
    value.

    Raises:
        InvalidSelection: See :func:`validate_selection`.
        TotalPriceMismatch: If the recomputed total does not reconcile.
    """
    matched = validate_selection(invoice, items)
    selected = {item.product_id: item for item in items}

    remaining: List[data_manager.LineItem] = []
    touched = set()
    for line in invoice.items:
        item = selected.get(line.product_id)
        if item is None or line.product_id in touched:
            remaining.append(line)
            continue
        touched.add(line.product_id)
        if item.amount == line.amount:
            continue
        remaining.append(replace(line, amount=line.amount - item.amount, is_returned=True))

    returned_value = sum(
        (
            (item.price if item.price is not None else matched[item.product_id].price) * item.amount
            for item in items
        ),
        Decimal("0"),
    )
    recomputed = sum((line.subtotal for line in remaining), Decimal("0"))
    expected = invoice.total_price - returned_value
    if recomputed != expected:
        log.error(
            "Invoice '%s' total mismatch: lines sum to %s, expected %s - %s = %s",
            invoice.invoice_id,
            recomputed,
            invoice.total_price,
            returned_value,
            expected,
        )
        raise TotalPriceMismatch(
            f"Invoice '{invoice.invoice_id}' lines sum to {recomputed} but {expected} was expected"
        )

    return replace(invoice, items=tuple(remaining), total_price=recomputed)


def plan_stock_decrement(stock: data_manager.StockRecord, amount: int) -> data_manager.StockRecord:
    """Return ``stock`` with ``amount`` units pulled out.

    Raises:
        InsufficientStock: If the ledger holds fewer than ``amount`` units.
    """
    require_positive_amount(amount)
    if stock.count < amount:
        log.warning(
            "Insufficient stock for '%s': requested %s, available %s",
            stock.stock_id,
            amount,
            stock.count,
        )
        raise InsufficientStock(
            f"Not enough stock for '{stock.stock_id}': requested {amount}, available {stock.count}"
        )
    return replace(stock, count=stock.count - amount)


def merge_broken_product(
    existing: Optional[data_manager.BrokenProductRecord],
    stock: data_manager.StockRecord,
    amount: int,
    *,
    new_id: str,
) -> data_manager.BrokenProductRecord:
    """Fold ``amount`` defective units of ``stock`` into the broken-product row.

    ``existing`` is the row already holding this identity, if any; ``new_id``
    is only used when no such row exists yet.
    """
    if existing is not None:
        return replace(existing, count=existing.count + amount)
    identity = stock.identity.pinned_to(Warehouse.FINISHED_GOODS)
    return data_manager.BrokenProductRecord(
        broken_id=new_id,
        brand=identity.brand,
        motor_type=identity.motor_type,
        part=identity.part,
        available_color=identity.available_color,
        supplier_id=identity.supplier_id,
        warehouse_position=identity.warehouse_position,
        count=amount,
        sell_price=stock.sell_price,
    )


def plan_void(invoice: data_manager.InvoiceRecord, *, voided_at: datetime) -> data_manager.VoidedInvoiceRecord:
    """Snapshot ``invoice`` with every line flagged as returned."""
    return data_manager.VoidedInvoiceRecord(
        invoice_id=invoice.invoice_id,
        customer_id=invoice.customer_id,
        customer_name=invoice.customer_name,
        total_price=invoice.total_price,
        payment_method=invoice.payment_method,
        items=tuple(replace(line, is_returned=True) for line in invoice.items),
        date=invoice.date,
        voided_at=voided_at.isoformat(),
    )


def special_price_for(customer: Optional[data_manager.CustomerRecord], product_id: str) -> Optional[Decimal]:
    """Return the customer's negotiated price for ``product_id``, if any."""
    if customer is None:
        return None
    for special in customer.special_prices:
        if special.product_id == product_id:
            return special.price
    return None


# ---------------------------------------------------------------------------
# Transaction-bound helpers
# ---------------------------------------------------------------------------


def _read_invoice(txn: Transaction, invoice_number: str) -> data_manager.InvoiceRecord:
    document = txn.read(INVOICE, invoice_number)
    if document is None:
        log.warning("Invoice '%s' not found", invoice_number)
        raise InvoiceNotFound(f"Invoice not found: {invoice_number}")
    return data_manager.deserialize_invoice(document)


def _read_stock(txn: Transaction, product_id: str) -> data_manager.StockRecord:
    document = txn.read(PRODUCT, product_id)
    if document is None:
        log.warning("Stock lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return data_manager.deserialize_stock(document)


def _read_broken_product(txn: Transaction, broken_id: str) -> data_manager.BrokenProductRecord:
    document = txn.read(BROKEN_PRODUCT, broken_id)
    if document is None:
        log.warning("Broken product lookup failed for id '%s'", broken_id)
        raise MissingReferenceError(f"Unknown broken product id: {broken_id}")
    return data_manager.deserialize_broken_product(document)


def consolidate(txn: Transaction, stock: data_manager.StockRecord, amount: int) -> data_manager.BrokenProductRecord:
    """Merge ``amount`` defective units into the broken-product ledger.

    The lookup and the write happen on the caller's transaction, so two
    concurrent returns of the same product cannot both insert a row: the
    loser's commit conflicts and its re-run finds the winner's row.
    """
    identity = stock.identity.pinned_to(Warehouse.FINISHED_GOODS)
    rows = txn.query(BROKEN_PRODUCT, identity.matches)
    existing = data_manager.deserialize_broken_product(rows[0]) if rows else None
    if len(rows) > 1:
        log.warning("Found %d broken-product rows for one identity; merging into '%s'", len(rows), existing.broken_id)

    merged = merge_broken_product(existing, stock, amount, new_id=generate_record_id(prefix="BP"))
    if existing is None:
        txn.set(BROKEN_PRODUCT, data_manager.serialize_broken_product(merged))
    else:
        txn.update(BROKEN_PRODUCT, merged.broken_id, {"count": merged.count})
    return merged


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------


def record_exchange(context: RuntimeContext, command: ExchangeCommand) -> ExchangeOutcome:
    """Pull exchanged units out of stock and log them as broken products.

    The invoice is left untouched: the customer keeps the sold quantity and
    receives fresh units, so only the physical stock changes. One short item
    aborts the whole batch.

    Raises:
        InvoiceNotFound: If the invoice number does not resolve.
        InvalidSelection: If the selection does not match the invoice.
        InsufficientStock: If any product has fewer units than requested.
        MissingReferenceError: If a selected product has no stock record.
    """

    def body(txn: Transaction) -> ExchangeOutcome:
        invoice = _read_invoice(txn, command.invoice_number)
        validate_selection(invoice, command.items)

        stock_after: List[data_manager.StockRecord] = []
        broken: List[data_manager.BrokenProductRecord] = []
        for item in command.items:
            stock = _read_stock(txn, item.product_id)
            decremented = plan_stock_decrement(stock, item.amount)
            txn.update(PRODUCT, stock.stock_id, {"count": decremented.count})
            stock_after.append(decremented)
            broken.append(consolidate(txn, stock, item.amount))
        return ExchangeOutcome(stock=tuple(stock_after), broken_products=tuple(broken))

    log.info("Recording exchange on invoice '%s'", command.invoice_number)
    outcome = context.store.run_atomic(body)
    log.info(
        "Recorded exchange on invoice '%s' for %d product(s)",
        command.invoice_number,
        len(outcome.stock),
    )
    return outcome


def record_return(context: RuntimeContext, command: ReturnCommand) -> ReturnOutcome:
    """Take goods back from an invoice and log them as broken products.

    The stock ledger's forward-sale count is not touched; returned units are
    tracked only through the broken-product ledger until disposed.

    Raises:
        InvoiceNotFound: If the invoice number does not resolve.
        InvalidSelection: If the selection does not match the invoice.
        TotalPriceMismatch: If the recomputed total does not reconcile.
        MissingReferenceError: If a selected product has no stock record.
    """

    def body(txn: Transaction) -> ReturnOutcome:
        invoice = _read_invoice(txn, command.invoice_number)
        updated = plan_return(invoice, command.items)
        txn.update(
            INVOICE,
            invoice.invoice_id,
            {
                "items": [data_manager.serialize_line_item(line) for line in updated.items],
                "total_price": updated.total_price,
            },
        )
        broken = [consolidate(txn, _read_stock(txn, item.product_id), item.amount) for item in command.items]
        return ReturnOutcome(invoice=updated, broken_products=tuple(broken))

    log.info("Recording return on invoice '%s'", command.invoice_number)
    outcome = context.store.run_atomic(body)
    log.info(
        "Recorded return on invoice '%s'; new total %s",
        command.invoice_number,
        outcome.invoice.total_price,
    )
    return outcome


def record_void(context: RuntimeContext, command: VoidCommand) -> VoidOutcome:
    """Move an invoice to the voided collection, then stage any replacement.

    Deleting the invoice and writing the snapshot are one atomic unit. The
    replacement is staged afterwards as its own unit via
    :func:`stage_replacement`; if staging fails the void stands and the
    caller may stage again.

    Raises:
        InvoiceNotFound: If the invoice number does not resolve.
        InvalidSelection: If the staged replacement is malformed.
    """
    if command.replacement is not None:
        validate_replacement(command.replacement)
    timestamp = _resolve_timestamp(command.timestamp)

    def body(txn: Transaction) -> data_manager.VoidedInvoiceRecord:
        invoice = _read_invoice(txn, command.invoice_number)
        voided = plan_void(invoice, voided_at=timestamp)
        txn.delete(INVOICE, invoice.invoice_id)
        txn.set(VOID_INVOICE, data_manager.serialize_voided_invoice(voided))
        return voided

    log.info("Recording VOID for invoice '%s'", command.invoice_number)
    voided = context.store.run_atomic(body)
    log.info("Voided invoice '%s'", voided.invoice_id)

    if command.replacement is None:
        return VoidOutcome(voided_invoice=voided)
    try:
        pending = stage_replacement(context, voided.invoice_id, command.replacement, timestamp=timestamp)
    except EngineError:
        log.warning("Invoice '%s' was voided but its replacement could not be staged", voided.invoice_id)
        raise
    return VoidOutcome(voided_invoice=voided, replacement=pending)


# ---------------------------------------------------------------------------
# Replacement staging
# ---------------------------------------------------------------------------


def validate_replacement(replacement: ReplacementTransaction) -> None:
    """Check the shape of a staged replacement before anything is written.

    Raises:
        InvalidSelection: On an unknown payment method, no items, a duplicate
            product, or a non-positive amount or price.
    """
    try:
        PaymentMethod(replacement.payment_method)
    except ValueError as exc:
        raise InvalidSelection(f"Unsupported payment method: {replacement.payment_method!r}") from exc
    if not replacement.items:
        raise InvalidSelection("Replacement has no items")
    seen = set()
    for item in replacement.items:
        if item.product_id in seen:
            raise InvalidSelection(f"Product '{item.product_id}' is listed more than once")
        seen.add(item.product_id)
        require_positive_amount(item.amount)
        if item.price is not None and item.price < 0:
            raise InvalidSelection(f"Negative price for '{item.product_id}'")


def stage_replacement(
    context: RuntimeContext,
    voided_invoice_number: str,
    replacement: ReplacementTransaction,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.PendingReplacementRecord:
    """Price and store a replacement sale for a voided invoice.

    The record is keyed by the voided invoice number, so staging again simply
    replaces the earlier draft. Prices come from the item itself, then from
    the customer's negotiated price, then from the product's sell price.
    Turning the draft into a real invoice is left to invoice creation.

    Raises:
        InvoiceNotFound: If ``voided_invoice_number`` has not been voided.
        InvalidSelection: If the replacement is malformed.
        MissingReferenceError: If a replacement product has no stock record.
    """
    validate_replacement(replacement)
    staged_at = _resolve_timestamp(timestamp).isoformat()

    def body(txn: Transaction) -> data_manager.PendingReplacementRecord:
        voided_document = txn.read(VOID_INVOICE, voided_invoice_number)
        if voided_document is None:
            log.warning("Cannot stage replacement: invoice '%s' is not voided", voided_invoice_number)
            raise InvoiceNotFound(f"Voided invoice not found: {voided_invoice_number}")
        voided = data_manager.deserialize_voided_invoice(voided_document)

        customer_id = replacement.customer_id or voided.customer_id
        customer_document = txn.read(CUSTOMER, customer_id) if customer_id else None
        customer = data_manager.deserialize_customer(customer_document) if customer_document else None

        lines = []
        for item in replacement.items:
            stock = _read_stock(txn, item.product_id)
            price = item.price
            if price is None:
                price = special_price_for(customer, item.product_id)
            if price is None:
                price = stock.sell_price
            lines.append(
                data_manager.LineItem(
                    product_id=stock.stock_id,
                    amount=item.amount,
                    price=price,
                    product_name=describe_stock(stock),
                    warehouse_position=stock.warehouse_position,
                )
            )

        record = data_manager.PendingReplacementRecord(
            voided_invoice_id=voided.invoice_id,
            customer_id=customer_id,
            customer_name=replacement.customer_name or voided.customer_name,
            total_price=sum((line.subtotal for line in lines), Decimal("0")),
            payment_method=PaymentMethod(replacement.payment_method).value,
            items=tuple(lines),
            staged_at=staged_at,
        )
        txn.set(PENDING_TRANSACTION, data_manager.serialize_pending_replacement(record))
        return record

    record = context.store.run_atomic(body)
    log.info(
        "Staged replacement for voided invoice '%s' totalling %s",
        record.voided_invoice_id,
        record.total_price,
    )
    return record


def resolve_replacement_price(context: RuntimeContext, customer_id: Optional[str], product_id: str) -> Decimal:
    """Price one unit of ``product_id`` for ``customer_id``."""
    stock = get_stock(context, product_id)
    customer = None
    if customer_id:
        document = context.store.get(CUSTOMER, customer_id)
        customer = data_manager.deserialize_customer(document) if document else None
    special = special_price_for(customer, product_id)
    return special if special is not None else stock.sell_price


# ---------------------------------------------------------------------------
# Disposition
# ---------------------------------------------------------------------------


def dispose(
    context: RuntimeContext,
    broken_id: str,
    reason: Union[DispositionReason, str, None],
    painter_name: Optional[str] = None,
) -> Union[data_manager.ReturnedProductRecord, PainterDispatch]:
    """Send a broken-product row to the supplier or to a painter.

    Raises:
        InvalidDisposition: If no valid reason is given, or the painter path
            lacks a painter name or targets a non finished-goods row.
        MissingReferenceError: If ``broken_id`` is unknown.
    """
    if not reason:
        log.warning("Disposition of '%s' requested without a reason", broken_id)
        raise InvalidDisposition("Please select a reason")
    try:
        resolved = DispositionReason(reason)
    except ValueError as exc:
        raise InvalidDisposition(f"Unknown disposition reason: {reason!r}") from exc

    if resolved is DispositionReason.SUPPLIER:
        return dispose_to_supplier(context, broken_id)
    return dispose_to_painter(context, broken_id, painter_name or "")


def dispose_to_supplier(context: RuntimeContext, broken_id: str) -> data_manager.ReturnedProductRecord:
    """Remove a broken-product row and add its count to the supplier return ledger.

    The returned-product row for the same identity is incremented, never
    overwritten, so earlier returns to the supplier are preserved.
    """

    def body(txn: Transaction) -> data_manager.ReturnedProductRecord:
        broken = _read_broken_product(txn, broken_id)
        key = broken.identity.supplier_key()
        existing_document = txn.read(RETURNED_PRODUCT, key)
        previous = data_manager.deserialize_returned_product(existing_document).count if existing_document else 0
        record = data_manager.ReturnedProductRecord(
            returned_id=key,
            brand=broken.brand,
            motor_type=broken.motor_type,
            part=broken.part,
            available_color=broken.available_color,
            supplier_id=broken.supplier_id,
            count=previous + broken.count,
        )
        txn.set(RETURNED_PRODUCT, data_manager.serialize_returned_product(record))
        txn.delete(BROKEN_PRODUCT, broken.broken_id)
        return record

    record = context.store.run_atomic(body)
    log.info("Returned broken product '%s' to supplier '%s'", broken_id, record.supplier_id)
    return record


def dispose_to_painter(
    context: RuntimeContext,
    broken_id: str,
    painter_name: str,
    *,
    timestamp: Optional[datetime] = None,
) -> PainterDispatch:
    """Hand a finished-goods broken-product row to a painter for rework.

    Creates a dispatch note and an "under painting" stock record in the raw
    materials zone, and deletes the broken-product row.

    Raises:
        InvalidDisposition: If ``painter_name`` is blank or the row is not a
            finished-goods defect.
        MissingReferenceError: If ``broken_id`` is unknown.
    """
    painter = (painter_name or "").strip()
    if not painter:
        log.warning("Painter disposition of '%s' requested without a painter name", broken_id)
        raise InvalidDisposition("Please enter the painter name")
    moment = _resolve_timestamp(timestamp)

    def body(txn: Transaction) -> PainterDispatch:
        broken = _read_broken_product(txn, broken_id)
        if broken.warehouse_position != Warehouse.FINISHED_GOODS.value:
            log.warning(
                "Broken product '%s' sits in '%s'; only finished goods go to a painter",
                broken.broken_id,
                broken.warehouse_position,
            )
            raise InvalidDisposition(
                f"Broken product '{broken.broken_id}' is not a finished-goods defect"
            )

        note = data_manager.DispatchNoteRecord(
            dispatch_note_id=generate_record_id(prefix="DN", when=moment),
            date=moment.date().isoformat(),
            painter=painter,
            dispatch_items=(
                data_manager.DispatchItem(
                    amount=broken.count,
                    color=broken.available_color,
                    product_id=broken.broken_id,
                ),
            ),
        )
        in_process = data_manager.InProcessStockRecord(
            record_id=generate_record_id(prefix="OD", when=moment),
            product_id=broken.broken_id,
            brand=broken.brand,
            motor_type=broken.motor_type,
            part=broken.part,
            available_color=broken.available_color,
            supplier_id=broken.supplier_id,
            warehouse_position=Warehouse.RAW_MATERIALS.value,
            count=broken.count,
            status=StockStatus.UNDER_PAINTING.value,
            dispatch_note_id=note.dispatch_note_id,
            sell_price=broken.sell_price,
        )
        txn.set(DISPATCH_NOTE, data_manager.serialize_dispatch_note(note))
        txn.set(ON_DISPATCH, data_manager.serialize_in_process_stock(in_process))
        txn.delete(BROKEN_PRODUCT, broken.broken_id)
        return PainterDispatch(dispatch_note=note, in_process_stock=in_process)

    dispatch = context.store.run_atomic(body)
    log.info(
        "Sent broken product '%s' to painter '%s' on dispatch note '%s'",
        broken_id,
        painter,
        dispatch.dispatch_note.dispatch_note_id,
    )
    return dispatch


# ---------------------------------------------------------------------------
# Lookups and searches
# ---------------------------------------------------------------------------


def find_invoice(context: RuntimeContext, invoice_number: str) -> data_manager.InvoiceRecord:
    """Resolve an invoice by its number.

    Raises:
        InvoiceNotFound: If no invoice carries ``invoice_number``.
    """
    document = context.store.get(INVOICE, invoice_number)
    if document is None:
        log.warning("Invoice '%s' not found", invoice_number)
        raise InvoiceNotFound(f"Invoice not found: {invoice_number}")
    return data_manager.deserialize_invoice(document)


def get_voided_invoice(context: RuntimeContext, invoice_number: str) -> data_manager.VoidedInvoiceRecord:
    """Resolve the snapshot of a voided invoice.

    Raises:
        InvoiceNotFound: If ``invoice_number`` has not been voided.
    """
    document = context.store.get(VOID_INVOICE, invoice_number)
    if document is None:
        raise InvoiceNotFound(f"Voided invoice not found: {invoice_number}")
    return data_manager.deserialize_voided_invoice(document)


def get_pending_replacement(context: RuntimeContext, invoice_number: str) -> Optional[data_manager.PendingReplacementRecord]:
    """Return the replacement staged for a voided invoice, or ``None``."""
    document = context.store.get(PENDING_TRANSACTION, invoice_number)
    return data_manager.deserialize_pending_replacement(document) if document else None


def get_stock(context: RuntimeContext, product_id: str) -> data_manager.StockRecord:
    """Resolve a stock record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the ledger.
    """
    document = context.store.get(PRODUCT, product_id)
    if document is None:
        log.warning("Stock lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return data_manager.deserialize_stock(document)


def get_broken_product(context: RuntimeContext, broken_id: str) -> data_manager.BrokenProductRecord:
    """Resolve a broken-product row by its identifier.

    Raises:
        MissingReferenceError: If ``broken_id`` is not in the ledger.
    """
    document = context.store.get(BROKEN_PRODUCT, broken_id)
    if document is None:
        log.warning("Broken product lookup failed for id '%s'", broken_id)
        raise MissingReferenceError(f"Unknown broken product id: {broken_id}")
    return data_manager.deserialize_broken_product(document)


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRecord:
    """Resolve a customer and their negotiated prices.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """
    document = context.store.get(CUSTOMER, customer_id)
    if document is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return data_manager.deserialize_customer(document)


def list_broken_products(context: RuntimeContext) -> List[data_manager.BrokenProductRecord]:
    """Return every broken-product row awaiting disposition."""
    return [data_manager.deserialize_broken_product(doc) for doc in context.store.query(BROKEN_PRODUCT)]


def list_returned_products(context: RuntimeContext) -> List[data_manager.ReturnedProductRecord]:
    """Return the supplier return ledger."""
    return [data_manager.deserialize_returned_product(doc) for doc in context.store.query(RETURNED_PRODUCT)]


def list_dispatch_notes(context: RuntimeContext) -> List[data_manager.DispatchNoteRecord]:
    """Return every dispatch note handed to a painter."""
    return [data_manager.deserialize_dispatch_note(doc) for doc in context.store.query(DISPATCH_NOTE)]


def list_in_process_stock(context: RuntimeContext) -> List[data_manager.InProcessStockRecord]:
    """Return stock currently sitting with painters."""
    return [data_manager.deserialize_in_process_stock(doc) for doc in context.store.query(ON_DISPATCH)]


def find_defective_stock(context: RuntimeContext, search: str = "") -> List[data_manager.BrokenProductRecord]:
    """List broken products matching ``search`` anywhere in brand, motor type, part, or color.

    Matching is a case-insensitive substring test; a blank search returns
    every row.
    """
    needle = search.strip().lower()
    records = list_broken_products(context)
    if not needle:
        return records
    return [
        record
        for record in records
        if any(
            needle in value.lower()
            for value in (record.brand, record.motor_type, record.part, record.available_color)
        )
    ]


def search_products(context: RuntimeContext, text: str) -> List[data_manager.StockRecord]:
    """Return stock records whose brand starts with ``text``, ignoring case."""
    prefix = text.strip().lower()
    return [
        data_manager.deserialize_stock(doc)
        for doc in context.store.query(
            PRODUCT,
            lambda doc: str(doc.get("brand") or "").lower().startswith(prefix),
        )
    ]


def describe_stock(stock: data_manager.StockRecord) -> str:
    """Human-readable product name used on invoice lines."""
    return " ".join(part for part in (stock.brand, stock.motor_type, stock.part) if part)


# ---------------------------------------------------------------------------
# Validation and identifiers
# ---------------------------------------------------------------------------


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier from a UTC timestamp plus a random suffix.

    The suffix keeps identifiers unique when several records are created in
    the same transaction.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6].upper()}"


def require_positive_amount(amount: int) -> None:
    """Ensure ``amount`` is a whole number of units greater than zero.

    Raises:
        InvalidSelection: If the amount is not a positive integer.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        log.error("Amount validation failed: %r", amount)
        raise InvalidSelection(f"Amount must be a whole number greater than zero, got {amount!r}")

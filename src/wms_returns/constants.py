"""Enumerations shared across the warehouse returns modules.

The data access layer, the record store, the engine and the CLI all read
their collection names, warehouse zones and mode flags from here.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class Mode(str, Enum):
    """Enumerate the change-of-stock modes the engine can execute."""

    RETURN = "return"
    EXCHANGE = "exchange"
    VOID = "void"


class PaymentMethod(str, Enum):
    """Enumerate supported payment methods on invoices."""

    CASH = "Cash"
    CASHLESS = "Cashless"


class Warehouse(str, Enum):
    """Warehouse zones distinguishing sale-ready stock from stock in process."""

    FINISHED_GOODS = "Gudang Jadi"
    RAW_MATERIALS = "Gudang Bahan"


class StockStatus(str, Enum):
    """Status labels carried by in-process stock records."""

    UNDER_PAINTING = "Under painting"


class DispositionReason(str, Enum):
    """Where a broken-product row can be sent once inspected."""

    SUPPLIER = "supplier"
    PAINTER = "painter"


class CollectionName(str, Enum):
    """Enumerate the collections (worksheets) managed by the record store."""

    PRODUCT = "product"
    BROKEN_PRODUCT = "broken_product"
    RETURNED_PRODUCT = "returned_product"
    INVOICE = "invoice"
    VOID_INVOICE = "void_invoice"
    PENDING_TRANSACTION = "pending_transaction"
    DISPATCH_NOTE = "dispatch_note"
    ON_DISPATCH = "on_dispatch"
    CUSTOMER = "customer"


META_SHEET = "Meta"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "Mode",
    "PaymentMethod",
    "Warehouse",
    "StockStatus",
    "DispositionReason",
    "CollectionName",
    "META_SHEET",
]

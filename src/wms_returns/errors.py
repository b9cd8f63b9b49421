"""Exception hierarchy raised by the record store and the engine."""

from __future__ import annotations


class EngineError(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(EngineError):
    """Raised when a referenced stock, broken-product, or customer row is unknown."""


class InvalidSelection(EngineError):
    """Raised for malformed amounts or items that are not on the invoice."""


class InsufficientStock(EngineError):
    """Raised when an exchange requests more units than the ledger holds."""


class InvoiceNotFound(EngineError):
    """Raised when an invoice number does not resolve."""


class InvalidDisposition(EngineError):
    """Raised when a broken-product row cannot be disposed as requested."""


class TransactionConflict(EngineError):
    """Raised when the atomic retry budget is exhausted by concurrent writers."""


class TotalPriceMismatch(EngineError):
    """Raised when a recomputed invoice total disagrees with the adjustment."""


__all__ = [
    "EngineError",
    "MissingReferenceError",
    "InvalidSelection",
    "InsufficientStock",
    "InvoiceNotFound",
    "InvalidDisposition",
    "TransactionConflict",
    "TotalPriceMismatch",
]

"""Public interface for the ``lab_reconciliation`` package.

This module re-exports the engine's models, pure functions and session as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .attribution import Attribution, resolve_attribution
from .errors import (
    FetchError,
    ManualEntryError,
    ReconciliationError,
    SaveError,
    SaveInProgressError,
    ValidationFailure,
)
from .merge import merge
from .models import (
    ALL_LABS,
    Category,
    DerivedRow,
    LabPricingEntry,
    Laboratory,
    LinkedRecord,
    ManualEntry,
    ManualRecord,
    OrderLine,
    ReconciliationView,
    RecordKind,
    RetailAmounts,
    TechnicianRecord,
    Totals,
    TransactionRow,
    YearMonth,
)
from .orchestrator import BatchSaveResult, ReconciliationSession
from .orders import OrderDraft, items_total, net_total
from .pricing import build_order_line, resolve_unit_price

__all__ = [
    # Session / operations
    "ReconciliationSession",
    "BatchSaveResult",
    "OrderDraft",
    "merge",
    "resolve_attribution",
    "resolve_unit_price",
    "build_order_line",
    "items_total",
    "net_total",
    # Models / types
    "ALL_LABS",
    "Attribution",
    "Category",
    "DerivedRow",
    "LabPricingEntry",
    "Laboratory",
    "LinkedRecord",
    "ManualEntry",
    "ManualRecord",
    "OrderLine",
    "ReconciliationView",
    "RecordKind",
    "RetailAmounts",
    "TechnicianRecord",
    "Totals",
    "TransactionRow",
    "YearMonth",
    # Errors
    "FetchError",
    "ManualEntryError",
    "ReconciliationError",
    "SaveError",
    "SaveInProgressError",
    "ValidationFailure",
]

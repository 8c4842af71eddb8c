"""Data models for ``lab_reconciliation``.

Domain values are frozen dataclasses: ledger rows are read-only to the engine,
technician records are replaced wholesale on every save, and derived rows are
rebuilt on every merge. Currency is always :class:`~decimal.Decimal`; numeric
inputs (``int``/``float``/``str``) are coerced on construction.

The pydantic models at the bottom describe data crossing a boundary: order
lines as persisted in the record store's JSON column, and the manual-add form.
"""

from __future__ import annotations

import calendar
import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from types import MappingProxyType
from typing import Any, ClassVar, Final

from pydantic import BaseModel, ConfigDict, field_validator

ZERO: Final = Decimal("0")

# Lab filter value meaning "every laboratory" (the aggregate view).
ALL_LABS: Final = "all"


def to_money(raw: Any) -> Decimal:
    """Coerce ``raw`` to a ``Decimal``; ``None`` and blanks become zero."""

    if raw is None:
        return ZERO
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, bool):
        raise TypeError("booleans are not currency amounts")
    s = str(raw).strip().replace(",", "")
    if not s:
        return ZERO
    try:
        return Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"not a currency amount: {raw!r}") from e


# ---------------------------------------------------------------------------
# Closed variant sets
# ---------------------------------------------------------------------------


class Category(StrEnum):
    """Billing categories a transaction can be attributed to."""

    PROSTHO = "prostho"
    IMPLANT = "implant"
    ORTHO = "ortho"
    SOV = "sov"
    INV = "inv"
    WHITENING = "whitening"
    PERIO = "perio"
    OTHER_SELF_PAY = "other_self_pay"
    # Reserved: retail/consumable sales, never billed to a lab category.
    VAULT = "vault"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]


_CATEGORY_LABELS: Final[Mapping[Category, str]] = MappingProxyType(
    {
        Category.PROSTHO: "Prosthodontics",
        Category.IMPLANT: "Implant",
        Category.ORTHO: "Orthodontics",
        Category.SOV: "SOV",
        Category.INV: "Invisible aligner",
        Category.WHITENING: "Whitening",
        Category.PERIO: "Periodontics",
        Category.OTHER_SELF_PAY: "Other self-pay",
        Category.VAULT: "Vault (retail)",
    }
)

# Canonical scan order for treatment-based attribution. Vault is excluded.
TREATMENT_SCAN_ORDER: Final[tuple[Category, ...]] = (
    Category.PROSTHO,
    Category.IMPLANT,
    Category.ORTHO,
    Category.SOV,
    Category.INV,
    Category.WHITENING,
    Category.PERIO,
    Category.OTHER_SELF_PAY,
)


class RecordKind(StrEnum):
    LINKED = "linked"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Calendar month
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, order=True)
class YearMonth:
    """A calendar month, written ``YYYY-MM``."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"month out of range: {self.month}")
        if not 1 <= self.year <= 9999:
            raise ValueError(f"year out of range: {self.year}")

    @classmethod
    def parse(cls, value: str) -> YearMonth:
        s = value.strip()
        parts = s.split("-")
        if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2:
            raise ValueError(f"expected YYYY-MM, got {value!r}")
        try:
            return cls(int(parts[0]), int(parts[1]))
        except ValueError as e:
            raise ValueError(f"expected YYYY-MM, got {value!r}") from e

    @classmethod
    def of(cls, d: date) -> YearMonth:
        return cls(d.year, d.month)

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def contains(self, d: date) -> bool:
        return d.year == self.year and d.month == self.month

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


# ---------------------------------------------------------------------------
# Ledger side (read-only)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetailAmounts:
    products: Decimal = ZERO
    diy_whitening: Decimal = ZERO

    def __post_init__(self) -> None:
        object.__setattr__(self, "products", to_money(self.products))
        object.__setattr__(self, "diy_whitening", to_money(self.diy_whitening))

    @property
    def total(self) -> Decimal:
        return self.products + self.diy_whitening


@dataclass(frozen=True, slots=True)
class TransactionRow:
    """One patient visit from the daily ledger.

    ``treatment_amounts`` is stored as a read-only mapping keyed by
    :class:`Category`; string keys are accepted and converted. ``vault`` is not
    a treatment and is rejected as a key.
    """

    id: str
    date: date
    clinic_id: str
    patient_name: str = ""
    doctor_name: str = ""
    lab_name: str | None = None
    treatment_amounts: Mapping[Category, Decimal] = field(default_factory=dict)
    retail_amounts: RetailAmounts = field(default_factory=RetailAmounts)
    revenue: Decimal = ZERO
    treatment_content: str = ""

    def __post_init__(self) -> None:
        amounts: dict[Category, Decimal] = {}
        for key, value in self.treatment_amounts.items():
            cat = Category(key)
            if cat is Category.VAULT:
                raise ValueError("vault is not a treatment category")
            amounts[cat] = to_money(value)
        object.__setattr__(self, "treatment_amounts", MappingProxyType(amounts))
        object.__setattr__(self, "revenue", to_money(self.revenue))

    def treatment_amount(self, category: Category) -> Decimal:
        return self.treatment_amounts.get(category, ZERO)

    @property
    def has_lab(self) -> bool:
        return bool(self.lab_name and self.lab_name.strip())


# ---------------------------------------------------------------------------
# Laboratory config
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LabPricingEntry:
    id: str
    name: str
    # Currency units, or a 0..100 percentage of revenue when ``is_percentage``.
    price: Decimal
    is_percentage: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "price", to_money(self.price))


@dataclass(frozen=True, slots=True)
class Laboratory:
    id: str
    clinic_id: str
    name: str
    pricing_list: tuple[LabPricingEntry, ...] = ()
    is_deleted: bool = False


# ---------------------------------------------------------------------------
# Technician records (owned by the engine)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OrderLine:
    id: str
    name: str
    tooth_position: str
    quantity: int
    # May be a frozen snapshot of a percentage-of-revenue calculation.
    unit_price: Decimal

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise TypeError("OrderLine.quantity must be an integer")
        if self.quantity < 1:
            raise ValueError("OrderLine.quantity must be at least 1")
        object.__setattr__(self, "unit_price", to_money(self.unit_price))

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True, slots=True, kw_only=True)
class _RecordFields:
    id: str
    clinic_id: str
    lab_name: str
    date: date
    # Net payable, already net of discount. Negative means the lab owes a credit.
    amount: Decimal
    category: Category | None = None
    details: tuple[OrderLine, ...] = ()
    discount: Decimal = ZERO
    patient_name: str = ""
    doctor_name: str = ""
    treatment_content: str = ""
    note: str = ""
    # Epoch milliseconds of the last write.
    updated_at: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_money(self.amount))
        object.__setattr__(self, "discount", to_money(self.discount))
        object.__setattr__(self, "details", tuple(self.details))
        if self.category is not None:
            object.__setattr__(self, "category", Category(self.category))
        if self.discount < 0:
            raise ValueError("discount must be >= 0")

    @property
    def is_credit(self) -> bool:
        return self.amount < 0


@dataclass(frozen=True, slots=True, kw_only=True)
class LinkedRecord(_RecordFields):
    """A technician payment tied to exactly one ledger row."""

    kind: ClassVar[RecordKind] = RecordKind.LINKED

    linked_row_id: str

    def __post_init__(self) -> None:
        _RecordFields.__post_init__(self)
        if not self.linked_row_id:
            raise ValueError("linked records require linked_row_id")


@dataclass(frozen=True, slots=True, kw_only=True)
class ManualRecord(_RecordFields):
    """An operator-entered adjustment with no ledger counterpart."""

    kind: ClassVar[RecordKind] = RecordKind.MANUAL

    def __post_init__(self) -> None:
        _RecordFields.__post_init__(self)
        if not self.lab_name or not self.lab_name.strip() or self.lab_name == ALL_LABS:
            raise ValueError("manual records require a concrete lab_name")


type TechnicianRecord = LinkedRecord | ManualRecord


# ---------------------------------------------------------------------------
# Derived view (never persisted)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DerivedRow:
    """A ledger row joined with its linked technician record (if any)."""

    transaction: TransactionRow
    record_id: str | None
    saved_fee: Decimal | None
    current_fee: Decimal
    selected_category: Category
    available_categories: tuple[Category, ...]
    details: tuple[OrderLine, ...] = ()
    discount: Decimal = ZERO
    dirty: bool = False

    @property
    def id(self) -> str:
        return self.transaction.id

    @property
    def date(self) -> date:
        return self.transaction.date

    @property
    def lab_name(self) -> str:
        return (self.transaction.lab_name or "").strip()

    @property
    def revenue(self) -> Decimal:
        return self.transaction.revenue

    @property
    def is_vault(self) -> bool:
        return self.transaction.retail_amounts.total > 0

    @property
    def re_attributable(self) -> bool:
        return not self.is_vault and self.selected_category is not Category.VAULT

    @property
    def re_pickable_categories(self) -> tuple[Category, ...]:
        """Choices offered when re-attributing; empty for vault rows."""

        if not self.re_attributable:
            return ()
        return self.available_categories or TREATMENT_SCAN_ORDER

    @property
    def is_credit(self) -> bool:
        return self.current_fee < 0


@dataclass(frozen=True, slots=True)
class Totals:
    linked: Decimal
    manual: Decimal

    @property
    def grand(self) -> Decimal:
        return self.linked + self.manual


def compute_totals(
    rows: tuple[DerivedRow, ...] | list[DerivedRow],
    manual_records: tuple[ManualRecord, ...] | list[ManualRecord],
) -> Totals:
    """Sum linked fees and manual amounts afresh; nothing is cached."""

    linked = sum((r.current_fee for r in rows), ZERO)
    manual = sum((m.amount for m in manual_records), ZERO)
    return Totals(linked=linked, manual=manual)


@dataclass(frozen=True, slots=True)
class ReconciliationView:
    rows: tuple[DerivedRow, ...]
    manual_records: tuple[ManualRecord, ...]
    # Linked records whose ledger row is absent from the fetched month.
    orphans: tuple[LinkedRecord, ...] = ()

    @property
    def totals(self) -> Totals:
        return compute_totals(self.rows, self.manual_records)


# ---------------------------------------------------------------------------
# Boundary DTOs
# ---------------------------------------------------------------------------


class OrderLinePayload(BaseModel):
    """Order line as stored in the record store's ``details`` JSON column.

    Amounts are written as strings to keep Decimal precision through JSON.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str
    name: str
    tooth_position: str = ""
    quantity: int
    unit_price: Decimal

    @field_validator("quantity")
    @classmethod
    def _quantity_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("quantity must be at least 1")
        return v

    @classmethod
    def from_line(cls, line: OrderLine) -> OrderLinePayload:
        return cls(
            id=line.id,
            name=line.name,
            tooth_position=line.tooth_position,
            quantity=line.quantity,
            unit_price=line.unit_price,
        )

    def to_line(self) -> OrderLine:
        return OrderLine(
            id=self.id,
            name=self.name,
            tooth_position=self.tooth_position,
            quantity=self.quantity,
            unit_price=self.unit_price,
        )

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump()
        data["unit_price"] = str(self.unit_price)
        return data


class ManualEntry(BaseModel):
    """The manual-add form. Every field is optional here so that validation can
    name the first missing one instead of failing on construction."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    date: dt.date | None = None
    amount: Decimal | None = None
    category: Category | None = None
    patient_name: str | None = None
    # On add, must match the session's selected lab when given.
    lab_name: str | None = None
    doctor_name: str = ""
    treatment_content: str = ""
    note: str = ""


__all__ = [
    "ALL_LABS",
    "Category",
    "DerivedRow",
    "LabPricingEntry",
    "Laboratory",
    "LinkedRecord",
    "ManualEntry",
    "ManualRecord",
    "OrderLine",
    "OrderLinePayload",
    "ReconciliationView",
    "RecordKind",
    "RetailAmounts",
    "TREATMENT_SCAN_ORDER",
    "TechnicianRecord",
    "Totals",
    "TransactionRow",
    "YearMonth",
    "ZERO",
    "compute_totals",
    "to_money",
]

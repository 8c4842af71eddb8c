"""Unit-price resolution from a laboratory's price list.

Fixed entries price at face value. Percentage entries resolve to
``round(revenue * pct / 100)`` in whole currency units, rounding half up, at
the moment the entry is chosen. The result is copied into the order line and
never recomputed.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

from .errors import ValidationFailure
from .models import LabPricingEntry, OrderLine, to_money

_WHOLE_UNIT = Decimal("1")


class LaboratoryDirectory(Protocol):
    """Read side of the laboratory config consumed by the engine."""

    def pricing_list(self, lab_name: str, clinic_id: str) -> list[LabPricingEntry]: ...


def resolve_unit_price(entry: LabPricingEntry, revenue: Decimal | int | str) -> Decimal:
    if not entry.is_percentage:
        return entry.price
    base = to_money(revenue) * entry.price / Decimal(100)
    return base.quantize(_WHOLE_UNIT, rounding=ROUND_HALF_UP)


def find_entry(pricing_list: Sequence[LabPricingEntry], entry_id: str) -> LabPricingEntry:
    for entry in pricing_list:
        if entry.id == entry_id:
            return entry
    raise ValidationFailure("entry_id", f"no pricing entry with id {entry_id!r}")


def build_order_line(
    entry: LabPricingEntry,
    *,
    revenue: Decimal | int | str,
    tooth_position: str = "",
    quantity: int = 1,
    unit_price: Decimal | int | str | None = None,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> OrderLine:
    """Create an order line from ``entry``, snapshotting its unit price.

    ``unit_price`` overrides the resolved price (the operator may adjust the
    suggested figure before adding the line).
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationFailure("quantity", "quantity must be a whole number of at least 1")
    price = resolve_unit_price(entry, revenue) if unit_price is None else to_money(unit_price)
    return OrderLine(
        id=id_factory(),
        name=entry.name,
        tooth_position=tooth_position.strip(),
        quantity=quantity,
        unit_price=price,
    )


__all__ = [
    "LaboratoryDirectory",
    "build_order_line",
    "find_entry",
    "resolve_unit_price",
]

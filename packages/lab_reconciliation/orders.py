"""Itemized lab orders: the net-fee calculator and the order-edit draft."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from .errors import ValidationFailure
from .models import ZERO, LabPricingEntry, OrderLine, RecordKind, to_money
from .pricing import build_order_line, find_entry


def items_total(lines: Iterable[OrderLine]) -> Decimal:
    return sum((line.subtotal for line in lines), ZERO)


def net_total(lines: Iterable[OrderLine], discount: Decimal | int | str) -> Decimal:
    """``sum(subtotals) - discount``. Not floored: a negative result is a lab credit."""

    return items_total(lines) - to_money(discount)


@dataclass(slots=True)
class OrderDraft:
    """Working copy of one record's order while the operator edits it.

    ``target_id`` is the ledger row id for linked rows and the record id for
    manual records. Nothing here touches the store; the session commits the
    draft via ``save_order``.
    """

    target_kind: RecordKind
    target_id: str
    lab_name: str
    revenue: Decimal
    pricing_list: tuple[LabPricingEntry, ...] = ()
    lines: list[OrderLine] = field(default_factory=list)
    discount: Decimal = ZERO

    def add_line(
        self,
        entry_id: str,
        *,
        tooth_position: str = "",
        quantity: int = 1,
        unit_price: Decimal | int | str | None = None,
    ) -> OrderLine:
        """Append a line priced from the pricing entry ``entry_id``.

        Percentage entries are resolved against the current ``revenue`` now;
        later changes to ``revenue`` leave existing lines untouched.
        """

        entry = find_entry(self.pricing_list, entry_id)
        line = build_order_line(
            entry,
            revenue=self.revenue,
            tooth_position=tooth_position,
            quantity=quantity,
            unit_price=unit_price,
        )
        self.lines.append(line)
        return line

    def remove_line(self, index: int) -> OrderLine:
        if not 0 <= index < len(self.lines):
            raise ValidationFailure("index", f"no order line at position {index}")
        return self.lines.pop(index)

    def set_discount(self, value: Decimal | int | str) -> None:
        amount = to_money(value)
        if amount < 0:
            raise ValidationFailure("discount", "discount cannot be negative")
        self.discount = amount

    @property
    def items_total(self) -> Decimal:
        return items_total(self.lines)

    @property
    def net_total(self) -> Decimal:
        return net_total(self.lines, self.discount)


__all__ = ["OrderDraft", "items_total", "net_total"]

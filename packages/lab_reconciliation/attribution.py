"""Attribution of a ledger row to a billing category.

Priority (first match wins):

1. a category previously saved on the row's technician record, verbatim;
2. ``vault`` when the visit sold retail products or DIY whitening kits;
3. the first treatment category with a positive amount, scanning in
   :data:`~lab_reconciliation.models.TREATMENT_SCAN_ORDER`;
4. ``other_self_pay``.

``available_categories`` always lists every positive-amount treatment category
in scan order, whichever rule selected the category.
"""

from __future__ import annotations

from typing import NamedTuple

from .models import TREATMENT_SCAN_ORDER, Category, TransactionRow


class Attribution(NamedTuple):
    selected: Category
    available: tuple[Category, ...]


def positive_treatment_categories(row: TransactionRow) -> tuple[Category, ...]:
    return tuple(c for c in TREATMENT_SCAN_ORDER if row.treatment_amount(c) > 0)


def resolve_attribution(
    row: TransactionRow, saved_category: Category | str | None = None
) -> Attribution:
    """Return ``(selected, available)`` for ``row``."""

    available = positive_treatment_categories(row)

    if saved_category:
        return Attribution(Category(saved_category), available)
    if row.retail_amounts.total > 0:
        return Attribution(Category.VAULT, available)
    if available:
        return Attribution(available[0], available)
    return Attribution(Category.OTHER_SELF_PAY, available)


__all__ = ["Attribution", "positive_treatment_categories", "resolve_attribution"]

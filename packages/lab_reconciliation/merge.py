"""Reconciliation merge: ledger rows + technician records -> derived view.

The merge is a pure function of its inputs. It never mutates the rows or
records it is given, so merging the same inputs twice yields equal views.

Steps
-----
1. Keep ledger rows that name a laboratory; with a concrete lab filter keep
   only that lab's rows (names compared after trimming).
2. Split technician records by kind and index linked records by
   ``linked_row_id``.
3. Join each kept row to its linked record: the record's amount becomes the
   current fee (zero when unsaved), its category feeds attribution, and its
   order lines and discount are carried over.
4. Sort by date ascending; Python's stable sort keeps ledger order on ties.
5. Return manual records separately, filtered by lab (and month when given).

Linked records whose ledger row is missing from the fetched month are
reported as ``orphans``. They are never deleted here and do not count toward
the linked total.
"""

from __future__ import annotations

from collections.abc import Iterable

from .attribution import resolve_attribution
from .models import (
    ALL_LABS,
    ZERO,
    DerivedRow,
    LinkedRecord,
    ManualRecord,
    ReconciliationView,
    TechnicianRecord,
    TransactionRow,
    YearMonth,
)


def is_all_labs(lab_filter: str | None) -> bool:
    return lab_filter is None or lab_filter.strip() in ("", ALL_LABS)


def _lab_matches(lab_name: str | None, lab_filter: str | None) -> bool:
    if not lab_name or not lab_name.strip():
        return False
    if is_all_labs(lab_filter):
        return True
    assert lab_filter is not None
    return lab_name.strip() == lab_filter.strip()


def in_scope(
    record: TechnicianRecord, lab_filter: str | None, month: YearMonth | None = None
) -> bool:
    """Whether a technician record belongs to the view selected by lab and month."""

    if not _lab_matches(record.lab_name, lab_filter):
        return False
    return month is None or month.contains(record.date)


def filter_rows(rows: Iterable[TransactionRow], lab_filter: str | None) -> list[TransactionRow]:
    return [r for r in rows if _lab_matches(r.lab_name, lab_filter)]


def index_linked(records: Iterable[TechnicianRecord]) -> dict[str, LinkedRecord]:
    """Map ``linked_row_id`` to its linked record.

    The store enforces one linked record per row; should duplicates slip
    through anyway, the most recently written one wins.
    """

    by_row: dict[str, LinkedRecord] = {}
    for rec in records:
        if not isinstance(rec, LinkedRecord):
            continue
        current = by_row.get(rec.linked_row_id)
        if current is None or rec.updated_at >= current.updated_at:
            by_row[rec.linked_row_id] = rec
    return by_row


def derive_row(row: TransactionRow, record: LinkedRecord | None) -> DerivedRow:
    attribution = resolve_attribution(row, record.category if record else None)
    return DerivedRow(
        transaction=row,
        record_id=record.id if record else None,
        saved_fee=record.amount if record else None,
        current_fee=record.amount if record else ZERO,
        selected_category=attribution.selected,
        available_categories=attribution.available,
        details=record.details if record else (),
        discount=record.discount if record else ZERO,
        dirty=False,
    )


def merge(
    transaction_rows: Iterable[TransactionRow],
    technician_records: Iterable[TechnicianRecord],
    lab_filter: str | None = ALL_LABS,
    *,
    month: YearMonth | None = None,
) -> ReconciliationView:
    """Join ledger rows with technician records into a :class:`ReconciliationView`."""

    all_rows = list(transaction_rows)
    records = list(technician_records)

    linked_by_row = index_linked(records)
    kept = filter_rows(all_rows, lab_filter)

    derived = [derive_row(row, linked_by_row.get(row.id)) for row in kept]
    derived.sort(key=lambda d: d.date)

    manual = tuple(
        r for r in records if isinstance(r, ManualRecord) and in_scope(r, lab_filter, month)
    )

    ledger_ids = {r.id for r in all_rows}
    orphans = tuple(
        rec
        for row_id, rec in linked_by_row.items()
        if row_id not in ledger_ids and in_scope(rec, lab_filter, month)
    )

    return ReconciliationView(rows=tuple(derived), manual_records=manual, orphans=orphans)


__all__ = ["derive_row", "filter_rows", "in_scope", "index_linked", "is_all_labs", "merge"]

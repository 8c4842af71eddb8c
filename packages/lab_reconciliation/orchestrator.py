"""Reconciliation session: local edit state plus the save orchestration.

A :class:`ReconciliationSession` holds one clinic's month for one lab filter.
It loads the ledger and the record store, merges them, and then lets the
operator:

- re-attribute rows (``change_category``), which only marks them dirty;
- batch-save every dirty row (``save_dirty``): one upsert per row, dispatched
  concurrently and joined before a full remerge;
- edit a row's or a manual record's itemized order (``open_order`` /
  ``open_manual_order`` then ``save_order``), written optimistically;
- add, update and delete manual records.

Record identity is resolved explicitly before every write: a row reuses the
id of the linked record it was merged with, otherwise a new id is minted.

Collaborators (ledger reader, record store, laboratory directory) are passed
in; the session never reaches for module-level singletons.
"""

from __future__ import annotations

import os
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

from pydantic import ValidationError

from .errors import (
    FetchError,
    ManualEntryError,
    ReconciliationError,
    SaveError,
    SaveInProgressError,
    ValidationFailure,
)
from .ledger import LedgerReader
from .logging_setup import get_logger
from .merge import in_scope, is_all_labs, merge
from .models import (
    ALL_LABS,
    ZERO,
    Category,
    DerivedRow,
    LinkedRecord,
    ManualEntry,
    ManualRecord,
    ReconciliationView,
    RecordKind,
    Totals,
    YearMonth,
    compute_totals,
)
from .orders import OrderDraft
from .persistence import RecordStore
from .pmap import p_map, p_settle
from .pricing import LaboratoryDirectory

logger = get_logger(__name__)

SAVE_CONCURRENCY_ENV = "LAB_RECON_SAVE_CONCURRENCY"
DEFAULT_SAVE_CONCURRENCY = 8
MAX_SAVE_CONCURRENCY = 32

# Fields an operator may change on an existing manual record.
MANUAL_EDITABLE_FIELDS = frozenset(
    {
        "date",
        "lab_name",
        "patient_name",
        "doctor_name",
        "category",
        "treatment_content",
        "note",
    }
)


def resolve_save_concurrency(value: int | None = None) -> int:
    """Return the batch-save concurrency, clamped to ``1..MAX_SAVE_CONCURRENCY``.

    ``None`` reads ``LAB_RECON_SAVE_CONCURRENCY``; unset or unparsable values
    fall back to the default.
    """

    if value is None:
        raw = (os.getenv(SAVE_CONCURRENCY_ENV) or "").strip()
        if raw.isdigit():
            value = int(raw)
        else:
            if raw:
                logger.warning("ignoring invalid %s=%r", SAVE_CONCURRENCY_ENV, raw)
            value = DEFAULT_SAVE_CONCURRENCY
    return max(1, min(value, MAX_SAVE_CONCURRENCY))


def _normalize_filter(lab_filter: str | None) -> str:
    if lab_filter is None or is_all_labs(lab_filter):
        return ALL_LABS
    return lab_filter.strip()


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class BatchSaveResult:
    """Outcome of :meth:`ReconciliationSession.save_dirty`.

    ``failed`` maps ledger row ids to the error their upsert raised. When the
    follow-up remerge could not fetch, ``resync_error`` holds that failure and
    the local state was updated from the successful upserts instead.
    """

    saved: tuple[str, ...] = ()
    failed: Mapping[str, Exception] = field(default_factory=dict)
    resync_error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and self.resync_error is None


class ReconciliationSession:
    def __init__(
        self,
        *,
        clinic_id: str,
        year_month: YearMonth,
        ledger: LedgerReader,
        store: RecordStore,
        labs: LaboratoryDirectory,
        lab_filter: str | None = ALL_LABS,
        concurrency: int | None = None,
        clock: Callable[[], int] = _epoch_ms,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self.clinic_id = clinic_id
        self.year_month = year_month
        self._ledger = ledger
        self._store = store
        self._labs = labs
        self._lab_filter = _normalize_filter(lab_filter)
        self._concurrency = resolve_save_concurrency(concurrency)
        self._clock = clock
        self._id_factory = id_factory

        self._rows: list[DerivedRow] = []
        self._manual: list[ManualRecord] = []
        self._orphans: tuple[LinkedRecord, ...] = ()
        self._last_error: ReconciliationError | None = None
        self._last_stamp = 0

        self._lock = threading.Lock()
        self._is_saving = False

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def lab_filter(self) -> str:
        return self._lab_filter

    @property
    def rows(self) -> tuple[DerivedRow, ...]:
        return tuple(self._rows)

    @property
    def manual_records(self) -> tuple[ManualRecord, ...]:
        return tuple(self._manual)

    @property
    def orphans(self) -> tuple[LinkedRecord, ...]:
        return self._orphans

    @property
    def view(self) -> ReconciliationView:
        return ReconciliationView(
            rows=tuple(self._rows), manual_records=tuple(self._manual), orphans=self._orphans
        )

    @property
    def totals(self) -> Totals:
        return compute_totals(self._rows, self._manual)

    @property
    def dirty_rows(self) -> tuple[DerivedRow, ...]:
        return tuple(r for r in self._rows if r.dirty)

    @property
    def is_saving(self) -> bool:
        return self._is_saving

    @property
    def last_error(self) -> ReconciliationError | None:
        return self._last_error

    def row(self, row_id: str) -> DerivedRow:
        for r in self._rows:
            if r.id == row_id:
                return r
        raise ValidationFailure("row_id", f"no ledger row {row_id!r} in the current view")

    def manual_record(self, record_id: str) -> ManualRecord:
        for m in self._manual:
            if m.id == record_id:
                return m
        raise ValidationFailure("record_id", f"no manual record {record_id!r} in the current view")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _fetch(self) -> ReconciliationView:
        # All labs: a row's linked record may be filed under another lab.
        # ``merge`` applies the lab filter.
        fetches: list[Callable[[], list[Any]]] = [
            lambda: self._ledger.fetch_monthly_transactions(self.clinic_id, self.year_month),
            lambda: self._store.fetch_technician_records(self.clinic_id, None, self.year_month),
        ]
        tx_rows, records = p_map(fetches, lambda fetch: fetch(), concurrency=2)
        return merge(tx_rows, records, self._lab_filter, month=self.year_month)

    def _apply(self, view: ReconciliationView) -> None:
        self._rows = list(view.rows)
        self._manual = list(view.manual_records)
        self._orphans = view.orphans

    def load(self) -> ReconciliationView:
        """Fetch and merge from scratch, discarding local edits.

        On a fetch failure the session is left empty (nothing is fabricated
        from partial data), the error is kept in ``last_error`` and re-raised.
        """

        try:
            view = self._fetch()
        except FetchError as e:
            self._apply(ReconciliationView(rows=(), manual_records=()))
            self._last_error = e
            logger.warning("load failed for clinic %s %s: %s", self.clinic_id, self.year_month, e)
            raise
        self._apply(view)
        self._last_error = None
        if view.orphans:
            logger.info("%d orphaned linked record(s) in %s", len(view.orphans), self.year_month)
        logger.debug(
            "loaded %d row(s), %d manual record(s) for %s",
            len(view.rows),
            len(view.manual_records),
            self._lab_filter,
        )
        return view

    def set_lab_filter(self, lab_filter: str | None) -> ReconciliationView:
        self._lab_filter = _normalize_filter(lab_filter)
        return self.load()

    def _remerge(self) -> FetchError | None:
        """Resynchronize with the stores; on failure keep local state."""

        try:
            self._apply(self._fetch())
        except FetchError as e:
            self._last_error = e
            logger.warning("remerge failed; keeping local state: %s", e)
            return e
        self._last_error = None
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _saving(self) -> Iterator[None]:
        with self._lock:
            if self._is_saving:
                raise SaveInProgressError()
            self._is_saving = True
        try:
            yield
        finally:
            with self._lock:
                self._is_saving = False

    def _stamp(self) -> int:
        # Strictly increasing within the session even if the clock stalls.
        self._last_stamp = max(self._clock(), self._last_stamp + 1)
        return self._last_stamp

    def _replace_row(self, updated: DerivedRow) -> None:
        for i, r in enumerate(self._rows):
            if r.id == updated.id:
                self._rows[i] = updated
                return

    def _replace_manual(self, updated: ManualRecord) -> None:
        for i, m in enumerate(self._manual):
            if m.id == updated.id:
                self._manual[i] = updated
                return

    def resolve_record_id(self, row_id: str) -> str:
        """Id of the linked record for ``row_id``, or a freshly minted one."""

        row = self.row(row_id)
        if row.record_id:
            return row.record_id
        return self._id_factory()

    def _linked_record(self, row: DerivedRow, record_id: str) -> LinkedRecord:
        tx = row.transaction
        return LinkedRecord(
            id=record_id,
            clinic_id=self.clinic_id,
            lab_name=row.lab_name,
            date=row.date,
            linked_row_id=row.id,
            amount=row.current_fee,
            category=row.selected_category,
            details=row.details,
            discount=row.discount,
            patient_name=tx.patient_name,
            doctor_name=tx.doctor_name,
            treatment_content=tx.treatment_content,
            updated_at=self._stamp(),
        )

    # ------------------------------------------------------------------
    # Category edits and batch save
    # ------------------------------------------------------------------

    def change_category(self, row_id: str, category: Category | str) -> DerivedRow:
        """Re-attribute a row locally and mark it dirty.

        Vault rows cannot be re-attributed. The new category must be one of
        the row's ``re_pickable_categories``.
        """

        row = self.row(row_id)
        try:
            cat = Category(category)
        except ValueError as e:
            raise ValidationFailure("category", f"unknown category {category!r}") from e
        if not row.re_attributable:
            raise ValidationFailure("category", f"row {row_id} is vault and cannot be re-attributed")
        if cat is row.selected_category:
            return row
        if cat not in row.re_pickable_categories:
            choices = ", ".join(c.value for c in row.re_pickable_categories)
            raise ValidationFailure("category", f"{cat.value!r} is not one of: {choices}")
        updated = replace(row, selected_category=cat, dirty=True)
        self._replace_row(updated)
        return updated

    def save_dirty(self) -> BatchSaveResult:
        """Upsert every dirty row concurrently, wait for all, then remerge.

        A failing upsert neither blocks nor rolls back its siblings. After the
        remerge, rows whose upsert failed keep the operator's pending category
        and stay dirty so the save can be retried.
        """

        with self._saving():
            dirty = [r for r in self._rows if r.dirty]
            if not dirty:
                return BatchSaveResult()

            records = [self._linked_record(r, self.resolve_record_id(r.id)) for r in dirty]
            outcomes = p_settle(records, self._store.upsert, concurrency=self._concurrency)

            saved: list[str] = []
            failed: dict[str, Exception] = {}
            for outcome in outcomes:
                row_id = outcome.item.linked_row_id
                if outcome.ok:
                    saved.append(row_id)
                else:
                    assert outcome.error is not None
                    failed[row_id] = outcome.error
                    logger.warning("save failed for row %s: %s", row_id, outcome.error)

            pending = {r.id: r.selected_category for r in dirty if r.id in failed}
            written = {rec.linked_row_id: rec for rec in records if rec.linked_row_id in saved}

            resync_error = self._remerge()
            if resync_error is not None:
                for row_id, rec in written.items():
                    row = self.row(row_id)
                    self._replace_row(
                        replace(row, record_id=rec.id, saved_fee=rec.amount, dirty=False)
                    )
            else:
                for row_id, category in pending.items():
                    try:
                        row = self.row(row_id)
                    except ValidationFailure:
                        continue
                    if row.re_attributable:
                        self._replace_row(replace(row, selected_category=category, dirty=True))

            logger.info(
                "batch save: %d saved, %d failed of %d dirty row(s)",
                len(saved),
                len(failed),
                len(dirty),
            )
            return BatchSaveResult(
                saved=tuple(saved), failed=failed, resync_error=resync_error
            )

    # ------------------------------------------------------------------
    # Itemized orders
    # ------------------------------------------------------------------

    def open_order(self, row_id: str) -> OrderDraft:
        row = self.row(row_id)
        return OrderDraft(
            target_kind=RecordKind.LINKED,
            target_id=row.id,
            lab_name=row.lab_name,
            revenue=row.revenue,
            pricing_list=tuple(self._labs.pricing_list(row.lab_name, self.clinic_id)),
            lines=list(row.details),
            discount=row.discount,
        )

    def open_manual_order(self, record_id: str) -> OrderDraft:
        """Order draft for a manual record. Its revenue base is zero."""

        rec = self.manual_record(record_id)
        return OrderDraft(
            target_kind=RecordKind.MANUAL,
            target_id=rec.id,
            lab_name=rec.lab_name,
            revenue=ZERO,
            pricing_list=tuple(self._labs.pricing_list(rec.lab_name, self.clinic_id)),
            lines=list(rec.details),
            discount=rec.discount,
        )

    def save_order(self, draft: OrderDraft) -> DerivedRow | ManualRecord:
        """Persist ``draft`` as one upsert, applied to local state first.

        The row (or manual record) is updated immediately and marked clean; if
        the store rejects the upsert the previous state is restored and the
        :class:`SaveError` propagates.
        """

        with self._saving():
            if draft.target_kind is RecordKind.MANUAL:
                return self._save_manual_order(draft)
            return self._save_linked_order(draft)

    def _save_linked_order(self, draft: OrderDraft) -> DerivedRow:
        previous = self.row(draft.target_id)
        net = draft.net_total
        updated = replace(
            previous,
            record_id=self.resolve_record_id(previous.id),
            saved_fee=net,
            current_fee=net,
            details=tuple(draft.lines),
            discount=draft.discount,
            dirty=False,
        )
        assert updated.record_id is not None
        record = self._linked_record(updated, updated.record_id)

        self._replace_row(updated)
        try:
            self._store.upsert(record)
        except SaveError:
            self._replace_row(previous)
            logger.warning("order save failed for row %s; restored", previous.id)
            raise
        logger.info("saved order for row %s: net %s", previous.id, net)
        return updated

    def _save_manual_order(self, draft: OrderDraft) -> ManualRecord:
        previous = self.manual_record(draft.target_id)
        updated = replace(
            previous,
            amount=draft.net_total,
            details=tuple(draft.lines),
            discount=draft.discount,
            updated_at=self._stamp(),
        )
        self._replace_manual(updated)
        try:
            self._store.upsert(updated)
        except SaveError:
            self._replace_manual(previous)
            logger.warning("order save failed for manual record %s; restored", previous.id)
            raise
        return updated

    # ------------------------------------------------------------------
    # Manual records
    # ------------------------------------------------------------------

    def _validated_entry(self, entry: ManualEntry | Mapping[str, Any]) -> ManualEntry:
        if isinstance(entry, ManualEntry):
            return entry
        try:
            return ManualEntry.model_validate(dict(entry))
        except ValidationError as e:
            first = e.errors()[0]
            loc = first.get("loc") or ("entry",)
            raise ManualEntryError(str(loc[0]), str(first.get("msg"))) from e

    def _in_view(self, record: ManualRecord) -> bool:
        return in_scope(record, self._lab_filter, self.year_month)

    def add_manual(self, entry: ManualEntry | Mapping[str, Any]) -> ManualRecord:
        """Create a manual record; validation happens before any store call.

        A concrete lab must be selected. The record is filed under that lab;
        an explicit ``lab_name`` naming a different lab is rejected.
        """

        if is_all_labs(self._lab_filter):
            raise ManualEntryError("lab_name", "select a laboratory before adding a manual record")
        form = self._validated_entry(entry)
        lab_name = self._lab_filter
        if form.lab_name and form.lab_name != lab_name:
            raise ManualEntryError(
                "lab_name", f"manual records for this view must belong to {lab_name!r}"
            )
        for name in ("date", "amount", "category", "patient_name"):
            if getattr(form, name) in (None, ""):
                raise ManualEntryError(name, "required")
        assert form.date is not None and form.amount is not None

        record = ManualRecord(
            id=self._id_factory(),
            clinic_id=self.clinic_id,
            lab_name=lab_name,
            date=form.date,
            amount=form.amount,
            category=form.category,
            patient_name=form.patient_name or "",
            doctor_name=form.doctor_name,
            treatment_content=form.treatment_content,
            note=form.note,
            updated_at=self._stamp(),
        )

        with self._saving():
            self._store.upsert(record)
            self._manual.append(record)
            logger.info("added manual record %s for %s", record.id, lab_name)
            self._remerge()
        return record

    def update_manual(self, record_id: str, **changes: Any) -> ManualRecord:
        """Edit fields of a manual record, coerced and checked like the add form.

        A record moved to another lab or month leaves the current view.
        """

        unknown = sorted(set(changes) - MANUAL_EDITABLE_FIELDS)
        if unknown:
            raise ManualEntryError(unknown[0], "field cannot be edited")
        previous = self.manual_record(record_id)
        form = self._validated_entry(changes)
        values = {name: getattr(form, name) for name in changes}
        if "lab_name" in values and is_all_labs(values["lab_name"]):
            raise ManualEntryError("lab_name", "a manual record needs a concrete laboratory")
        for name in ("date", "patient_name", "category"):
            if name in values and values[name] in (None, ""):
                raise ManualEntryError(name, "required")
        try:
            updated = replace(previous, **values, updated_at=self._stamp())
        except ValueError as e:
            raise ManualEntryError(next(iter(values), "entry"), str(e)) from e

        with self._saving():
            self._replace_manual(updated)
            try:
                self._store.upsert(updated)
            except SaveError:
                self._replace_manual(previous)
                logger.warning("update failed for manual record %s; restored", record_id)
                raise
            if not self._in_view(updated):
                self._manual = [m for m in self._manual if m.id != record_id]
                logger.info("manual record %s moved out of the current view", record_id)
        return updated

    def delete_manual(self, record_id: str) -> None:
        """Delete a manual record from the store, then from local state."""

        self.manual_record(record_id)
        with self._saving():
            self._store.delete(record_id)
            self._manual = [m for m in self._manual if m.id != record_id]
        logger.info("deleted manual record %s", record_id)


__all__ = [
    "BatchSaveResult",
    "DEFAULT_SAVE_CONCURRENCY",
    "MAX_SAVE_CONCURRENCY",
    "ReconciliationSession",
    "SAVE_CONCURRENCY_ENV",
    "resolve_save_concurrency",
]

"""Laboratory domain helpers and service operations.

This module owns the ``lab_laboratories`` / ``lab_pricing_entries`` reference
tables: small, server-side validated operations used by the CLI, plus the
read-only :class:`SqlLaboratoryDirectory` the reconciliation session consults
for price lists.

Exports
-------
- ``create_laboratory(...)``: create a lab for a clinic; names are unique per
  clinic (case-insensitive) among labs that are not deleted.
- ``rename_laboratory(...)``: change a lab's name under the same uniqueness rule.
- ``add_pricing_entry(...)`` / ``remove_pricing_entry(...)``: edit a price
  list. Percentage entries must lie in ``0..100``; fixed prices must be ``>= 0``.
- ``soft_delete_laboratory(...)``: hide a lab without touching the technician
  records that name it.
- ``normalize_name(...)`` and ``validate_name(...)``: shared by the CLI to give
  early feedback before hitting the database.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from db.client import session_scope
from db.models.lab import LabLaboratory
from db.models.lab import LabPricingEntry as LabPricingEntryRow
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .errors import FetchError, ValidationFailure
from .logging_setup import get_logger
from .models import ALL_LABS, LabPricingEntry, Laboratory, to_money

logger = get_logger(__name__)

# ---------------------------
# Name normalization/validation
# ---------------------------


def normalize_name(name: str) -> str:
    """Return a trimmed, single-spaced representation of ``name``."""

    return " ".join(name.strip().split())


@dataclass(frozen=True, slots=True)
class NameValidation:
    ok: bool
    reason: str | None = None


def validate_name(name: str, *, max_len: int = 128) -> NameValidation:
    n = normalize_name(name)
    if not n:
        return NameValidation(False, "Name cannot be empty")
    if len(n) > max_len:
        return NameValidation(False, f"Name must be at most {max_len} characters")
    if n.lower() == ALL_LABS:
        return NameValidation(False, f"'{ALL_LABS}' is reserved for the all-labs view")
    return NameValidation(True, None)


def validate_price(price: Decimal, *, is_percentage: bool) -> NameValidation:
    if price < 0:
        return NameValidation(False, "Price cannot be negative")
    if is_percentage and price > 100:
        return NameValidation(False, "Percentage must be between 0 and 100")
    return NameValidation(True, None)


# ---------------------------
# Row mapping
# ---------------------------


def _entry_from_row(row: LabPricingEntryRow) -> LabPricingEntry:
    return LabPricingEntry(
        id=row.id,
        name=row.name,
        price=row.price,
        is_percentage=bool(row.is_percentage),
    )


def _lab_from_row(row: LabLaboratory) -> Laboratory:
    return Laboratory(
        id=row.id,
        clinic_id=row.clinic_id,
        name=row.name,
        pricing_list=tuple(_entry_from_row(e) for e in row.pricing_entries),
        is_deleted=bool(row.is_deleted),
    )


def _get_lab(session: Session, laboratory_id: str) -> LabLaboratory:
    row = session.get(LabLaboratory, laboratory_id)
    if row is None or row.is_deleted:
        raise ValidationFailure("laboratory_id", f"laboratory not found: {laboratory_id!r}")
    return row


def _find_by_name(session: Session, clinic_id: str, name: str) -> LabLaboratory | None:
    return (
        session.execute(
            select(LabLaboratory)
            .where(
                LabLaboratory.clinic_id == clinic_id,
                func.lower(LabLaboratory.name) == normalize_name(name).lower(),
                LabLaboratory.is_deleted.is_(False),
            )
            .options(selectinload(LabLaboratory.pricing_entries))
        )
        .scalars()
        .first()
    )


# ---------------------------
# Service operations (callers own the transaction scope)
# ---------------------------


def create_laboratory(
    session: Session,
    *,
    clinic_id: str,
    name: str,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> Laboratory:
    """Create a laboratory for ``clinic_id``.

    Raises :class:`ValidationFailure` (field ``name``) for an invalid name or
    when an active lab with the same name already exists in the clinic.
    """

    name_n = normalize_name(name)
    v = validate_name(name_n)
    if not v.ok:
        raise ValidationFailure("name", v.reason or "invalid name")
    if _find_by_name(session, clinic_id, name_n) is not None:
        raise ValidationFailure("name", f"laboratory '{name_n}' already exists")

    row = LabLaboratory(id=id_factory(), clinic_id=clinic_id, name=name_n, is_deleted=False)
    session.add(row)
    session.flush()
    logger.info("created laboratory %s (%s) for clinic %s", name_n, row.id, clinic_id)
    return Laboratory(id=row.id, clinic_id=clinic_id, name=name_n)


def rename_laboratory(session: Session, *, laboratory_id: str, name: str) -> Laboratory:
    """Rename a laboratory, keeping names unique within its clinic.

    Technician records keep the name they were saved under.
    """

    row = _get_lab(session, laboratory_id)
    name_n = normalize_name(name)
    v = validate_name(name_n)
    if not v.ok:
        raise ValidationFailure("name", v.reason or "invalid name")
    clash = _find_by_name(session, row.clinic_id, name_n)
    if clash is not None and clash.id != row.id:
        raise ValidationFailure("name", f"laboratory '{name_n}' already exists")

    old = row.name
    row.name = name_n
    row.updated_at = datetime.now(UTC)
    session.flush()
    logger.info("renamed laboratory %s to %s (%s)", old, name_n, row.id)
    return _lab_from_row(row)


def add_pricing_entry(
    session: Session,
    *,
    laboratory_id: str,
    name: str,
    price: Decimal | int | str,
    is_percentage: bool = False,
    id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> LabPricingEntry:
    """Append a pricing entry to the end of a laboratory's price list."""

    lab = _get_lab(session, laboratory_id)
    name_n = normalize_name(name)
    if not name_n:
        raise ValidationFailure("name", "Name cannot be empty")
    try:
        amount = to_money(price)
    except (TypeError, ValueError) as e:
        raise ValidationFailure("price", str(e)) from e
    v = validate_price(amount, is_percentage=is_percentage)
    if not v.ok:
        raise ValidationFailure("price", v.reason or "invalid price")

    next_order = max((e.sort_order for e in lab.pricing_entries), default=-1) + 1
    row = LabPricingEntryRow(
        id=id_factory(),
        laboratory_id=lab.id,
        name=name_n,
        price=amount,
        is_percentage=is_percentage,
        sort_order=next_order,
    )
    lab.pricing_entries.append(row)
    session.flush()
    return LabPricingEntry(id=row.id, name=name_n, price=amount, is_percentage=is_percentage)


def remove_pricing_entry(session: Session, *, entry_id: str) -> None:
    row = session.get(LabPricingEntryRow, entry_id)
    if row is None:
        raise ValidationFailure("entry_id", f"pricing entry not found: {entry_id!r}")
    session.delete(row)
    session.flush()


def soft_delete_laboratory(session: Session, *, laboratory_id: str) -> None:
    """Mark a laboratory deleted. Its technician records are left untouched."""

    row = _get_lab(session, laboratory_id)
    row.is_deleted = True
    row.updated_at = datetime.now(UTC)
    session.flush()
    logger.info("soft-deleted laboratory %s (%s)", row.name, row.id)


def list_laboratories(
    session: Session, *, clinic_id: str, include_deleted: bool = False
) -> list[Laboratory]:
    stmt = (
        select(LabLaboratory)
        .where(LabLaboratory.clinic_id == clinic_id)
        .options(selectinload(LabLaboratory.pricing_entries))
        .order_by(LabLaboratory.name)
    )
    if not include_deleted:
        stmt = stmt.where(LabLaboratory.is_deleted.is_(False))
    return [_lab_from_row(r) for r in session.execute(stmt).scalars().all()]


# ---------------------------
# Read side for the reconciliation session
# ---------------------------


class SqlLaboratoryDirectory:
    """Price-list lookups by ``(lab_name, clinic_id)``.

    Names are matched after trimming and case-folding; deleted labs are
    invisible. An unknown lab has an empty price list.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def pricing_list(self, lab_name: str, clinic_id: str) -> list[LabPricingEntry]:
        try:
            with session_scope(self._session_factory) as session:
                row = _find_by_name(session, clinic_id, lab_name)
                if row is None:
                    return []
                return [_entry_from_row(e) for e in row.pricing_entries]
        except SQLAlchemyError as e:
            raise FetchError("labs", str(e)) from e

    def laboratories(self, clinic_id: str) -> list[Laboratory]:
        try:
            with session_scope(self._session_factory) as session:
                return list_laboratories(session, clinic_id=clinic_id)
        except SQLAlchemyError as e:
            raise FetchError("labs", str(e)) from e


__all__ = [
    "NameValidation",
    "SqlLaboratoryDirectory",
    "add_pricing_entry",
    "create_laboratory",
    "list_laboratories",
    "normalize_name",
    "remove_pricing_entry",
    "rename_laboratory",
    "soft_delete_laboratory",
    "validate_name",
    "validate_price",
]

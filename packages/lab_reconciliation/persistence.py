# ruff: noqa: I001
"""Technician-record persistence.

The engine talks to storage through the :class:`RecordStore` protocol. The
SQL implementation here writes to ``lab_technician_records`` (owned by
``libs/db``) through a session factory from ``db.client``.

Scope:
- Fetch a clinic's records for one month, optionally for one laboratory.
- Upsert a whole record by id (insert or replace every column).
- Delete a record by id.

Order lines travel in the ``details`` JSON column as
:class:`~lab_reconciliation.models.OrderLinePayload` dicts. Database errors
surface as :class:`~lab_reconciliation.errors.FetchError` on reads and
:class:`~lab_reconciliation.errors.SaveError` on writes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.client import session_scope
from db.models.lab import LabTechnicianRecord
from .errors import FetchError, SaveError
from .logging_setup import get_logger
from .merge import is_all_labs
from .models import (
    Category,
    LinkedRecord,
    ManualRecord,
    OrderLine,
    OrderLinePayload,
    RecordKind,
    TechnicianRecord,
    YearMonth,
)

logger = get_logger(__name__)


class RecordStore(Protocol):
    """Storage for technician records, keyed by record id."""

    def fetch_technician_records(
        self, clinic_id: str, lab_name: str | None, year_month: YearMonth
    ) -> list[TechnicianRecord]: ...

    def upsert(self, record: TechnicianRecord) -> None: ...

    def delete(self, record_id: str) -> None: ...


# ---------------------------
# Row <-> record mapping
# ---------------------------


def details_to_json(details: tuple[OrderLine, ...]) -> list[dict[str, Any]]:
    return [OrderLinePayload.from_line(line).to_json_dict() for line in details]


def details_from_json(raw: Any) -> tuple[OrderLine, ...]:
    if not raw:
        return ()
    return tuple(OrderLinePayload.model_validate(item).to_line() for item in raw)


def _parse_category(raw: str | None, record_id: str) -> Category | None:
    if not raw:
        return None
    try:
        return Category(raw)
    except ValueError:
        # Unknown codes are dropped so attribution falls back to the ledger.
        logger.warning("record %s has unknown category %r; ignoring", record_id, raw)
        return None


def record_to_values(record: TechnicianRecord) -> dict[str, Any]:
    """Column values for ``record``; every column is written on upsert."""

    return {
        "id": record.id,
        "clinic_id": record.clinic_id,
        "lab_name": record.lab_name.strip(),
        "date": record.date,
        "kind": record.kind.value,
        "linked_row_id": record.linked_row_id if isinstance(record, LinkedRecord) else None,
        "amount": record.amount,
        "discount": record.discount,
        "category": record.category.value if record.category is not None else None,
        "details": details_to_json(record.details),
        "patient_name": record.patient_name or None,
        "doctor_name": record.doctor_name or None,
        "treatment_content": record.treatment_content or None,
        "note": record.note or None,
        "updated_at": record.updated_at,
    }


def row_to_record(row: LabTechnicianRecord) -> TechnicianRecord:
    common: Mapping[str, Any] = {
        "id": row.id,
        "clinic_id": row.clinic_id,
        "lab_name": row.lab_name,
        "date": row.date,
        "amount": row.amount,
        "discount": row.discount,
        "category": _parse_category(row.category, row.id),
        "details": details_from_json(row.details),
        "patient_name": row.patient_name or "",
        "doctor_name": row.doctor_name or "",
        "treatment_content": row.treatment_content or "",
        "note": row.note or "",
        "updated_at": int(row.updated_at or 0),
    }
    if row.kind == RecordKind.LINKED.value:
        return LinkedRecord(linked_row_id=row.linked_row_id or "", **common)
    return ManualRecord(**common)


# ---------------------------
# SQL implementation
# ---------------------------


_UPDATABLE = (
    "clinic_id",
    "lab_name",
    "date",
    "kind",
    "linked_row_id",
    "amount",
    "discount",
    "category",
    "details",
    "patient_name",
    "doctor_name",
    "treatment_content",
    "note",
    "updated_at",
)


def _upsert_statement(dialect: str, values: dict[str, Any]):
    if dialect == "postgresql":
        stmt = pg_insert(LabTechnicianRecord).values(values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(LabTechnicianRecord).values(values)
    else:
        return None
    return stmt.on_conflict_do_update(
        index_elements=[LabTechnicianRecord.id],
        set_={name: getattr(stmt.excluded, name) for name in _UPDATABLE},
    )


class SqlRecordStore:
    """:class:`RecordStore` backed by ``lab_technician_records``."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def fetch_technician_records(
        self, clinic_id: str, lab_name: str | None, year_month: YearMonth
    ) -> list[TechnicianRecord]:
        stmt = select(LabTechnicianRecord).where(
            LabTechnicianRecord.clinic_id == clinic_id,
            LabTechnicianRecord.date >= year_month.first_day,
            LabTechnicianRecord.date <= year_month.last_day,
        )
        if not is_all_labs(lab_name):
            assert lab_name is not None
            stmt = stmt.where(LabTechnicianRecord.lab_name == lab_name.strip())
        stmt = stmt.order_by(LabTechnicianRecord.date, LabTechnicianRecord.id)

        try:
            with session_scope(self._session_factory) as session:
                rows = session.execute(stmt).scalars().all()
                return [row_to_record(r) for r in rows]
        except SQLAlchemyError as e:
            raise FetchError("store", str(e)) from e
        except ValueError as e:
            # Includes pydantic ValidationError from malformed order details.
            raise FetchError("store", f"malformed technician record: {e}") from e

    def upsert(self, record: TechnicianRecord) -> None:
        values = record_to_values(record)
        try:
            with session_scope(self._session_factory) as session:
                if isinstance(record, LinkedRecord):
                    self._check_linked_slot(session, record)
                stmt = _upsert_statement(session.get_bind().dialect.name, values)
                if stmt is None:
                    session.merge(LabTechnicianRecord(**values))
                else:
                    session.execute(stmt)
        except SQLAlchemyError as e:
            raise SaveError(record.id, str(e)) from e
        logger.debug("upserted %s record %s", record.kind.value, record.id)

    def delete(self, record_id: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.execute(
                    delete(LabTechnicianRecord).where(LabTechnicianRecord.id == record_id)
                )
        except SQLAlchemyError as e:
            raise SaveError(record_id, str(e)) from e
        logger.debug("deleted record %s", record_id)

    @staticmethod
    def _check_linked_slot(session: Session, record: LinkedRecord) -> None:
        """Refuse a second linked record for a ledger row already taken."""

        existing = session.execute(
            select(LabTechnicianRecord.id).where(
                LabTechnicianRecord.clinic_id == record.clinic_id,
                LabTechnicianRecord.linked_row_id == record.linked_row_id,
                LabTechnicianRecord.id != record.id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise SaveError(
                record.id,
                f"ledger row {record.linked_row_id} is already linked to record {existing}",
            )


__all__ = [
    "RecordStore",
    "SqlRecordStore",
    "details_from_json",
    "details_to_json",
    "record_to_values",
    "row_to_record",
]

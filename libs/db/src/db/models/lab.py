from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: lab_laboratories / lab_pricing_entries
# ---------------------------


class LabLaboratory(Base):
    __tablename__ = "lab_laboratories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(String, nullable=False)
    # Lookups by (name, clinic_id) trim the name; the lab manager stores it trimmed.
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Soft delete only: technician records keep referring to the lab by name.
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    pricing_entries: Mapped[list[LabPricingEntry]] = relationship(
        back_populates="laboratory",
        cascade="all, delete-orphan",
        order_by="LabPricingEntry.sort_order",
    )

    __table_args__ = (Index("ix_lab_laboratories_clinic_name", "clinic_id", "name"),)


class LabPricingEntry(Base):
    __tablename__ = "lab_pricing_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    laboratory_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("lab_laboratories.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Currency units for fixed entries; 0..100 when is_percentage is set.
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    is_percentage: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))

    laboratory: Mapped[LabLaboratory] = relationship(back_populates="pricing_entries")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_lab_pricing_price_non_negative"),
        CheckConstraint(
            "NOT is_percentage OR price <= 100",
            name="ck_lab_pricing_percentage_range",
        ),
    )


# ---------------------------
# Core: lab_technician_records
# ---------------------------


class LabTechnicianRecord(Base):
    __tablename__ = "lab_technician_records"

    # Engine-generated UUID; upserts target this key.
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    clinic_id: Mapped[str] = mapped_column(String, nullable=False)
    lab_name: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    # Ledger row id for linked records; NULL for manual adjustments.
    linked_row_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), nullable=False, server_default=text("0")
    )
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    # Order lines serialized as a JSON array; they have no lifecycle of their own.
    details: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    patient_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    doctor_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    treatment_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Epoch milliseconds stamped by the writer.
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("kind in ('linked','manual')", name="ck_lab_tech_kind"),
        CheckConstraint(
            "(kind = 'linked') = (linked_row_id IS NOT NULL)",
            name="ck_lab_tech_linked_row_id",
        ),
        CheckConstraint("discount >= 0", name="ck_lab_tech_discount_non_negative"),
        CheckConstraint("length(lab_name) > 0", name="ck_lab_tech_lab_name_non_empty"),
        # At most one linked record per ledger row within a clinic.
        Index(
            "uq_lab_tech_clinic_linked_row",
            "clinic_id",
            "linked_row_id",
            unique=True,
            postgresql_where=text("linked_row_id IS NOT NULL"),
            sqlite_where=text("linked_row_id IS NOT NULL"),
        ),
        Index("ix_lab_tech_clinic_date", "clinic_id", "date"),
    )


__all__ = [
    "Base",
    "LabLaboratory",
    "LabPricingEntry",
    "LabTechnicianRecord",
]

# ruff: noqa: I001
"""Laboratory config and technician record tables.

Revision ID: 0001_lab_core
Revises: None
Create Date: 2025-10-02
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_lab_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lab_laboratories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index(
        "ix_lab_laboratories_clinic_name", "lab_laboratories", ["clinic_id", "name"]
    )

    op.create_table(
        "lab_pricing_entries",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("laboratory_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column(
            "is_percentage", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(
            ["laboratory_id"], ["lab_laboratories.id"], ondelete="CASCADE"
        ),
        sa.CheckConstraint("price >= 0", name="ck_lab_pricing_price_non_negative"),
        sa.CheckConstraint(
            "NOT is_percentage OR price <= 100", name="ck_lab_pricing_percentage_range"
        ),
    )

    op.create_table(
        "lab_technician_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("clinic_id", sa.String(), nullable=False),
        sa.Column("lab_name", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("linked_row_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("patient_name", sa.Text(), nullable=True),
        sa.Column("doctor_name", sa.Text(), nullable=True),
        sa.Column("treatment_content", sa.Text(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("kind in ('linked','manual')", name="ck_lab_tech_kind"),
        sa.CheckConstraint(
            "(kind = 'linked') = (linked_row_id IS NOT NULL)",
            name="ck_lab_tech_linked_row_id",
        ),
        sa.CheckConstraint("discount >= 0", name="ck_lab_tech_discount_non_negative"),
        sa.CheckConstraint("length(lab_name) > 0", name="ck_lab_tech_lab_name_non_empty"),
    )
    # Partial unique index: one linked record per (clinic, ledger row)
    op.create_index(
        "uq_lab_tech_clinic_linked_row",
        "lab_technician_records",
        ["clinic_id", "linked_row_id"],
        unique=True,
        postgresql_where=sa.text("linked_row_id IS NOT NULL"),
        sqlite_where=sa.text("linked_row_id IS NOT NULL"),
    )
    op.create_index(
        "ix_lab_tech_clinic_date", "lab_technician_records", ["clinic_id", "date"]
    )


def downgrade() -> None:
    op.drop_index("ix_lab_tech_clinic_date", table_name="lab_technician_records")
    op.drop_index("uq_lab_tech_clinic_linked_row", table_name="lab_technician_records")
    op.drop_table("lab_technician_records")
    op.drop_table("lab_pricing_entries")
    op.drop_index("ix_lab_laboratories_clinic_name", table_name="lab_laboratories")
    op.drop_table("lab_laboratories")

"""Adapter for the clinic's daily-ledger CSV export.

CSV header (exact keys expected):
id, date, patient, doctor, lab, prostho, implant, ortho, sov, inv, whitening,
perio, other_self_pay, retail_products, retail_diy_whitening, revenue,
treatment_content

One row per patient visit. Amount columns may be blank (zero) and may carry
thousands separators. ``date`` is ``YYYY-MM-DD`` (``YYYY/MM/DD`` also accepted).
A blank ``lab`` means no laboratory work was involved.

Failure mode
------------
Rows are validated with pydantic. The first invalid row raises ``csv.Error``
naming its 1-based data-row number and the offending column.
"""

from __future__ import annotations

import csv
import datetime as dt
from collections.abc import Iterable, Iterator, Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...models import TREATMENT_SCAN_ORDER, RetailAmounts, TransactionRow, to_money

REQUIRED_COLUMNS: tuple[str, ...] = (
    "id",
    "date",
    "patient",
    "doctor",
    "lab",
    *(c.value for c in TREATMENT_SCAN_ORDER),
    "retail_products",
    "retail_diy_whitening",
    "revenue",
    "treatment_content",
)


class LedgerCsvRow(BaseModel):
    """Typed view of one ledger CSV row."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

    id: str
    date: dt.date
    patient_name: str = Field(default="", alias="patient")
    doctor_name: str = Field(default="", alias="doctor")
    lab_name: str | None = Field(default=None, alias="lab")
    prostho: Decimal = Decimal(0)
    implant: Decimal = Decimal(0)
    ortho: Decimal = Decimal(0)
    sov: Decimal = Decimal(0)
    inv: Decimal = Decimal(0)
    whitening: Decimal = Decimal(0)
    perio: Decimal = Decimal(0)
    other_self_pay: Decimal = Decimal(0)
    retail_products: Decimal = Decimal(0)
    retail_diy_whitening: Decimal = Decimal(0)
    revenue: Decimal = Decimal(0)
    treatment_content: str = ""

    @field_validator("id")
    @classmethod
    def _id_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("id must be a non-empty string")
        return v

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, v: Any) -> Any:
        if isinstance(v, str):
            s = v.strip()
            for fmt in ("%Y-%m-%d", "%Y/%m/%d"):
                try:
                    return dt.datetime.strptime(s, fmt).date()
                except ValueError:
                    continue
            raise ValueError(f"unrecognized date {s!r}; expected YYYY-MM-DD")
        return v

    @field_validator(
        "prostho",
        "implant",
        "ortho",
        "sov",
        "inv",
        "whitening",
        "perio",
        "other_self_pay",
        "retail_products",
        "retail_diy_whitening",
        "revenue",
        mode="before",
    )
    @classmethod
    def _parse_amount(cls, v: Any) -> Decimal:
        return to_money(v)

    @field_validator("lab_name")
    @classmethod
    def _blank_lab_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v or None

    def to_transaction_row(self, clinic_id: str) -> TransactionRow:
        return TransactionRow(
            id=self.id,
            date=self.date,
            clinic_id=clinic_id,
            patient_name=self.patient_name,
            doctor_name=self.doctor_name,
            lab_name=self.lab_name,
            treatment_amounts={c: getattr(self, c.value) for c in TREATMENT_SCAN_ORDER},
            retail_amounts=RetailAmounts(
                products=self.retail_products, diy_whitening=self.retail_diy_whitening
            ),
            revenue=self.revenue,
            treatment_content=self.treatment_content,
        )


def check_header(fieldnames: Iterable[str] | None) -> None:
    headers = {h.strip() for h in (fieldnames or [])}
    if not headers:
        raise csv.Error("ledger CSV appears to have no header row")
    missing = [h for h in REQUIRED_COLUMNS if h not in headers]
    if missing:
        raise csv.Error("ledger CSV header mismatch. Missing columns: " + ", ".join(missing))


def to_transaction_rows(
    rows: Iterable[Mapping[str, str]], *, clinic_id: str
) -> Iterator[TransactionRow]:
    """Convert ledger CSV rows to :class:`TransactionRow` objects, in file order."""

    for n, row in enumerate(rows, start=1):
        cleaned = {(k or "").strip(): v for k, v in row.items()}
        try:
            parsed = LedgerCsvRow.model_validate(cleaned)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ())) or "row"
            raise csv.Error(f"ledger row {n}: {loc}: {first.get('msg')}") from e
        yield parsed.to_transaction_row(clinic_id)


__all__ = ["REQUIRED_COLUMNS", "LedgerCsvRow", "check_header", "to_transaction_rows"]

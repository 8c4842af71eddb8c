import csv
from datetime import date
from decimal import Decimal

import pytest

from lab_reconciliation.errors import FetchError
from lab_reconciliation.ingest.utils import load_transactions_from_csv
from lab_reconciliation.ledger import CsvLedgerReader
from lab_reconciliation.models import Category

from tests.helpers.ledger import write_ledger
from tests.helpers.stores import CLINIC, MARCH


def test_load_parses_amounts_dates_and_blank_lab(tmp_path):
    p = write_ledger(
        tmp_path / "ledger.csv",
        [
            {
                "id": "r1",
                "date": "2024-03-05",
                "patient": " Ada ",
                "doctor": "Dr. Lee",
                "lab": "Acme Dental Lab",
                "implant": "1,200",
                "perio": "80.5",
                "revenue": "12,000",
                "treatment_content": "implant crown",
            },
            {"id": "r2", "date": "2024/03/06", "patient": "Bo", "lab": "  ", "ortho": "300"},
        ],
    )

    r1, r2 = load_transactions_from_csv(p, clinic_id=CLINIC)

    assert r1.id == "r1" and r1.clinic_id == CLINIC
    assert r1.date == date(2024, 3, 5)
    assert r1.patient_name == "Ada"
    assert r1.treatment_amount(Category.IMPLANT) == Decimal("1200")
    assert r1.treatment_amount(Category.PERIO) == Decimal("80.5")
    assert r1.treatment_amount(Category.ORTHO) == Decimal("0")
    assert r1.revenue == Decimal("12000")
    assert r1.has_lab

    assert r2.date == date(2024, 3, 6)
    assert r2.lab_name is None
    assert not r2.has_lab


def test_missing_columns_are_reported(tmp_path):
    p = write_ledger(tmp_path / "ledger.csv", [], columns=("id", "date", "patient"))
    with pytest.raises(csv.Error, match="Missing columns: doctor, lab"):
        load_transactions_from_csv(p, clinic_id=CLINIC)


def test_invalid_row_names_row_and_column(tmp_path):
    p = write_ledger(
        tmp_path / "ledger.csv",
        [
            {"id": "r1", "date": "2024-03-05", "implant": "10"},
            {"id": "r2", "date": "2024-03-06", "implant": "ten"},
        ],
    )
    with pytest.raises(csv.Error, match=r"ledger row 2: implant"):
        load_transactions_from_csv(p, clinic_id=CLINIC)


def test_reader_returns_empty_month_when_export_is_missing(tmp_path):
    reader = CsvLedgerReader(tmp_path)
    assert reader.fetch_monthly_transactions(CLINIC, MARCH) == []


def test_reader_drops_rows_outside_the_month(tmp_path):
    reader = CsvLedgerReader(tmp_path)
    write_ledger(
        reader.path_for(CLINIC, MARCH),
        [
            {"id": "r1", "date": "2024-03-31", "implant": "10"},
            {"id": "r0", "date": "2024-02-29", "implant": "10"},
        ],
    )
    assert reader.path_for(CLINIC, MARCH) == tmp_path / CLINIC / "2024-03.csv"
    assert [r.id for r in reader.fetch_monthly_transactions(CLINIC, MARCH)] == ["r1"]


def test_reader_wraps_parse_failures_as_fetch_error(tmp_path):
    reader = CsvLedgerReader(tmp_path)
    write_ledger(reader.path_for(CLINIC, MARCH), [{"id": "r1", "date": "soon"}])
    with pytest.raises(FetchError) as ei:
        reader.fetch_monthly_transactions(CLINIC, MARCH)
    assert ei.value.source == "ledger"


def test_reader_from_env(tmp_path, monkeypatch):
    with pytest.raises(RuntimeError):
        CsvLedgerReader.from_env()
    monkeypatch.setenv("LAB_RECON_LEDGER_DIR", str(tmp_path))
    assert CsvLedgerReader.from_env().ledger_dir == tmp_path

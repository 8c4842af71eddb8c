from __future__ import annotations

import re

import pytest
from db.client import get_session_factory
from typer.testing import CliRunner

from lab_reconciliation.cli import app
from lab_reconciliation.models import ManualRecord
from lab_reconciliation.persistence import SqlRecordStore

from tests.helpers.db import bootstrap_sqlite_db
from tests.helpers.ledger import write_ledger
from tests.helpers.stores import CLINIC, MARCH

runner = CliRunner()

LEDGER_ROWS = [
    {
        "id": "r1",
        "date": "2024-03-03",
        "patient": "Ada",
        "lab": "Acme Dental Lab",
        "implant": "500",
        "perio": "200",
        "revenue": "10000",
    },
    {"id": "r2", "date": "2024-03-04", "patient": "Bo", "lab": "Other Lab", "ortho": "300"},
]


@pytest.fixture()
def env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    url = bootstrap_sqlite_db(tmp_path / "lab.sqlite3")
    ledger_dir = tmp_path / "ledger"
    write_ledger(ledger_dir / CLINIC / "2024-03.csv", LEDGER_ROWS)
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("LAB_RECON_LEDGER_DIR", str(ledger_dir))
    return url


def _run(*args: str):
    return runner.invoke(app, list(args))


def _scope(*extra: str) -> list[str]:
    return ["--clinic", CLINIC, "--month", str(MARCH), *extra]


def test_reconcile_shows_totals(env):
    result = _run("reconcile", *_scope())
    assert result.exit_code == 0, result.output
    assert "Linked total: 0.00" in result.output
    assert "Grand total: 0.00" in result.output


def test_bad_month_is_a_usage_error(env):
    result = _run("reconcile", "--clinic", CLINIC, "--month", "March")
    assert result.exit_code == 2


def test_missing_database_url_exits_with_config_error(env, monkeypatch):
    monkeypatch.delenv("DATABASE_URL")
    result = _run("reconcile", *_scope())
    assert result.exit_code == 2
    assert "DATABASE_URL is not set" in result.output


def test_lab_setup_then_order_then_reconcile(env):
    created = _run("add-lab", "Acme Dental Lab", "--clinic", CLINIC)
    assert created.exit_code == 0, created.output
    lab_id = re.search(r"\(([0-9a-f-]{36})\)", created.output).group(1)

    entry = _run("add-pricing-entry", lab_id, "--name", "Crown", "--price", "500")
    assert entry.exit_code == 0, entry.output
    entry_id = re.search(r"\(([0-9a-f-]{36})\)", entry.output).group(1)

    saved = _run(
        "save-order", "r1", *_scope(), "--item", f"{entry_id}:2:16", "--discount", "100"
    )
    assert saved.exit_code == 0, saved.output
    assert "net 900.00" in saved.output

    shown = _run("reconcile", *_scope("--lab", "Acme Dental Lab"))
    assert shown.exit_code == 0, shown.output
    assert "Linked total: 900.00" in shown.output


def test_set_category_saves_and_reports(env):
    result = _run("set-category", "r1", "perio", *_scope())
    assert result.exit_code == 0, result.output
    assert "Row r1 attributed to perio." in result.output

    (record,) = SqlRecordStore(get_session_factory(database_url=env)).fetch_technician_records(
        CLINIC, None, MARCH
    )
    assert record.linked_row_id == "r1"
    assert record.category == "perio"


def test_set_category_rejects_categories_not_on_the_row(env):
    result = _run("set-category", "r1", "ortho", *_scope())
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_add_manual_requires_a_concrete_lab(env):
    result = _run(
        "add-manual",
        *_scope(),
        "--date", "2024-03-10",
        "--amount", "120",
        "--category", "prostho",
        "--patient", "walk-in",
    )
    assert result.exit_code == 1
    assert "lab_name" in result.output


def test_add_and_delete_manual_record(env):
    added = _run(
        "add-manual",
        *_scope("--lab", "Acme Dental Lab"),
        "--date", "2024-03-10",
        "--amount", "120",
        "--category", "prostho",
        "--patient", "walk-in",
        "--note", "remake",
    )
    assert added.exit_code == 0, added.output
    assert "Grand total: 120.00" in added.output

    store = SqlRecordStore(get_session_factory(database_url=env))
    (record,) = store.fetch_technician_records(CLINIC, "Acme Dental Lab", MARCH)
    assert isinstance(record, ManualRecord)
    assert record.note == "remake"

    removed = _run("delete-manual", record.id, *_scope("--lab", "Acme Dental Lab"), "--yes")
    assert removed.exit_code == 0, removed.output
    assert store.fetch_technician_records(CLINIC, None, MARCH) == []


def test_negative_totals_render_as_credit(env):
    _run(
        "add-manual",
        *_scope("--lab", "Acme Dental Lab"),
        "--date", "2024-03-10",
        "--amount=-75",
        "--category", "prostho",
        "--patient", "refund",
    )
    shown = _run("reconcile", *_scope())
    assert "Manual total: (75.00)" in shown.output


def test_lab_admin_commands(env):
    created = _run("add-lab", "Acme Dental Lab", "--clinic", CLINIC)
    lab_id = re.search(r"\(([0-9a-f-]{36})\)", created.output).group(1)

    renamed = _run("rename-lab", lab_id, "Acme Labs")
    assert renamed.exit_code == 0, renamed.output
    assert "No laboratories." not in _run("labs", "--clinic", CLINIC).output

    deleted = _run("delete-lab", lab_id)
    assert deleted.exit_code == 0, deleted.output
    assert "No laboratories." in _run("labs", "--clinic", CLINIC).output

    again = _run("delete-lab", lab_id)
    assert again.exit_code == 1

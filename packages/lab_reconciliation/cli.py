# ruff: noqa: I001
"""CLI for the ``lab_reconciliation`` package.

A Typer console interface over :class:`~lab_reconciliation.orchestrator.ReconciliationSession`
and the laboratory service. Environment variables (``DATABASE_URL``,
``LAB_RECON_LEDGER_DIR``, ``LAB_RECON_SAVE_CONCURRENCY``,
``LAB_RECON_LOG_LEVEL``) are loaded from a local ``.env`` using
``python-dotenv`` before any command runs. Output is rendered with ``rich``.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from db.client import get_session_factory, session_scope
from .errors import ReconciliationError
from .labs import (
    SqlLaboratoryDirectory,
    add_pricing_entry,
    create_laboratory,
    rename_laboratory,
    soft_delete_laboratory,
)
from .ledger import CsvLedgerReader
from .logging_setup import configure_logging, get_logger
from .models import ALL_LABS, ReconciliationView, YearMonth
from .orchestrator import ReconciliationSession
from .persistence import SqlRecordStore

logger = get_logger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Reconcile lab technician fees against the clinic's daily ledger. "
        "Loads DATABASE_URL and LAB_RECON_LEDGER_DIR from a local .env."
    ),
)
console = Console()


# ---- Shared options ----------------------------------------------------------

ClinicOpt = Annotated[str, typer.Option("--clinic", help="Clinic identifier.")]
MonthOpt = Annotated[str, typer.Option("--month", help="Month to reconcile, YYYY-MM.")]
LabOpt = Annotated[
    str, typer.Option("--lab", help=f"Laboratory name, or '{ALL_LABS}' for every lab.")
]
DatabaseUrlOpt = Annotated[
    str | None, typer.Option("--database-url", help="Override DATABASE_URL.")
]
LedgerDirOpt = Annotated[
    Path | None,
    typer.Option(
        "--ledger-dir",
        help="Directory of ledger CSV exports (falls back to LAB_RECON_LEDGER_DIR).",
        file_okay=False,
    ),
]


# ---- Small module-level helpers ---------------------------------------------


def _fail(message: str, code: int = 1) -> typer.Exit:
    console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(code)


def _parse_month(value: str) -> YearMonth:
    try:
        return YearMonth.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--month") from e


def _session_factory(database_url: str | None):
    try:
        return get_session_factory(database_url=database_url)
    except RuntimeError as e:
        raise _fail(str(e), 2) from e


def _open_session(
    *,
    clinic: str,
    month: str,
    lab: str,
    database_url: str | None,
    ledger_dir: Path | None,
) -> ReconciliationSession:
    year_month = _parse_month(month)
    factory = _session_factory(database_url)
    try:
        ledger = CsvLedgerReader(ledger_dir) if ledger_dir else CsvLedgerReader.from_env()
    except RuntimeError as e:
        raise _fail(str(e), 2) from e

    session = ReconciliationSession(
        clinic_id=clinic,
        year_month=year_month,
        ledger=ledger,
        store=SqlRecordStore(factory),
        labs=SqlLaboratoryDirectory(factory),
        lab_filter=lab,
    )
    try:
        session.load()
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    return session


def fmt_money(value: Decimal) -> str:
    """Format currency; negative amounts (lab credits) are red and parenthesised."""

    if value < 0:
        return f"[red]({-value:,.2f})[/red]"
    return f"{value:,.2f}"


def render_view(view: ReconciliationView, *, title: str) -> None:
    rows = Table(title=f"Linked rows: {title}")
    for col in ("Row", "Date", "Lab", "Patient", "Category", "Fee", "State"):
        rows.add_column(col, justify="right" if col == "Fee" else "left")
    for r in view.rows:
        rows.add_row(
            r.id,
            r.date.isoformat(),
            r.lab_name,
            r.transaction.patient_name,
            r.selected_category.value,
            fmt_money(r.current_fee),
            "dirty" if r.dirty else ("saved" if r.record_id else ""),
        )
    console.print(rows)

    if view.manual_records:
        manual = Table(title="Manual records")
        for col in ("Record", "Date", "Lab", "Patient", "Category", "Amount", "Note"):
            manual.add_column(col, justify="right" if col == "Amount" else "left")
        for m in view.manual_records:
            manual.add_row(
                m.id,
                m.date.isoformat(),
                m.lab_name,
                m.patient_name,
                m.category.value if m.category else "",
                fmt_money(m.amount),
                m.note,
            )
        console.print(manual)

    if view.orphans:
        orphans = Table(title="Orphaned linked records (ledger row missing)")
        for col in ("Record", "Ledger row", "Date", "Lab", "Amount"):
            orphans.add_column(col)
        for o in view.orphans:
            orphans.add_row(
                o.id, o.linked_row_id, o.date.isoformat(), o.lab_name, fmt_money(o.amount)
            )
        console.print(orphans)

    totals = view.totals
    console.print(f"Linked total: {fmt_money(totals.linked)}")
    console.print(f"Manual total: {fmt_money(totals.manual)}")
    console.print(f"[bold]Grand total: {fmt_money(totals.grand)}[/bold]")


# ---- Commands ------------------------------------------------------------------


@app.command("reconcile")
def reconcile_cmd(
    clinic: ClinicOpt,
    month: MonthOpt,
    lab: LabOpt = ALL_LABS,
    database_url: DatabaseUrlOpt = None,
    ledger_dir: LedgerDirOpt = None,
) -> None:
    """Show the merged view of ledger rows, manual records and totals."""

    session = _open_session(
        clinic=clinic, month=month, lab=lab, database_url=database_url, ledger_dir=ledger_dir
    )
    render_view(session.view, title=f"{clinic} {session.year_month} ({session.lab_filter})")


@app.command("set-category")
def set_category_cmd(
    row_id: Annotated[str, typer.Argument(help="Ledger row id.")],
    category: Annotated[
        str | None, typer.Argument(help="New category; prompts when omitted.")
    ] = None,
    *,
    clinic: ClinicOpt,
    month: MonthOpt,
    lab: LabOpt = ALL_LABS,
    database_url: DatabaseUrlOpt = None,
    ledger_dir: LedgerDirOpt = None,
) -> None:
    """Re-attribute a ledger row and save it."""

    session = _open_session(
        clinic=clinic, month=month, lab=lab, database_url=database_url, ledger_dir=ledger_dir
    )
    try:
        row = session.row(row_id)
        if category is None:
            from .term_ui import select_category

            picked = select_category(row.re_pickable_categories, default=row.selected_category)
            if picked is None:
                console.print("[yellow]Canceled.[/yellow]")
                return
            category = picked.value
        session.change_category(row_id, category)
        result = session.save_dirty()
    except ReconciliationError as e:
        raise _fail(str(e)) from e

    for failed_id, err in result.failed.items():
        console.print(f"[red]Save failed[/red] for row {failed_id}: {err}")
    if result.resync_error is not None:
        console.print(f"[yellow]Saved, but refresh failed:[/yellow] {result.resync_error}")
    if result.failed:
        raise typer.Exit(1)
    console.print(f"Row {row_id} attributed to {session.row(row_id).selected_category.value}.")


@app.command("add-manual")
def add_manual_cmd(
    clinic: ClinicOpt,
    month: MonthOpt,
    entry_date: Annotated[str, typer.Option("--date", help="Record date, YYYY-MM-DD.")],
    amount: Annotated[str, typer.Option("--amount", help="Net amount payable.")],
    category: Annotated[str, typer.Option("--category", help="Billing category.")],
    patient: Annotated[str, typer.Option("--patient", help="Patient name.")],
    lab: LabOpt = ALL_LABS,
    doctor: Annotated[str, typer.Option("--doctor")] = "",
    treatment: Annotated[str, typer.Option("--treatment")] = "",
    note: Annotated[str, typer.Option("--note")] = "",
    database_url: DatabaseUrlOpt = None,
    ledger_dir: LedgerDirOpt = None,
) -> None:
    """Add a manual adjustment for a specific laboratory."""

    session = _open_session(
        clinic=clinic, month=month, lab=lab, database_url=database_url, ledger_dir=ledger_dir
    )
    try:
        record = session.add_manual(
            {
                "date": entry_date,
                "amount": amount,
                "category": category,
                "patient_name": patient,
                "doctor_name": doctor,
                "treatment_content": treatment,
                "note": note,
            }
        )
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(f"Added manual record {record.id} ({fmt_money(record.amount)}).")
    console.print(f"Grand total: {fmt_money(session.totals.grand)}")


@app.command("delete-manual")
def delete_manual_cmd(
    record_id: Annotated[str, typer.Argument(help="Manual record id.")],
    *,
    clinic: ClinicOpt,
    month: MonthOpt,
    lab: LabOpt = ALL_LABS,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip the confirmation.")] = False,
    database_url: DatabaseUrlOpt = None,
    ledger_dir: LedgerDirOpt = None,
) -> None:
    """Delete a manual record. This cannot be undone."""

    session = _open_session(
        clinic=clinic, month=month, lab=lab, database_url=database_url, ledger_dir=ledger_dir
    )
    try:
        record = session.manual_record(record_id)
        if not yes and not typer.confirm(
            f"Delete manual record for {record.patient_name} ({record.amount})?"
        ):
            console.print("[yellow]Canceled.[/yellow]")
            return
        session.delete_manual(record_id)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(f"Deleted manual record {record_id}.")


@app.command("save-order")
def save_order_cmd(
    target_id: Annotated[str, typer.Argument(help="Ledger row id (or record id with --manual).")],
    *,
    clinic: ClinicOpt,
    month: MonthOpt,
    item: Annotated[
        list[str] | None,
        typer.Option(
            "--item",
            help="Pricing entry to add as ENTRY_ID[:QTY[:TOOTH]]; repeatable.",
        ),
    ] = None,
    discount: Annotated[str | None, typer.Option("--discount")] = None,
    clear: Annotated[bool, typer.Option("--clear", help="Drop existing lines first.")] = False,
    manual: Annotated[bool, typer.Option("--manual", help="Target a manual record.")] = False,
    lab: LabOpt = ALL_LABS,
    database_url: DatabaseUrlOpt = None,
    ledger_dir: LedgerDirOpt = None,
) -> None:
    """Edit and save an itemized order for a row or manual record."""

    session = _open_session(
        clinic=clinic, month=month, lab=lab, database_url=database_url, ledger_dir=ledger_dir
    )
    try:
        draft = session.open_manual_order(target_id) if manual else session.open_order(target_id)
        if clear:
            draft.lines.clear()
        for raw in item or []:
            entry_id, _, rest = raw.partition(":")
            qty_raw, _, tooth = rest.partition(":")
            try:
                quantity = int(qty_raw) if qty_raw else 1
            except ValueError as e:
                raise typer.BadParameter(f"bad quantity in {raw!r}", param_hint="--item") from e
            draft.add_line(entry_id, tooth_position=tooth, quantity=quantity)
        if discount is not None:
            draft.set_discount(discount)
        session.save_order(draft)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(
        f"Saved order for {target_id}: items {fmt_money(draft.items_total)}, "
        f"net {fmt_money(draft.net_total)}."
    )


@app.command("add-lab")
def add_lab_cmd(
    name: Annotated[str, typer.Argument(help="Laboratory name.")],
    *,
    clinic: ClinicOpt,
    database_url: DatabaseUrlOpt = None,
) -> None:
    """Create a laboratory for a clinic."""

    factory = _session_factory(database_url)
    try:
        with session_scope(factory) as s:
            lab = create_laboratory(s, clinic_id=clinic, name=name)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(f"Created laboratory {lab.name} ({lab.id}).")


@app.command("rename-lab")
def rename_lab_cmd(
    laboratory_id: Annotated[str, typer.Argument(help="Laboratory id.")],
    name: Annotated[str, typer.Argument(help="New laboratory name.")],
    *,
    database_url: DatabaseUrlOpt = None,
) -> None:
    """Rename a laboratory. Existing technician records keep the old name."""

    factory = _session_factory(database_url)
    try:
        with session_scope(factory) as s:
            lab = rename_laboratory(s, laboratory_id=laboratory_id, name=name)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(f"Renamed laboratory {lab.id} to {lab.name}.")


@app.command("delete-lab")
def delete_lab_cmd(
    laboratory_id: Annotated[str, typer.Argument(help="Laboratory id.")],
    *,
    database_url: DatabaseUrlOpt = None,
) -> None:
    """Hide a laboratory; its technician records are kept."""

    factory = _session_factory(database_url)
    try:
        with session_scope(factory) as s:
            soft_delete_laboratory(s, laboratory_id=laboratory_id)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    console.print(f"Deleted laboratory {laboratory_id}.")


@app.command("labs")
def labs_cmd(clinic: ClinicOpt, database_url: DatabaseUrlOpt = None) -> None:
    """List a clinic's laboratories and their price lists."""

    directory = SqlLaboratoryDirectory(_session_factory(database_url))
    try:
        labs = directory.laboratories(clinic)
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    if not labs:
        console.print("No laboratories.")
        return
    table = Table(title=f"Laboratories: {clinic}")
    for col in ("Id", "Name", "Pricing"):
        table.add_column(col)
    for lab in labs:
        pricing = ", ".join(
            f"{e.name} {e.price}{'%' if e.is_percentage else ''}" for e in lab.pricing_list
        )
        table.add_row(lab.id, lab.name, pricing)
    console.print(table)


@app.command("add-pricing-entry")
def add_pricing_entry_cmd(
    laboratory_id: Annotated[str, typer.Argument(help="Laboratory id.")],
    *,
    name: Annotated[str, typer.Option("--name", help="Item name.")],
    price: Annotated[str, typer.Option("--price", help="Price, or percentage with --percentage.")],
    percentage: Annotated[
        bool, typer.Option("--percentage", help="Price is a percentage of revenue (0-100).")
    ] = False,
    database_url: DatabaseUrlOpt = None,
) -> None:
    """Append a pricing entry to a laboratory's price list."""

    factory = _session_factory(database_url)
    try:
        with session_scope(factory) as s:
            entry = add_pricing_entry(
                s, laboratory_id=laboratory_id, name=name, price=price, is_percentage=percentage
            )
    except ReconciliationError as e:
        raise _fail(str(e)) from e
    suffix = "%" if entry.is_percentage else ""
    console.print(f"Added pricing entry {entry.name} {entry.price}{suffix} ({entry.id}).")


@app.callback()
def _root() -> None:
    """Load ``.env`` from the current directory (never overriding the
    environment) and configure logging before any subcommand runs."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    app()

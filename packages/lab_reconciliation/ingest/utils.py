"""Ingest utilities shared by the ledger reader and the CLI.

Exposes a single helper that loads :class:`TransactionRow` objects from a
daily-ledger CSV file.
"""

from __future__ import annotations

import csv
from os import PathLike
from pathlib import Path

from ..models import TransactionRow
from .adapters.daily_ledger_csv import check_header, to_transaction_rows


def load_transactions_from_csv(
    csv_path: str | PathLike[str], *, clinic_id: str
) -> list[TransactionRow]:
    """Read a daily-ledger CSV and return its rows in file order.

    Raises ``csv.Error`` when the header is missing required columns or a row
    fails validation. A UTF-8 byte-order mark is tolerated.
    """

    p = Path(csv_path)
    with p.open(encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        check_header(reader.fieldnames)
        return list(to_transaction_rows(reader, clinic_id=clinic_id))


__all__ = ["load_transactions_from_csv"]

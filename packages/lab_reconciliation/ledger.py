"""Read side of the daily ledger.

The engine only ever asks for one clinic's month of transactions through the
:class:`LedgerReader` protocol. :class:`CsvLedgerReader` serves those months
from a directory of CSV exports laid out as::

    <ledger_dir>/<clinic_id>/<YYYY-MM>.csv
"""

from __future__ import annotations

import csv
import os
from os import PathLike
from pathlib import Path
from typing import Protocol

from .errors import FetchError
from .ingest.utils import load_transactions_from_csv
from .logging_setup import get_logger
from .models import TransactionRow, YearMonth

logger = get_logger(__name__)

LEDGER_DIR_ENV = "LAB_RECON_LEDGER_DIR"


class LedgerReader(Protocol):
    def fetch_monthly_transactions(
        self, clinic_id: str, year_month: YearMonth
    ) -> list[TransactionRow]: ...


class CsvLedgerReader:
    """:class:`LedgerReader` over per-clinic monthly CSV exports.

    A month with no export file is an empty month. A file that exists but
    cannot be read or parsed raises :class:`FetchError` (source ``ledger``).
    Rows dated outside the requested month are dropped with a warning.
    """

    def __init__(self, ledger_dir: str | PathLike[str]) -> None:
        self.ledger_dir = Path(ledger_dir)

    @classmethod
    def from_env(cls) -> CsvLedgerReader:
        raw = os.getenv(LEDGER_DIR_ENV)
        if not raw:
            raise RuntimeError(f"{LEDGER_DIR_ENV} is not set; cannot locate ledger exports")
        return cls(raw)

    def path_for(self, clinic_id: str, year_month: YearMonth) -> Path:
        return self.ledger_dir / clinic_id / f"{year_month}.csv"

    def fetch_monthly_transactions(
        self, clinic_id: str, year_month: YearMonth
    ) -> list[TransactionRow]:
        path = self.path_for(clinic_id, year_month)
        if not path.is_file():
            logger.info("no ledger export at %s; treating %s as empty", path, year_month)
            return []
        try:
            rows = load_transactions_from_csv(path, clinic_id=clinic_id)
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise FetchError("ledger", f"{path}: {e}") from e

        in_month = [r for r in rows if year_month.contains(r.date)]
        dropped = len(rows) - len(in_month)
        if dropped:
            logger.warning("%s: dropped %d row(s) dated outside %s", path, dropped, year_month)
        return in_month


__all__ = ["CsvLedgerReader", "LEDGER_DIR_ENV", "LedgerReader"]

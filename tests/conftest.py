"""Pytest configuration for the workspace.

Makes the workspace importable without an install (``packages/`` for
``lab_reconciliation``, ``libs/db/src`` for ``db``, and the repo root for
``tests.helpers``) and keeps each test hermetic: configuration variables are
cleared, and cached SQLAlchemy engines are disposed afterwards so one test's
SQLite file never leaks into the next.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# Ensure local sources precede anything installed.
sys.path[:0] = [
    p
    for p in (str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT))
    if p not in sys.path
]

_CONFIG_VARS = (
    "DATABASE_URL",
    "LAB_RECON_LEDGER_DIR",
    "LAB_RECON_SAVE_CONCURRENCY",
    "LAB_RECON_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for var in _CONFIG_VARS:
        monkeypatch.delenv(var, raising=False)
    yield
    from db.client import dispose_engines

    dispose_engines()

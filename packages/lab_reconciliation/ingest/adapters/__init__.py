"""Row adapters for ledger export formats."""

"""Ledger ingestion: CSV adapters and loaders."""

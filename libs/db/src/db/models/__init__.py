"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the lab reconciliation models used by ``lab_reconciliation``.
"""

from .lab import Base, LabLaboratory, LabPricingEntry, LabTechnicianRecord

__all__ = [
    "Base",
    "LabLaboratory",
    "LabPricingEntry",
    "LabTechnicianRecord",
]

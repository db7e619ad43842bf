# src/railflow/core/ledger/__init__.py
"""Run ledger: SQLAlchemy Core persistence of finalized run records."""

from railflow.core.ledger.database import LedgerDB
from railflow.core.ledger.store import RunLedger, RunSummary

__all__ = ["LedgerDB", "RunLedger", "RunSummary"]

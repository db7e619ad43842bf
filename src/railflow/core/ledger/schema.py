# src/railflow/core/ledger/schema.py
"""SQLAlchemy table definitions for the run ledger.

Uses SQLAlchemy Core (not ORM). A run is written once, at finalization,
so rows are insert-only.
"""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

NODE_ID_COLUMN_LENGTH = 64

runs_table = Table(
    "runs",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("question", Text, nullable=False),
    Column("graph_hash", String(64)),
    Column("status", String(32), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True), nullable=False),
    Column("final_node_id", String(NODE_ID_COLUMN_LENGTH)),
    Column("final_answer", Text, nullable=False),
    Column("failure_reason", Text),
    Column("confidence", Float, nullable=False),
    Column("conflicts_json", Text, nullable=False),
    Column("outputs_json", Text, nullable=False),
    # Full record as written, for export without re-assembly
    Column("record_json", Text, nullable=False),
)

node_states_table = Table(
    "node_states",
    metadata,
    Column("run_id", String(64), ForeignKey("runs.run_id"), nullable=False),
    Column("node_id", String(NODE_ID_COLUMN_LENGTH), nullable=False),
    Column("status", String(32), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("finished_at", DateTime(timezone=True)),
    Column("logs_json", Text, nullable=False),
    Column("error_json", Text),
    PrimaryKeyConstraint("run_id", "node_id"),
)

transitions_table = Table(
    "transitions",
    metadata,
    Column("run_id", String(64), ForeignKey("runs.run_id"), nullable=False),
    Column("seq", Integer, nullable=False),
    Column("at", DateTime(timezone=True), nullable=False),
    Column("node_id", String(NODE_ID_COLUMN_LENGTH), nullable=False),
    Column("status", String(32), nullable=False),
    Column("message", Text, nullable=False),
    PrimaryKeyConstraint("run_id", "seq"),
)

evidence_table = Table(
    "evidence",
    metadata,
    Column("run_id", String(64), ForeignKey("runs.run_id"), nullable=False),
    Column("seq", Integer, nullable=False),
    Column("node_id", String(NODE_ID_COLUMN_LENGTH), nullable=False),
    Column("node_type", String(32), nullable=False),
    Column("source", String(32), nullable=False),
    Column("content_hash", String(64), nullable=False),
    Column("verification_status", String(32), nullable=False),
    Column("confidence_band", String(16), nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
    Column("envelope_json", Text, nullable=False),
    PrimaryKeyConstraint("run_id", "seq"),
)

Index("ix_evidence_run_node", evidence_table.c.run_id, evidence_table.c.node_id)
Index("ix_runs_started_at", runs_table.c.started_at)

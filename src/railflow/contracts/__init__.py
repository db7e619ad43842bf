"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes live in railflow.core.config and are not re-exported here.

Import patterns:
    from railflow.contracts import NodeStatus, RunRecord, WebTurnTask
    from railflow.core.config import RailflowSettings
"""

from railflow.contracts.enums import (
    AgentMode,
    ConfidenceBand,
    EvidenceSource,
    GateDecision,
    NodeStatus,
    NodeType,
    Provider,
    RunStatus,
    SessionState,
    TaskStatus,
    TransformMode,
    VerificationStatus,
)
from railflow.contracts.errors import (
    BridgeProtocolError,
    ConfigurationError,
    ErrorCode,
    ExecutionError,
    OrchestrationInvariantError,
    RecordFinalizedError,
    WebTurnError,
)
from railflow.contracts.records import (
    ConflictEntry,
    EvidenceEnvelope,
    EvidenceMemory,
    NodeRuntimeState,
    RunRecord,
    Transition,
    utc_now,
)
from railflow.contracts.web import StageEvent, WebTurnResult, WebTurnTask

__all__ = [
    "AgentMode",
    "BridgeProtocolError",
    "ConfidenceBand",
    "ConfigurationError",
    "ConflictEntry",
    "ErrorCode",
    "EvidenceEnvelope",
    "EvidenceMemory",
    "EvidenceSource",
    "ExecutionError",
    "GateDecision",
    "NodeRuntimeState",
    "NodeStatus",
    "NodeType",
    "OrchestrationInvariantError",
    "Provider",
    "RecordFinalizedError",
    "RunRecord",
    "RunStatus",
    "SessionState",
    "StageEvent",
    "TaskStatus",
    "TransformMode",
    "Transition",
    "VerificationStatus",
    "WebTurnError",
    "WebTurnResult",
    "WebTurnTask",
    "utc_now",
]

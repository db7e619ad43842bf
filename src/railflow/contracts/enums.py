"""All status codes, modes, and kinds used across subsystem boundaries.

Values are persisted in the run ledger and sent over the bridge and worker
transports, so renaming a member is a wire-format change.
"""

from enum import StrEnum


class NodeType(StrEnum):
    """Kind of graph node.

    Dispatch over this enum is closed: every consumer matches all members.
    """

    INPUT = "input"
    TURN = "turn"
    TRANSFORM = "transform"
    GATE = "gate"


class NodeStatus(StrEnum):
    """Runtime status of a node within one run.

    Stored in the ledger (node_states.status, transitions.status).
    """

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    DONE = "done"
    LOW_QUALITY = "low_quality"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_NODE_STATUSES

    @property
    def has_output(self) -> bool:
        """True for statuses whose output feeds descendants."""
        return self in (NodeStatus.DONE, NodeStatus.LOW_QUALITY)


_TERMINAL_NODE_STATUSES = frozenset(
    {
        NodeStatus.DONE,
        NodeStatus.LOW_QUALITY,
        NodeStatus.FAILED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELLED,
    }
)


class RunStatus(StrEnum):
    """Status of a graph run.

    Stored in the ledger (runs.status).
    """

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(StrEnum):
    """Lifecycle of a web turn task in the bridge mailbox."""

    PENDING = "pending"
    CLAIMED = "claimed"
    PROMPT_FILLED = "prompt_filled"
    WAITING_USER_SEND = "waiting_user_send"
    RESPONDING = "responding"
    DONE = "done"
    ERROR = "error"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.ERROR, TaskStatus.WITHDRAWN)


class Provider(StrEnum):
    """Web chat providers reachable only through DOM automation."""

    GEMINI = "gemini"
    GPT = "gpt"
    GROK = "grok"
    PERPLEXITY = "perplexity"
    CLAUDE = "claude"


class SessionState(StrEnum):
    """Login state inferred for a provider browser context."""

    UNKNOWN = "unknown"
    ACTIVE = "active"
    LOGIN_REQUIRED = "login_required"


class TransformMode(StrEnum):
    """Mapping applied by a transform node."""

    PICK = "pick"
    MERGE = "merge"
    TEMPLATE = "template"


class GateDecision(StrEnum):
    """Outcome of a gate node."""

    PASS = "PASS"
    REJECT = "REJECT"


class AgentMode(StrEnum):
    """Scheduler concurrency mode.

    single forces one node at a time; multi uses the configured thread count.
    """

    SINGLE = "single"
    MULTI = "multi"


class ConfidenceBand(StrEnum):
    """Coarse confidence attached to evidence and to the final answer."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class VerificationStatus(StrEnum):
    """Verification state of an evidence envelope.

    Stored in the ledger (evidence.verification_status).
    """

    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    NEEDS_VERIFICATION = "needs_verification"


class EvidenceSource(StrEnum):
    """Where the payload of an evidence envelope came from."""

    INPUT = "input"
    LOCAL = "local"
    WEB = "web"
    TRANSFORM = "transform"
    GATE = "gate"
    SYSTEM = "system"

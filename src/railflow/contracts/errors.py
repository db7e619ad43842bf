"""Error taxonomy shared by the scheduler, bridge and headless worker.

Three tiers:
- node-local failures are recorded on the node and never raised past the
  node processor;
- remote execution failures carry an ErrorCode across both transports;
- scheduler-fatal conditions abort a run before any node executes.
"""

from enum import StrEnum
from typing import NotRequired, TypedDict


class ErrorCode(StrEnum):
    """Typed failure codes surfaced by the bridge and the headless worker."""

    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    INVALID_PROMPT = "INVALID_PROMPT"
    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    NOT_LOGGED_IN = "NOT_LOGGED_IN"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    SUBMIT_FAILED = "SUBMIT_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    BROWSER_MISSING = "BROWSER_MISSING"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    INTERNAL = "INTERNAL"

    @classmethod
    def coerce(cls, value: object) -> "ErrorCode":
        """Map an untrusted wire value to a known code, falling back to INTERNAL."""
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.INTERNAL


class ExecutionError(TypedDict):
    """Schema for node failure payloads stored in the run ledger."""

    exception: str  # String representation of the exception
    type: str  # Exception class name (e.g., "ValueError")
    code: NotRequired[str]  # ErrorCode for remote failures
    traceback: NotRequired[str]


class WebTurnError(Exception):
    """Remote execution failure with a typed code.

    Raised by the session manager, stability extractor and worker client;
    the node processor records it as a failed node carrying the code.
    """

    def __init__(self, code: ErrorCode, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code.value}: {message}")


class BridgeProtocolError(Exception):
    """Raised when a bridge call returns non-2xx or a body with ok=false."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class OrchestrationInvariantError(Exception):
    """Raised when the scheduler's own bookkeeping is inconsistent.

    This is a bug in the engine, not a node failure, so it propagates out of
    the node processor and aborts the run.
    """


class ConfigurationError(Exception):
    """Raised when required configuration is missing or contradictory."""


class RecordFinalizedError(Exception):
    """Raised when a finalized run record is mutated or persisted twice."""

# src/railflow/core/dag/models.py
"""Graph document models and DAG exceptions.

Leaf module: no intra-package imports beyond contracts (prevents import cycles).

Node specs form a closed tagged union discriminated on ``type``. Adding a
node type means adding a spec here, a member to NodeType and a case to every
match over NodeType (processor, evidence normalizer, CLI status mapper).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from railflow.contracts.enums import NodeType, Provider, TransformMode

_NODE_ID_MAX_LENGTH = 64
WEB_EXECUTOR_PREFIX = "web/"


class GraphValidationError(ValueError):
    """Raised when graph validation fails. Aborts the run before any node executes."""

    pass


class _NodeSpecBase(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    id: str = Field(min_length=1, max_length=_NODE_ID_MAX_LENGTH)
    label: str | None = None

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)  # type: ignore[attr-defined]  # every subclass declares a type literal


class InputNodeSpec(_NodeSpecBase):
    """Entry node. Its output is the run question."""

    type: Literal["input"] = "input"


class TurnNodeSpec(_NodeSpecBase):
    """Prompt/response exchange with a local engine or a web provider.

    Example YAML:
        - id: research
          type: turn
          executor: web/gemini
          prompt_template: "Research this: {{input}}"
          timeout_ms: 120000
    """

    type: Literal["turn"] = "turn"
    executor: str = Field(default="local", description="'local' or 'web/<provider>'")
    model: str | None = None
    role: str | None = None
    prompt_template: str = "{{input}}"
    output_schema: dict[str, Any] | None = Field(default=None, description="JSON Schema for structured output")
    max_schema_retries: int = Field(default=1, ge=0, le=5)
    timeout_ms: int | None = Field(default=None, gt=0, description="Web turns only")

    @field_validator("executor")
    @classmethod
    def validate_executor(cls, value: str) -> str:
        if value == "local":
            return value
        if value.startswith(WEB_EXECUTOR_PREFIX):
            provider = value.removeprefix(WEB_EXECUTOR_PREFIX)
            if provider not in {p.value for p in Provider}:
                raise ValueError(f"Unknown web provider '{provider}'. Known: {sorted(p.value for p in Provider)}")
            return value
        raise ValueError(f"executor must be 'local' or 'web/<provider>', got '{value}'")

    @property
    def web_provider(self) -> Provider | None:
        if self.executor.startswith(WEB_EXECUTOR_PREFIX):
            return Provider(self.executor.removeprefix(WEB_EXECUTOR_PREFIX))
        return None


class TransformNodeSpec(_NodeSpecBase):
    """Pure mapping over ancestor outputs."""

    type: Literal["transform"] = "transform"
    mode: TransformMode = TransformMode.PICK
    pick_path: str = ""
    merge_json: str = "{}"  # parsed at run time so malformed JSON fails the node, not the load
    template: str = "{{input}}"


class GateNodeSpec(_NodeSpecBase):
    """Two-way PASS/REJECT routing.

    predicate, when set, is a safe expression over ``input`` and ``inputs``
    whose truth value selects PASS. Otherwise the decision is read from
    ``decision_path`` or inferred from the input text.
    """

    type: Literal["gate"] = "gate"
    predicate: str | None = None
    decision_path: str = "DECISION"
    input_schema: dict[str, Any] | None = None
    lenient: bool = Field(default=True, description="Log schema problems and default to PASS instead of failing")
    pass_node_id: str | None = None
    reject_node_id: str | None = None


NodeSpec = Annotated[
    InputNodeSpec | TurnNodeSpec | TransformNodeSpec | GateNodeSpec,
    Field(discriminator="type"),
]


class EdgeSpec(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    source: str
    target: str
    port: str | None = None


class GraphSpec(BaseModel):
    """A graph document as loaded from YAML or JSON."""

    model_config = {"frozen": True, "extra": "forbid"}

    version: int = 1
    entry: str | None = Field(default=None, description="Entry node id (defaults to the input node)")
    nodes: list[NodeSpec] = Field(min_length=1)
    edges: list[EdgeSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> GraphSpec:
        ids = [node.id for node in self.nodes]
        duplicates = sorted({node_id for node_id in ids if ids.count(node_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate node id(s): {duplicates}")
        return self

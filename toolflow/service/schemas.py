from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from toolflow.storage.models import Execution, GuardrailEvaluation

TOOL_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9_-]{0,63}$"
DEFAULT_BLOCKED_MESSAGING = "Sorry, the model cannot answer this question."


class CamelModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Tool configuration
# ---------------------------------------------------------------------------


class InputSchema(CamelModel):
    json_schema: Dict[str, Any] = Field(..., alias="json")

    @field_validator("json_schema")
    @classmethod
    def _validate_schema(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if value.get("type") != "object":
            raise ValueError("inputSchema.json must describe an object")
        try:
            Draft202012Validator.check_schema(value)
        except SchemaError as exc:
            raise ValueError(f"invalid JSON schema: {exc.message}") from exc
        return value


class ToolSpec(CamelModel):
    name: str = Field(..., pattern=TOOL_NAME_PATTERN)
    description: str = ""
    input_schema: InputSchema
    handler: Optional[str] = Field(
        None, description="Optional 'package.module:function' path to the handler"
    )
    writes: bool = False
    idempotency_key_field: str = "idempotency_key"
    timeout_seconds: Optional[float] = Field(None, gt=0)


class ToolEntry(CamelModel):
    tool_spec: ToolSpec


class ToolConfig(CamelModel):
    """``{tools: [{toolSpec: {name, description, inputSchema: {json}}}]}``"""

    tools: List[ToolEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "ToolConfig":
        seen: set[str] = set()
        for entry in self.tools:
            name = entry.tool_spec.name
            if name in seen:
                raise ValueError(f"duplicate tool name '{name}'")
            seen.add(name)
        return self

    def specs(self) -> List[ToolSpec]:
        return [entry.tool_spec for entry in self.tools]

    def names(self) -> List[str]:
        return [entry.tool_spec.name for entry in self.tools]


# ---------------------------------------------------------------------------
# Guardrail configuration
# ---------------------------------------------------------------------------

PiiType = Literal[
    "EMAIL",
    "PHONE",
    "US_SOCIAL_SECURITY_NUMBER",
    "CREDIT_DEBIT_CARD_NUMBER",
    "IP_ADDRESS",
]
PolicyAction = Literal["BLOCK", "ANONYMIZE"]


class PiiEntityPolicy(CamelModel):
    type: PiiType
    action: PolicyAction = "ANONYMIZE"


class RegexPolicy(CamelModel):
    name: str
    pattern: str
    action: PolicyAction = "BLOCK"
    description: Optional[str] = None

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regex: {exc}") from exc
        return value


class TopicPolicy(CamelModel):
    name: str
    definition: str = ""
    keywords: List[str] = Field(default_factory=list)


class GuardrailPolicy(CamelModel):
    blocked_words: List[str] = Field(default_factory=list)
    managed_word_lists: List[Literal["PROFANITY"]] = Field(default_factory=list)
    pii_entities: List[PiiEntityPolicy] = Field(default_factory=list)
    regexes: List[RegexPolicy] = Field(default_factory=list)
    topics: List[TopicPolicy] = Field(default_factory=list)
    blocked_input_messaging: str = DEFAULT_BLOCKED_MESSAGING
    blocked_outputs_messaging: str = DEFAULT_BLOCKED_MESSAGING


class GuardrailConfig(CamelModel):
    guardrail_id: str = "local"
    guardrail_version: str = "DRAFT"
    screen_input: bool = True
    screen_output: bool = True
    fail_open: bool = True
    terminate_on_output_intervention: bool = True
    policy: GuardrailPolicy = Field(default_factory=GuardrailPolicy)


# ---------------------------------------------------------------------------
# Workflow request / result
# ---------------------------------------------------------------------------


class WorkflowRequest(CamelModel):
    model: str
    system_prompt: str = ""
    user_prompt: str
    dataset_content: Optional[str] = None
    tool_config: ToolConfig = Field(default_factory=ToolConfig)
    max_iterations: Optional[int] = None
    execution_id: Optional[str] = Field(None, max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$")
    guardrail_config: Optional[GuardrailConfig] = None
    tool_execution: bool = True
    stream: bool = False
    max_tokens: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0, le=2)


class WorkflowResults(CamelModel):
    text: str = ""
    stop_reason: Optional[str] = None
    tool_executions: List[Dict[str, Any]] = Field(default_factory=list)
    total_tool_calls: int = 0
    guardrail_results: Optional[Dict[str, Any]] = None
    iteration_limit_reached: bool = False


class WorkflowMetadata(CamelModel):
    model: str
    usage: Dict[str, int] = Field(default_factory=dict)
    iteration_count: int = 0
    tool_call_count: int = 0
    total_duration_ms: int = 0
    started_at: str
    finished_at: Optional[str] = None


class WorkflowResult(CamelModel):
    execution_id: str
    status: str
    success: bool
    results: WorkflowResults
    metadata: WorkflowMetadata
    workflow: List[Dict[str, Any]] = Field(default_factory=list)
    conversation: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    terminal_reason: Optional[str] = None

    @classmethod
    def from_execution(cls, execution: Execution) -> "WorkflowResult":
        tool_executions = [result.to_dict() for result in execution.tool_executions]
        return cls(
            execution_id=execution.id,
            status=execution.status.value,
            success=execution.status.value == "completed",
            results=WorkflowResults(
                text=execution.final_text,
                stop_reason=execution.stop_reason,
                tool_executions=tool_executions,
                total_tool_calls=len(tool_executions),
                guardrail_results=summarize_guardrail_evaluations(
                    execution.guardrail_evaluations
                ),
                iteration_limit_reached=execution.iteration_limit_reached,
            ),
            metadata=WorkflowMetadata(
                model=execution.model,
                usage=dict(execution.usage),
                iteration_count=execution.current_iteration,
                tool_call_count=len(tool_executions),
                total_duration_ms=execution.duration_ms(),
                started_at=execution.started_at.isoformat(),
                finished_at=(
                    execution.finished_at.isoformat() if execution.finished_at else None
                ),
            ),
            workflow=[event.to_dict() for event in execution.workflow],
            conversation=[turn.to_dict() for turn in execution.conversation],
            error=execution.error,
            terminal_reason=execution.terminal_reason,
        )


def summarize_guardrail_evaluations(
    evaluations: Sequence[GuardrailEvaluation],
) -> Optional[Dict[str, Any]]:
    """Fold every screening of an execution into one observability block."""
    if not evaluations:
        return None
    inputs = [e for e in evaluations if e.direction == "input"]
    outputs = [e for e in evaluations if e.direction == "output"]
    violations = [v for e in evaluations for v in e.violations]
    return {
        "hasViolations": any(e.has_violations for e in evaluations),
        "intervened": any(e.intervened for e in evaluations),
        "degraded": any(e.degraded for e in evaluations),
        "violationCount": len(violations),
        "violations": violations,
        "input": inputs[-1].to_dict() if inputs else None,
        "output": outputs[-1].to_dict() if outputs else None,
        "evaluations": [e.to_dict() for e in evaluations],
    }

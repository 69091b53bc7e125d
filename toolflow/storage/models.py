from __future__ import annotations

import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from toolflow.storage.errors import IllegalTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return _utcnow().isoformat()


def new_execution_id() -> str:
    """Return an id of the form ``exec_<epoch_ms>_<random>``."""
    return f"exec_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.IDLE: frozenset(
        {ExecutionStatus.INITIALIZING, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.INITIALIZING: frozenset(
        {ExecutionStatus.ITERATING, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.ITERATING: frozenset(
        {
            ExecutionStatus.ITERATING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.ERROR,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.ERROR: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class ToolCallRequest:
    tool_name: str
    tool_use_id: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.tool_name,
            "toolUseId": self.tool_use_id,
            "parameterCount": len(self.parameters),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toolName": self.tool_name,
            "toolUseId": self.tool_use_id,
            "parameters": self.parameters,
        }


@dataclass
class ToolCallResult:
    tool_use_id: str
    tool_name: str
    parameters: Dict[str, Any]
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    duration_ms: Optional[int] = None
    timestamp: str = field(default_factory=utcnow_iso)

    def turn_content(self) -> str:
        """Text handed back to the model as the tool turn."""
        if self.success:
            return json.dumps(self.result, default=str)
        return f"Error: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "toolUseId": self.tool_use_id,
            "toolName": self.tool_name,
            "parameters": self.parameters,
            "success": self.success,
            "fromCache": self.from_cache,
            "durationMs": self.duration_ms,
            "timestamp": self.timestamp,
        }
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
            data["errorCode"] = self.error_code
            if self.error_detail:
                data["errorDetail"] = self.error_detail
        return data


@dataclass(frozen=True)
class ConversationTurn:
    role: str  # user | assistant | tool
    content: str
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    is_error: bool = False

    @classmethod
    def user(cls, content: str) -> "ConversationTurn":
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: Tuple[ToolCallRequest, ...] = ()
    ) -> "ConversationTurn":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def from_tool_result(cls, result: ToolCallResult) -> "ConversationTurn":
        return cls(
            role="tool",
            content=result.turn_content(),
            tool_use_id=result.tool_use_id,
            tool_name=result.tool_name,
            is_error=not result.success,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["toolCalls"] = [call.to_dict() for call in self.tool_calls]
        if self.role == "tool":
            data["toolUseId"] = self.tool_use_id
            data["toolName"] = self.tool_name
            data["status"] = "error" if self.is_error else "success"
        return data


GUARDRAIL_NONE = "NONE"
GUARDRAIL_INTERVENED = "INTERVENED"


@dataclass(frozen=True)
class GuardrailEvaluation:
    action: str
    direction: str  # input | output
    original_content: str
    filtered_content: str
    violations: Tuple[Dict[str, Any], ...] = ()
    degraded: bool = False
    guardrail_id: Optional[str] = None
    evaluation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def intervened(self) -> bool:
        return self.action == GUARDRAIL_INTERVENED

    @property
    def has_violations(self) -> bool:
        return self.intervened or bool(self.violations)

    def categories(self) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for violation in self.violations:
            grouped.setdefault(violation.get("category", "other"), []).append(violation)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluationId": self.evaluation_id,
            "guardrailId": self.guardrail_id,
            "direction": self.direction,
            "action": self.action,
            "hasViolations": self.has_violations,
            "violationCount": len(self.violations),
            "violations": list(self.violations),
            "categories": self.categories(),
            "filteredContent": self.filtered_content if self.intervened else None,
            "degraded": self.degraded,
            "timestamp": self.timestamp,
        }


@dataclass
class WorkflowProgressEvent:
    type: str
    execution_id: str
    iteration: int
    max_iterations: int
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def is_terminal(self) -> bool:
        return self.type in {"completion", "cancelled", "error"}

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "executionId": self.execution_id,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "timestamp": self.timestamp,
        }
        data.update(self.payload)
        return data


@dataclass
class Execution:
    id: str
    model: str
    max_iterations: int
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_iteration: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    active_tools: List[str] = field(default_factory=list)
    conversation: List[ConversationTurn] = field(default_factory=list)
    tool_executions: List[ToolCallResult] = field(default_factory=list)
    workflow: List[WorkflowProgressEvent] = field(default_factory=list)
    guardrail_evaluations: List[GuardrailEvaluation] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)
    stop_reason: Optional[str] = None
    final_text: str = ""
    terminal_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    iteration_limit_reached: bool = False

    @classmethod
    def new(
        cls, model: str, max_iterations: int, execution_id: Optional[str] = None
    ) -> "Execution":
        return cls(
            id=execution_id or new_execution_id(),
            model=model,
            max_iterations=max_iterations,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, target: ExecutionStatus, *, reason: Optional[str] = None) -> None:
        """Move to ``target``; terminal statuses are final."""
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise IllegalTransition(self.status.value, target.value)
        self.status = target
        if target in TERMINAL_STATUSES:
            self.finished_at = _utcnow()
            self.terminal_reason = reason or target.value

    def advance_iteration(self) -> int:
        if self.current_iteration >= self.max_iterations:
            raise IllegalTransition(
                f"iteration {self.current_iteration}",
                f"iteration {self.current_iteration + 1} (max {self.max_iterations})",
            )
        self.current_iteration += 1
        return self.current_iteration

    def append_turn(self, turn: ConversationTurn) -> None:
        self.conversation.append(turn)

    def duration_ms(self) -> int:
        end = self.finished_at or _utcnow()
        return int((end - self.started_at).total_seconds() * 1000)

    def snapshot(self) -> Dict[str, Any]:
        """Read-only status view for polling callers."""
        return {
            "executionId": self.id,
            "status": self.status.value,
            "currentIteration": self.current_iteration,
            "maxIterations": self.max_iterations,
            "activeTools": list(self.active_tools),
            "cancelRequested": self.cancel_requested,
            "totalToolCalls": len(self.tool_executions),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms(),
        }

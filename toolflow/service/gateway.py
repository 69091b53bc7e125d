from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx
from openai import AsyncOpenAI, OpenAIError

from toolflow.logging import get_logger
from toolflow.service.errors import GatewayFailure, MalformedResponseError
from toolflow.storage.models import ConversationTurn, ToolCallRequest

logger = get_logger(__name__)

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"
STOP_CONTENT_FILTERED = "content_filtered"

CONNECT_TIMEOUT_SECONDS = 10.0

_OPENAI_STOP_REASONS = {
    "tool_calls": STOP_TOOL_USE,
    "function_call": STOP_TOOL_USE,
    "stop": STOP_END_TURN,
    "length": STOP_MAX_TOKENS,
    "content_filter": STOP_CONTENT_FILTERED,
}


@dataclass
class ConverseRequest:
    model: str
    system_prompt: str
    messages: Sequence[ConversationTurn]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 4000
    temperature: float = 0.7


@dataclass
class ModelResponse:
    stop_reason: str
    text: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    """One item of a streamed model call: ``token`` deltas, then one ``response``."""

    type: str
    text: str = ""
    response: Optional[ModelResponse] = None


class ModelGateway(Protocol):
    async def converse(self, request: ConverseRequest) -> ModelResponse:
        ...

    def converse_stream(self, request: ConverseRequest) -> AsyncIterator[GatewayEvent]:
        """Yield ``token`` events in production order, then a final ``response``."""

    async def close(self) -> None:
        ...


def new_tool_use_id() -> str:
    return f"tooluse_{uuid.uuid4().hex[:24]}"


def _usage(raw: Any) -> Dict[str, int]:
    if raw is None:
        return {}
    return {
        "inputTokens": getattr(raw, "prompt_tokens", 0) or 0,
        "outputTokens": getattr(raw, "completion_tokens", 0) or 0,
        "totalTokens": getattr(raw, "total_tokens", 0) or 0,
    }


def _tool_call(tool_use_id: Optional[str], name: Optional[str], arguments: Optional[str]) -> ToolCallRequest:
    if not name:
        raise MalformedResponseError("Model requested a tool without a name")
    try:
        params = json.loads(arguments or "{}")
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(
            f"Model sent unparseable arguments for tool '{name}'",
            detail={"tool": name},
        ) from exc
    if not isinstance(params, dict):
        raise MalformedResponseError(
            f"Model sent non-object arguments for tool '{name}'", detail={"tool": name}
        )
    return ToolCallRequest(tool_name=name, tool_use_id=tool_use_id or new_tool_use_id(), parameters=params)


class OpenAIGateway:
    """Chat-completions gateway for OpenAI-compatible endpoints."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
        client: Any = None,
    ) -> None:
        if client is None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds or None, connect=CONNECT_TIMEOUT_SECONDS)
            )
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, http_client=http_client)
        self.client = client

    @staticmethod
    def _messages(request: ConverseRequest) -> List[dict]:
        messages: List[dict] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for turn in request.messages:
            if turn.role == "tool":
                messages.append(
                    {"role": "tool", "tool_call_id": turn.tool_use_id, "content": turn.content}
                )
            elif turn.role == "assistant":
                message: Dict[str, Any] = {"role": "assistant", "content": turn.content or None}
                if turn.tool_calls:
                    message["tool_calls"] = [
                        {
                            "id": call.tool_use_id,
                            "type": "function",
                            "function": {
                                "name": call.tool_name,
                                "arguments": json.dumps(call.parameters),
                            },
                        }
                        for call in turn.tool_calls
                    ]
                messages.append(message)
            else:
                messages.append({"role": "user", "content": turn.content})
        return messages

    @staticmethod
    def _tools(request: ConverseRequest) -> List[dict]:
        tools = []
        for entry in request.tools:
            spec = entry.get("toolSpec", entry)
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": spec["name"],
                        "description": spec.get("description", ""),
                        "parameters": spec.get("inputSchema", {}).get("json", {"type": "object"}),
                    },
                }
            )
        return tools

    def _params(self, request: ConverseRequest) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": request.model,
            "messages": self._messages(request),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        tools = self._tools(request)
        if tools:
            params["tools"] = tools
        return params

    async def converse(self, request: ConverseRequest) -> ModelResponse:
        try:
            completion = await self.client.chat.completions.create(**self._params(request))
        except OpenAIError as exc:
            logger.warning("model_call_failed", model=request.model, error_type=type(exc).__name__)
            raise GatewayFailure(
                f"Model call failed: {exc}", detail={"model": request.model}
            ) from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if first_choice is None:
            raise MalformedResponseError("Model returned no choices", detail={"model": request.model})
        message = first_choice.message
        tool_calls = [
            _tool_call(call.id, call.function.name, call.function.arguments)
            for call in (message.tool_calls or [])
        ]
        finish_reason = first_choice.finish_reason
        return ModelResponse(
            stop_reason=_OPENAI_STOP_REASONS.get(finish_reason, finish_reason or STOP_END_TURN),
            text=message.content or "",
            tool_calls=tool_calls,
            usage=_usage(getattr(completion, "usage", None)),
        )

    async def converse_stream(self, request: ConverseRequest) -> AsyncIterator[GatewayEvent]:
        text_parts: List[str] = []
        partial_calls: Dict[int, Dict[str, str]] = {}
        finish_reason: Optional[str] = None
        usage: Dict[str, int] = {}
        try:
            stream = await self.client.chat.completions.create(
                **self._params(request),
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = _usage(chunk.usage)
                for choice in chunk.choices or []:
                    delta = choice.delta
                    if delta is not None and delta.content:
                        text_parts.append(delta.content)
                        yield GatewayEvent(type="token", text=delta.content)
                    for call in (getattr(delta, "tool_calls", None) or []):
                        slot = partial_calls.setdefault(
                            call.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if call.id:
                            slot["id"] = call.id
                        if call.function is not None:
                            slot["name"] += call.function.name or ""
                            slot["arguments"] += call.function.arguments or ""
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
        except OpenAIError as exc:
            logger.warning(
                "model_stream_failed", model=request.model, error_type=type(exc).__name__
            )
            raise GatewayFailure(
                f"Model stream failed: {exc}", detail={"model": request.model}
            ) from exc

        tool_calls = [
            _tool_call(slot["id"] or None, slot["name"], slot["arguments"])
            for _, slot in sorted(partial_calls.items())
        ]
        yield GatewayEvent(
            type="response",
            response=ModelResponse(
                stop_reason=_OPENAI_STOP_REASONS.get(finish_reason, finish_reason or STOP_END_TURN),
                text="".join(text_parts),
                tool_calls=tool_calls,
                usage=usage,
            ),
        )

    async def close(self) -> None:
        await self.client.close()


class StubGateway:
    """Deterministic gateway for TEST_MODE and offline runs; never requests tools."""

    async def converse(self, request: ConverseRequest) -> ModelResponse:
        last_user = next(
            (turn.content for turn in reversed(request.messages) if turn.role == "user"), ""
        )
        words = last_user.split()
        text = f"[stub model={request.model}] {' '.join(words[:32])}".rstrip()
        return ModelResponse(
            stop_reason=STOP_END_TURN,
            text=text,
            usage={
                "inputTokens": len(words),
                "outputTokens": len(text.split()),
                "totalTokens": len(words) + len(text.split()),
            },
        )

    async def converse_stream(self, request: ConverseRequest) -> AsyncIterator[GatewayEvent]:
        response = await self.converse(request)
        for index, word in enumerate(response.text.split(" ")):
            yield GatewayEvent(type="token", text=word if index == 0 else f" {word}")
        yield GatewayEvent(type="response", response=response)

    async def close(self) -> None:
        return None

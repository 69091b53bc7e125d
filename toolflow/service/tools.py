from __future__ import annotations

import asyncio
import functools
import importlib
import inspect
from concurrent.futures import Executor
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from jsonschema import Draft202012Validator

from toolflow.logging import get_logger
from toolflow.service.errors import InvalidConfigurationError
from toolflow.service.schemas import ToolConfig, ToolSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """What a handler may know about the call it serves."""

    execution_id: Optional[str]
    tool_use_id: str
    iteration: int = 0
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


ToolHandler = Callable[[Dict[str, Any], ToolContext], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Tool:
    """A named handler plus the JSON schema its parameters must satisfy.

    Handlers take ``(params, context)`` and either return a JSON-serializable
    value or raise :class:`toolflow.service.errors.ToolError`. Coroutine
    functions are awaited; plain functions run on the dispatcher's executor.
    """

    name: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    description: str = ""
    writes: bool = False
    idempotency_key_field: str = "idempotency_key"
    timeout_seconds: Optional[float] = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.handler)

    def spec(self) -> Dict[str, Any]:
        """Tool description in the shape handed to the model gateway."""
        return {
            "toolSpec": {
                "name": self.name,
                "description": self.description,
                "inputSchema": {"json": self.input_schema},
            }
        }

    async def invoke(
        self,
        params: Dict[str, Any],
        context: ToolContext,
        *,
        executor: Optional[Executor] = None,
    ) -> Any:
        if self.is_async:
            return await self.handler(params, context)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            executor, functools.partial(self.handler, params, context)
        )
        # sync wrappers around coroutines
        if inspect.isawaitable(result):
            return await result
        return result

    @classmethod
    def from_spec(cls, spec: ToolSpec, handler: ToolHandler) -> "Tool":
        return cls(
            name=spec.name,
            description=spec.description,
            input_schema=spec.input_schema.json_schema,
            handler=handler,
            writes=spec.writes,
            idempotency_key_field=spec.idempotency_key_field,
            timeout_seconds=spec.timeout_seconds,
        )


def resolve_handler(path: str, *, allowlist: Optional[Sequence[str]] = None) -> ToolHandler:
    """Import a ``package.module:function`` handler path.

    When ``allowlist`` is given, the module must start with one of its prefixes.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise InvalidConfigurationError(
            f"handler '{path}' must look like 'package.module:function'"
        )
    if allowlist is not None and not any(
        module_name == prefix or module_name.startswith(prefix.rstrip(".") + ".")
        for prefix in allowlist
    ):
        raise InvalidConfigurationError(
            f"handler module '{module_name}' is not allowed",
            detail={"allowlist": list(allowlist)},
        )
    try:
        module = importlib.import_module(module_name)
        handler = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise InvalidConfigurationError(
            f"handler '{path}' could not be resolved", detail={"error": str(exc)}
        ) from exc
    if not callable(handler):
        raise InvalidConfigurationError(f"handler '{path}' is not callable")
    return handler


class ToolRegistry:
    """Read-only mapping from tool name to :class:`Tool`."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        by_name: Dict[str, Tool] = {}
        for tool in tools:
            if tool.name in by_name:
                raise InvalidConfigurationError(f"duplicate tool name '{tool.name}'")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)
        self._validators = MappingProxyType(
            {name: Draft202012Validator(tool.input_schema) for name, tool in by_name.items()}
        )

    @classmethod
    def from_tool_config(
        cls,
        tool_config: ToolConfig,
        handlers: Optional[Mapping[str, ToolHandler]] = None,
        *,
        allowlist: Optional[Sequence[str]] = None,
    ) -> "ToolRegistry":
        handlers = handlers or {}
        tools: List[Tool] = []
        for spec in tool_config.specs():
            handler = handlers.get(spec.name)
            if handler is None and spec.handler:
                handler = resolve_handler(spec.handler, allowlist=allowlist)
            if handler is None:
                raise InvalidConfigurationError(
                    f"tool '{spec.name}' has no registered handler",
                    detail={"tool": spec.name},
                )
            tools.append(Tool.from_spec(spec, handler))
        return cls(tools)

    def scoped(
        self, tool_config: ToolConfig, *, allowlist: Optional[Sequence[str]] = None
    ) -> "ToolRegistry":
        """Registry holding only the tools ``tool_config`` offers to the model.

        Specs from the config win over registered specs. Handlers registered
        here win over a handler path named in the toolSpec.
        """
        handlers = {name: tool.handler for name, tool in self._tools.items()}
        return ToolRegistry.from_tool_config(tool_config, handlers, allowlist=allowlist)

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def validator(self, name: str) -> Optional[Draft202012Validator]:
        return self._validators.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def specs(self) -> List[Dict[str, Any]]:
        return [tool.spec() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

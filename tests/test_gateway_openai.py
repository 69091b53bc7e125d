"""Tests for the OpenAI-compatible gateway and the stub gateway, using a fake
client that mimics the chat completions surface."""

from __future__ import annotations

import json
from types import SimpleNamespace as NS
from typing import Any, Dict, List

import pytest
from openai import OpenAIError

from toolflow.service.errors import GatewayFailure, MalformedResponseError
from toolflow.service.gateway import (
    ConverseRequest,
    OpenAIGateway,
    StubGateway,
)
from toolflow.storage.models import ConversationTurn, ToolCallRequest

TOOLS = [
    {
        "toolSpec": {
            "name": "lookup",
            "description": "Look up an order",
            "inputSchema": {"json": {"type": "object", "properties": {"id": {"type": "string"}}}},
        }
    }
]


class FakeStream:
    def __init__(self, chunks):
        self.chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.chunks:
            raise StopAsyncIteration
        return self.chunks.pop(0)


class FakeCompletions:
    def __init__(self, result: Any = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.result


class FakeClient:
    def __init__(self, completions: FakeCompletions):
        self.chat = NS(completions=completions)
        self.closed = False

    async def close(self):
        self.closed = True


def completion(content=None, tool_calls=None, finish_reason="stop"):
    message = NS(content=content, tool_calls=tool_calls)
    return NS(
        choices=[NS(message=message, finish_reason=finish_reason)],
        usage=NS(prompt_tokens=12, completion_tokens=4, total_tokens=16),
    )


def function_call(call_id, name, arguments):
    return NS(id=call_id, function=NS(name=name, arguments=arguments))


def request(**overrides) -> ConverseRequest:
    fields = dict(
        model="gpt-test",
        system_prompt="be brief",
        messages=[ConversationTurn.user("where is order 7?")],
        tools=TOOLS,
        max_tokens=256,
        temperature=0.1,
    )
    fields.update(overrides)
    return ConverseRequest(**fields)


class TestOpenAIGateway:
    @pytest.mark.asyncio
    async def test_text_response(self):
        completions = FakeCompletions(completion(content="It shipped."))
        gateway = OpenAIGateway(client=FakeClient(completions))

        response = await gateway.converse(request())

        assert response.stop_reason == "end_turn"
        assert response.text == "It shipped."
        assert response.tool_calls == []
        assert response.usage == {"inputTokens": 12, "outputTokens": 4, "totalTokens": 16}
        params = completions.calls[0]
        assert params["messages"][0] == {"role": "system", "content": "be brief"}
        assert params["tools"][0]["function"]["name"] == "lookup"
        assert params["tools"][0]["function"]["parameters"]["type"] == "object"
        assert params["max_tokens"] == 256

    @pytest.mark.asyncio
    async def test_tool_calls_are_parsed(self):
        completions = FakeCompletions(
            completion(
                tool_calls=[function_call("call_1", "lookup", '{"id": "7"}')],
                finish_reason="tool_calls",
            )
        )
        gateway = OpenAIGateway(client=FakeClient(completions))

        response = await gateway.converse(request())

        assert response.stop_reason == "tool_use"
        assert response.tool_calls[0].tool_use_id == "call_1"
        assert response.tool_calls[0].parameters == {"id": "7"}

    @pytest.mark.asyncio
    async def test_history_is_translated(self):
        completions = FakeCompletions(completion(content="ok"))
        gateway = OpenAIGateway(client=FakeClient(completions))
        call = ToolCallRequest(tool_name="lookup", tool_use_id="call_1", parameters={"id": "7"})
        messages = [
            ConversationTurn.user("where is order 7?"),
            ConversationTurn.assistant("", (call,)),
            ConversationTurn(role="tool", content='{"status": "shipped"}', tool_use_id="call_1"),
        ]

        await gateway.converse(request(messages=messages, system_prompt=""))

        sent = completions.calls[0]["messages"]
        assert [m["role"] for m in sent] == ["user", "assistant", "tool"]
        assert sent[1]["content"] is None
        assert json.loads(sent[1]["tool_calls"][0]["function"]["arguments"]) == {"id": "7"}
        assert sent[2]["tool_call_id"] == "call_1"

    @pytest.mark.asyncio
    async def test_bad_arguments_are_malformed(self):
        completions = FakeCompletions(
            completion(tool_calls=[function_call("call_1", "lookup", "{oops")], finish_reason="tool_calls")
        )
        gateway = OpenAIGateway(client=FakeClient(completions))

        with pytest.raises(MalformedResponseError):
            await gateway.converse(request())

    @pytest.mark.asyncio
    async def test_no_choices_is_malformed(self):
        completions = FakeCompletions(NS(choices=[], usage=None))
        gateway = OpenAIGateway(client=FakeClient(completions))

        with pytest.raises(MalformedResponseError):
            await gateway.converse(request())

    @pytest.mark.asyncio
    async def test_client_errors_become_gateway_failure(self):
        completions = FakeCompletions(error=OpenAIError("rate limited"))
        gateway = OpenAIGateway(client=FakeClient(completions))

        with pytest.raises(GatewayFailure) as exc_info:
            await gateway.converse(request())
        assert exc_info.value.error_code == "gateway_failure"

    @pytest.mark.asyncio
    async def test_stream_emits_tokens_then_response(self):
        chunks = [
            NS(choices=[NS(delta=NS(content="It ", tool_calls=None), finish_reason=None)], usage=None),
            NS(
                choices=[
                    NS(
                        delta=NS(
                            content="checks",
                            tool_calls=[NS(index=0, id="call_1", function=NS(name="look", arguments='{"id"'))],
                        ),
                        finish_reason=None,
                    )
                ],
                usage=None,
            ),
            NS(
                choices=[
                    NS(
                        delta=NS(
                            content=None,
                            tool_calls=[NS(index=0, id=None, function=NS(name="up", arguments=': "7"}'))],
                        ),
                        finish_reason="tool_calls",
                    )
                ],
                usage=None,
            ),
            NS(choices=[], usage=NS(prompt_tokens=3, completion_tokens=2, total_tokens=5)),
        ]
        completions = FakeCompletions(FakeStream(chunks))
        gateway = OpenAIGateway(client=FakeClient(completions))

        events = [event async for event in gateway.converse_stream(request())]

        assert [e.type for e in events] == ["token", "token", "response"]
        response = events[-1].response
        assert response.text == "It checks"
        assert response.stop_reason == "tool_use"
        assert response.tool_calls[0].tool_name == "lookup"
        assert response.tool_calls[0].parameters == {"id": "7"}
        assert response.usage["totalTokens"] == 5
        assert completions.calls[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        client = FakeClient(FakeCompletions())
        await OpenAIGateway(client=client).close()
        assert client.closed is True


class TestStubGateway:
    @pytest.mark.asyncio
    async def test_echoes_last_user_turn(self):
        response = await StubGateway().converse(request())

        assert response.text == "[stub model=gpt-test] where is order 7?"
        assert response.stop_reason == "end_turn"
        assert response.tool_calls == []

    @pytest.mark.asyncio
    async def test_stream_tokens_join_to_text(self):
        events = [event async for event in StubGateway().converse_stream(request())]

        text = "".join(e.text for e in events if e.type == "token")
        assert text == events[-1].response.text

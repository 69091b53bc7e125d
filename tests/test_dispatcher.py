"""Tests for tool dispatch: lookup, schema validation, write-tool idempotency,
timeouts and result normalization."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest
from structlog.testing import capture_logs

from toolflow.config import MAX_TOOL_TIMEOUT_SECONDS
from toolflow.service.dispatcher import ToolDispatcher
from toolflow.service.errors import (
    IDEMPOTENCY_CONFLICT,
    IDEMPOTENCY_KEY_REQUIRED,
    PARAMETER_VALIDATION,
    TOOL_ERROR,
    TOOL_NOT_FOUND,
    TOOL_TIMEOUT,
    DispatcherFault,
    ToolError,
)
from toolflow.service.tools import Tool, ToolContext, ToolRegistry
from toolflow.storage.common import idempotency_cache_key, in_progress_record
from toolflow.storage.memory import MemoryResultStore
from toolflow.storage.models import ToolCallRequest

ORDER_SCHEMA = {
    "type": "object",
    "properties": {"order_id": {"type": "string"}, "quantity": {"type": "integer", "minimum": 1}},
    "required": ["order_id"],
}

TICKET_SCHEMA = {
    "type": "object",
    "properties": {"title": {"type": "string"}, "idempotency_key": {"type": "string"}},
    "required": ["title"],
}


class Counter:
    def __init__(self):
        self.calls = 0
        self.threads = []

    def lookup(self, params, context):
        self.calls += 1
        self.threads.append(threading.current_thread().name)
        return {"order_id": params["order_id"], "status": "shipped"}

    async def create_ticket(self, params, context):
        self.calls += 1
        await asyncio.sleep(0.01)
        return {"ticket": f"T-{self.calls}", "key": context.idempotency_key}


def make_dispatcher(tools, store=None, **kwargs) -> ToolDispatcher:
    return ToolDispatcher(ToolRegistry(tools), store or MemoryResultStore(), **kwargs)


def call(name, tool_use_id="tu-1", metadata=None, **params) -> ToolCallRequest:
    return ToolCallRequest(
        tool_name=name, tool_use_id=tool_use_id, parameters=params, metadata=metadata or {}
    )


def ctx(tool_use_id="tu-1") -> ToolContext:
    return ToolContext(execution_id="exec-test", tool_use_id=tool_use_id, iteration=1)


@pytest.fixture
def counter():
    return Counter()


class TestLookupAndValidation:
    @pytest.mark.asyncio
    async def test_unknown_tool(self, counter):
        dispatcher = make_dispatcher([Tool("lookup", ORDER_SCHEMA, counter.lookup)])

        result = await dispatcher.dispatch(call("refund"), ctx())

        assert result.success is False
        assert result.error_code == TOOL_NOT_FOUND
        assert result.error_detail == {"available": ["lookup"]}
        assert result.turn_content().startswith("Error: Tool 'refund'")

    @pytest.mark.asyncio
    async def test_schema_errors_are_collected(self, counter):
        dispatcher = make_dispatcher([Tool("lookup", ORDER_SCHEMA, counter.lookup)])

        result = await dispatcher.dispatch(call("lookup", quantity=0), ctx())

        assert result.success is False
        assert result.error_code == PARAMETER_VALIDATION
        assert counter.calls == 0
        errors = result.error_detail["errors"]
        assert {"path": "quantity", "message": "0 is less than the minimum of 1"} in errors
        assert any("order_id" in e["message"] for e in errors)

    @pytest.mark.asyncio
    async def test_sync_handler_runs_on_worker_pool(self, counter):
        dispatcher = make_dispatcher([Tool("lookup", ORDER_SCHEMA, counter.lookup)])

        result = await dispatcher.dispatch(call("lookup", order_id="42"), ctx())

        assert result.success is True
        assert result.result == {"order_id": "42", "status": "shipped"}
        assert result.from_cache is False
        assert result.duration_ms is not None
        assert counter.threads[0].startswith("toolflow-tool")
        dispatcher.shutdown()


class TestInvocationFailures:
    @pytest.mark.asyncio
    async def test_timeout(self):
        async def stuck(params, context):
            await asyncio.sleep(5)

        dispatcher = make_dispatcher(
            [Tool("stuck", {"type": "object"}, stuck, timeout_seconds=0.05)]
        )

        result = await dispatcher.dispatch(call("stuck"), ctx())

        assert result.success is False
        assert result.error_code == TOOL_TIMEOUT

    @pytest.mark.asyncio
    async def test_tool_error_keeps_its_code(self):
        async def declined(params, context):
            raise ToolError("card declined", code="payment_declined", detail={"retry": False})

        dispatcher = make_dispatcher([Tool("pay", {"type": "object"}, declined)])

        result = await dispatcher.dispatch(call("pay"), ctx())

        assert result.error_code == "payment_declined"
        assert result.error == "card declined"
        assert result.error_detail == {"retry": False}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_tool_error(self):
        def broken(params, context):
            raise KeyError("missing")

        dispatcher = make_dispatcher([Tool("broken", {"type": "object"}, broken)])

        result = await dispatcher.dispatch(call("broken"), ctx())

        assert result.success is False
        assert result.error_code == TOOL_ERROR
        assert result.to_dict()["errorCode"] == TOOL_ERROR

    def test_default_timeout_is_capped(self):
        dispatcher = make_dispatcher([], default_timeout_seconds=600)
        assert dispatcher.default_timeout_seconds == MAX_TOOL_TIMEOUT_SECONDS
        dispatcher.shutdown()


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_replay_executes_handler_exactly_once(self, counter):
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)]
        )

        first = await dispatcher.dispatch(
            call("create_ticket", "tu-1", title="Broken", idempotency_key="k1"), ctx("tu-1")
        )
        second = await dispatcher.dispatch(
            call("create_ticket", "tu-2", title="Broken", idempotency_key="k1"), ctx("tu-2")
        )

        assert counter.calls == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.result == first.result == {"ticket": "T-1", "key": "k1"}
        assert second.tool_use_id == "tu-2"

    @pytest.mark.asyncio
    async def test_distinct_keys_execute_separately(self, counter):
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)]
        )

        await dispatcher.dispatch(call("create_ticket", title="a", idempotency_key="k1"), ctx())
        await dispatcher.dispatch(call("create_ticket", title="b", idempotency_key="k2"), ctx())

        assert counter.calls == 2

    @pytest.mark.asyncio
    async def test_key_from_request_metadata(self, counter):
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)]
        )
        request = call("create_ticket", metadata={"idempotency_key": "meta-key"}, title="a")

        first = await dispatcher.dispatch(request, ctx())
        second = await dispatcher.dispatch(request, ctx())

        assert first.result["key"] == "meta-key"
        assert second.from_cache is True
        assert counter.calls == 1

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, counter):
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)]
        )

        result = await dispatcher.dispatch(call("create_ticket", title="a"), ctx())

        assert result.error_code == IDEMPOTENCY_KEY_REQUIRED
        assert counter.calls == 0

    @pytest.mark.asyncio
    async def test_failed_first_writer_releases_claim(self):
        attempts = []

        async def flaky(params, context):
            attempts.append(params)
            if len(attempts) == 1:
                raise RuntimeError("upstream 503")
            return {"ok": True}

        dispatcher = make_dispatcher([Tool("flaky", TICKET_SCHEMA, flaky, writes=True)])
        request = call("flaky", title="a", idempotency_key="k1")

        first = await dispatcher.dispatch(request, ctx())
        second = await dispatcher.dispatch(request, ctx())

        assert first.success is False
        assert second.success is True
        assert second.from_cache is False
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_concurrent_writers_share_one_invocation(self, counter):
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)]
        )

        results = await asyncio.gather(
            dispatcher.dispatch(call("create_ticket", "tu-1", title="a", idempotency_key="k"), ctx("tu-1")),
            dispatcher.dispatch(call("create_ticket", "tu-2", title="a", idempotency_key="k"), ctx("tu-2")),
        )

        assert counter.calls == 1
        assert sorted(r.from_cache for r in results) == [False, True]
        assert results[0].result == results[1].result

    @pytest.mark.asyncio
    async def test_claim_held_elsewhere_is_a_conflict(self, counter):
        store = MemoryResultStore()
        await store.acquire_slot(
            idempotency_cache_key("create_ticket", "k1"),
            in_progress_record("exec-other", "tu-other"),
            60,
        )
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)],
            store,
            idempotency_wait_seconds=0.1,
        )

        result = await dispatcher.dispatch(
            call("create_ticket", title="a", idempotency_key="k1"), ctx()
        )

        assert result.error_code == IDEMPOTENCY_CONFLICT
        assert counter.calls == 0

    @pytest.mark.asyncio
    async def test_store_outage_is_dispatcher_fault(self, counter):
        store = MemoryResultStore()
        await store.close()
        dispatcher = make_dispatcher(
            [Tool("create_ticket", TICKET_SCHEMA, counter.create_ticket, writes=True)], store
        )

        with pytest.raises(DispatcherFault) as exc_info:
            await dispatcher.dispatch(
                call("create_ticket", title="a", idempotency_key="k1"), ctx()
            )
        assert exc_info.value.error_code == "dispatcher_fault"
        assert counter.calls == 0

    @pytest.mark.asyncio
    async def test_read_tools_skip_the_store(self, counter):
        store = MemoryResultStore()
        await store.close()
        dispatcher = make_dispatcher([Tool("lookup", ORDER_SCHEMA, counter.lookup)], store)

        result = await dispatcher.dispatch(call("lookup", order_id="1"), ctx())

        assert result.success is True


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestAbandonedWriters:
    @pytest.mark.asyncio
    async def test_timed_out_writer_keeps_its_claim_until_the_handler_finishes(self):
        side_effects = []

        def slow_write(params, context):
            time.sleep(0.3)
            side_effects.append(context.idempotency_key)
            return {"written": context.idempotency_key}

        dispatcher = make_dispatcher(
            [Tool("slow_write", TICKET_SCHEMA, slow_write, writes=True, timeout_seconds=0.05)]
        )

        first = await dispatcher.dispatch(
            call("slow_write", "tu-1", title="a", idempotency_key="k1"), ctx("tu-1")
        )
        second = await dispatcher.dispatch(
            call("slow_write", "tu-2", title="a", idempotency_key="k1"), ctx("tu-2")
        )

        assert first.error_code == TOOL_TIMEOUT
        assert second.success is True
        assert second.from_cache is True
        assert second.result == {"written": "k1"}
        assert side_effects == ["k1"]
        dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_timed_out_writer_that_fails_releases_its_claim(self):
        attempts = []

        def flaky_write(params, context):
            attempts.append(context.tool_use_id)
            if len(attempts) == 1:
                time.sleep(0.2)
                raise RuntimeError("upstream 503")
            return {"ok": True}

        dispatcher = make_dispatcher(
            [Tool("flaky_write", TICKET_SCHEMA, flaky_write, writes=True, timeout_seconds=0.05)]
        )

        first = await dispatcher.dispatch(
            call("flaky_write", "tu-1", title="a", idempotency_key="k1"), ctx("tu-1")
        )
        second = await dispatcher.dispatch(
            call("flaky_write", "tu-2", title="a", idempotency_key="k1"), ctx("tu-2")
        )

        assert first.error_code == TOOL_TIMEOUT
        assert second.success is True
        assert second.from_cache is False
        assert attempts == ["tu-1", "tu-2"]
        dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_writer_releases_its_claim(self):
        entered = asyncio.Event()
        attempts = []

        async def blocking_write(params, context):
            attempts.append(context.tool_use_id)
            if len(attempts) == 1:
                entered.set()
                await asyncio.Event().wait()
            return {"ok": True}

        dispatcher = make_dispatcher(
            [Tool("blocking_write", TICKET_SCHEMA, blocking_write, writes=True)]
        )
        pending = asyncio.ensure_future(
            dispatcher.dispatch(
                call("blocking_write", "tu-1", title="a", idempotency_key="k1"), ctx("tu-1")
            )
        )
        await entered.wait()
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

        retry = await dispatcher.dispatch(
            call("blocking_write", "tu-2", title="a", idempotency_key="k1"), ctx("tu-2")
        )

        assert retry.success is True
        assert retry.from_cache is False
        assert attempts == ["tu-1", "tu-2"]

    @pytest.mark.asyncio
    async def test_claims_use_the_short_claim_ttl(self):
        clock = FakeClock()
        store = MemoryResultStore(clock=clock)
        entered = asyncio.Event()

        async def blocking_write(params, context):
            entered.set()
            await asyncio.Event().wait()

        dispatcher = make_dispatcher(
            [Tool("blocking_write", TICKET_SCHEMA, blocking_write, writes=True)],
            store,
            claim_ttl_seconds=30,
        )
        pending = asyncio.ensure_future(
            dispatcher.dispatch(call("blocking_write", title="a", idempotency_key="k1"), ctx())
        )
        await entered.wait()
        cache_key = idempotency_cache_key("blocking_write", "k1")

        assert (await store.get_record(cache_key))["status"] == "in_progress"
        clock.now += 31
        assert await store.get_record(cache_key) is None

        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

    @pytest.mark.asyncio
    async def test_result_that_could_not_be_stored_is_logged(self):
        clock = FakeClock()
        store = MemoryResultStore(clock=clock)

        def slow_write(params, context):
            clock.now += 31
            return {"ok": True}

        with capture_logs() as logs:
            dispatcher = make_dispatcher(
                [Tool("slow_write", TICKET_SCHEMA, slow_write, writes=True)],
                store,
                claim_ttl_seconds=30,
            )
            result = await dispatcher.dispatch(
                call("slow_write", "tu-9", title="a", idempotency_key="k1"), ctx("tu-9")
            )

        assert result.success is True
        assert await store.get_record(idempotency_cache_key("slow_write", "k1")) is None
        not_stored = [entry for entry in logs if entry["event"] == "tool_result_not_stored"]
        assert len(not_stored) == 1
        assert not_stored[0]["tool"] == "slow_write"
        assert not_stored[0]["tool_use_id"] == "tu-9"
        dispatcher.shutdown()

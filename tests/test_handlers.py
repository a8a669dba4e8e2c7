"""Tests for node handlers and the node dispatcher."""

import asyncio
import json
import time

import httpx
import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage

from flowengine.core.errors import CancellationSignal, ExecutionError, PersistenceError
from flowengine.services.handlers import (
    handle_ai, handle_condition, handle_delay, handle_http, handle_transform, requested_delay,
)
from flowengine.services.node_dispatcher import NodeDispatcher
from flowengine.services.secrets import StaticSecretResolver
from tests.builders import dispatch_context


def mock_transport(status=200, payload=None, seen=None, exc=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if exc is not None:
            raise exc
        return httpx.Response(status, json=payload if payload is not None else {"ok": True})
    return httpx.MockTransport(handler)


class FakeModelFactory:
    """Stands in for ``create_chat_model``; records what the handler asked for."""

    def __init__(self, reply="hello streaming world", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            return BrokenModel(self.error)
        return GenericFakeChatModel(messages=iter([AIMessage(content=self.reply)]))


class BrokenModel:
    def __init__(self, error):
        self.error = error

    async def ainvoke(self, messages):
        raise self.error


class ProviderRateLimit(Exception):
    status_code = 429


# =============================================================================
# HTTP
# =============================================================================

class TestHttp:
    async def test_get_json(self):
        seen = []
        output = await handle_http("fetch", {"url": "https://api.example.com/items", "query": {"page": 2}},
                                   dispatch_context(), transport=mock_transport(payload={"items": [1]}, seen=seen))

        assert output["status"] == 200
        assert output["data"] == {"items": [1]}
        assert seen[0].method == "GET"
        assert seen[0].url.params["page"] == "2"

    async def test_post_sends_json_body(self):
        seen = []
        await handle_http("post", {"url": "https://api.example.com/items", "method": "post",
                                   "json": {"name": "widget"}},
                          dispatch_context(), transport=mock_transport(status=201, seen=seen))

        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"name": "widget"}

    @pytest.mark.parametrize("status,code,retryable", [
        (503, "UPSTREAM_ERROR", True),
        (429, "RATE_LIMITED", True),
        (404, "NOT_FOUND", False),
        (400, "BAD_INPUT", False),
        (401, "UNAUTHORIZED", False),
    ])
    async def test_status_classification(self, status, code, retryable):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_http("fetch", {"url": "https://api.example.com"}, dispatch_context(),
                              transport=mock_transport(status=status))
        assert exc_info.value.code == code
        assert exc_info.value.retryable is retryable
        assert exc_info.value.details == {"status": status}

    async def test_connection_failure_is_retryable(self):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_http("fetch", {"url": "https://api.example.com"}, dispatch_context(),
                              transport=mock_transport(exc=httpx.ConnectError("refused")))
        assert exc_info.value.code == "CONNECTION_ERROR"
        assert exc_info.value.retryable

    async def test_missing_url(self):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_http("fetch", {}, dispatch_context())
        assert exc_info.value.code == "BAD_INPUT"


# =============================================================================
# TRANSFORM
# =============================================================================

class TestTransform:
    async def test_expression_over_namespace(self):
        ctx = dispatch_context(namespace={"trigger": {"items": [1, 2, 3]}, "nodes": {"fetch": {"n": 4}}})
        result = await handle_transform("calc", {"expression": "sum(trigger['items']) + nodes['fetch']['n']"}, ctx)
        assert result == 10

    async def test_code_block_returns_output(self):
        code = "total = 0\nfor item in input:\n    total += item['price']\noutput = {'total': total}"
        result = await handle_transform("calc", {"code": code, "input": [{"price": 2}, {"price": 3}]},
                                        dispatch_context())
        assert result == {"total": 5}

    async def test_namespace_is_not_mutated(self):
        nodes = {"fetch": {"items": [1]}}
        ctx = dispatch_context(namespace={"trigger": {}, "nodes": nodes})
        await handle_transform("calc", {"code": "nodes['fetch']['items'].append(2)\noutput = 1"}, ctx)
        assert nodes == {"fetch": {"items": [1]}}

    @pytest.mark.parametrize("source", [
        "import os",
        "().__class__.__bases__",
        "__import__('os')",
        "open('/etc/passwd')",
        "getattr(input, 'x')",
    ])
    async def test_sandbox_violations(self, source):
        key = "code" if source.startswith("import") else "expression"
        with pytest.raises(ExecutionError) as exc_info:
            await handle_transform("calc", {key: source}, dispatch_context())
        assert exc_info.value.code == "SANDBOX_VIOLATION"
        assert not exc_info.value.retryable

    @pytest.mark.parametrize("code, expected", [
        # walking a generator frame back to the real builtins
        ("def g():\n    yield 1\ngen = g()\nb = gen.gi_frame.f_back.f_back.f_builtins\n"
         "output = b['__import__']('os').getcwd()", "SANDBOX_VIOLATION"),
        ("output = (x for x in [1]).gi_frame", "SANDBOX_VIOLATION"),
        ("def g():\n    yield from [1]\noutput = list(g())", "SANDBOX_VIOLATION"),
        # the json facade carries only loads and dumps
        ("output = json.codecs", "BAD_INPUT"),
    ])
    async def test_introspection_escapes_are_blocked(self, code, expected):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_transform("calc", {"code": code}, dispatch_context())
        assert exc_info.value.code == expected

    async def test_math_json_and_augmented_assignment_still_work(self):
        code = ("total = 0\nfor a, b in [(1, 2), (3, 4)]:\n    total += a * b\n"
                "output = {'total': total, 'root': math.sqrt(16), 'doc': json.loads('[1]')}")
        result = await handle_transform("calc", {"code": code}, dispatch_context())
        assert result == {"total": 14, "root": 4.0, "doc": [1]}

    async def test_runtime_error_is_bad_input(self):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_transform("calc", {"expression": "1 / 0"}, dispatch_context())
        assert exc_info.value.code == "BAD_INPUT"

    async def test_output_must_be_json_serializable(self):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_transform("calc", {"expression": "{1, 2}"}, dispatch_context())
        assert exc_info.value.code == "BAD_INPUT"


# =============================================================================
# CONDITION
# =============================================================================

class TestCondition:
    RULES = [
        {"branch": "branchHigh", "field": "amount", "operator": "gt", "value": 100},
        {"branch": "branchBig", "field": "amount", "operator": "gte", "value": 50},
    ]

    async def test_uses_trigger_payload_by_default(self):
        ctx = dispatch_context(namespace={"trigger": {"amount": 150}, "nodes": {}})
        assert await handle_condition("check", {"rules": self.RULES}, ctx) == {"branch": "branchHigh"}

    async def test_all_policy(self):
        output = await handle_condition("check", {"rules": self.RULES, "input": {"amount": 150},
                                                  "match_policy": "all"}, dispatch_context())
        assert output == {"branch": "branchHigh", "branches": ["branchHigh", "branchBig"]}

    async def test_unknown_policy(self):
        with pytest.raises(ExecutionError):
            await handle_condition("check", {"rules": self.RULES}, dispatch_context(),
                                   default_policy="most")


# =============================================================================
# AI
# =============================================================================

class TestAi:
    async def test_invoke_uses_provider_secret(self, secrets):
        factory = FakeModelFactory(reply="a short answer")

        output = await handle_ai("ask", {"prompt": "Summarize", "system_prompt": "Be brief"},
                                 dispatch_context(), secrets=secrets, model_factory=factory)

        assert output == {"text": "a short answer", "model": factory.calls[0]["model"], "provider": "openai"}
        assert factory.calls[0]["api_key"] == "sk-test"

    async def test_stream_publishes_partials(self, secrets):
        partials = []

        async def on_partial(chunk):
            partials.append(chunk)

        ctx = dispatch_context(on_partial=on_partial)
        output = await handle_ai("ask", {"prompt": "Hi", "stream": True}, ctx,
                                 secrets=secrets, model_factory=FakeModelFactory())

        assert output["text"] == "hello streaming world"
        assert "".join(p["delta"] for p in partials) == "hello streaming world"
        assert [p["index"] for p in partials] == list(range(len(partials)))
        assert all(p["type"] == "nodePartial" for p in partials)

    async def test_stream_stops_on_cancel(self, secrets):
        cancel_event = asyncio.Event()

        async def on_partial(chunk):
            cancel_event.set()

        ctx = dispatch_context(on_partial=on_partial, cancel_event=cancel_event)
        with pytest.raises(CancellationSignal):
            await handle_ai("ask", {"prompt": "Hi", "stream": True}, ctx,
                            secrets=secrets, model_factory=FakeModelFactory())

    async def test_provider_error_is_classified(self, secrets):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_ai("ask", {"prompt": "Hi"}, dispatch_context(), secrets=secrets,
                            model_factory=FakeModelFactory(error=ProviderRateLimit("slow down")))
        assert exc_info.value.code == "RATE_LIMITED"
        assert exc_info.value.retryable

    async def test_missing_key(self):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_ai("ask", {"prompt": "Hi", "provider": "anthropic"}, dispatch_context(),
                            secrets=StaticSecretResolver({}), model_factory=FakeModelFactory())
        assert exc_info.value.code == "SECRET_UNAVAILABLE"
        assert not exc_info.value.retryable


# =============================================================================
# DELAY
# =============================================================================

class TestDelay:
    def test_requested_delay(self):
        assert requested_delay({"seconds": "2.5"}) == 2.5
        assert requested_delay({"until": "2024-01-01T00:00:10Z"}, now=1704067200.0) == 10.0
        assert requested_delay({"until": "2000-01-01T00:00:00"}) == 0.0
        with pytest.raises(ExecutionError):
            requested_delay({"seconds": -1})
        with pytest.raises(ExecutionError):
            requested_delay({"until": "next tuesday"})

    async def test_waits_and_clears_continuation(self, store, timers):
        output = await handle_delay("wait", {"seconds": 5}, dispatch_context("wait"),
                                    store=store, timers=timers, max_delay=60)

        assert 4.5 < timers.delays[0] <= 5.0
        assert set(output) == {"waited", "resumed_at"}
        assert await store.get_continuation("exec-1", "wait") is None

    async def test_resumes_existing_continuation(self, store, timers):
        await store.save_continuation("exec-1", "wait", time.time() + 2)

        await handle_delay("wait", {"seconds": 30}, dispatch_context("wait"),
                           store=store, timers=timers, max_delay=60)

        assert timers.delays[0] <= 2.0

    async def test_cancel_keeps_continuation(self, store, timers):
        cancel_event = asyncio.Event()
        cancel_event.set()

        with pytest.raises(CancellationSignal):
            await handle_delay("wait", {"seconds": 5}, dispatch_context("wait", cancel_event=cancel_event),
                               store=store, timers=timers, max_delay=60)
        assert await store.get_continuation("exec-1", "wait") is not None

    async def test_exceeds_maximum(self, store, timers):
        with pytest.raises(ExecutionError) as exc_info:
            await handle_delay("wait", {"seconds": 120}, dispatch_context("wait"),
                               store=store, timers=timers, max_delay=60)
        assert exc_info.value.code == "BAD_INPUT"


# =============================================================================
# DISPATCHER
# =============================================================================

class TestDispatcher:
    async def test_resolves_secrets_only_at_dispatch(self, settings, secrets, timers, store):
        seen = []
        dispatcher = NodeDispatcher(settings, secrets, timers, store, http_transport=mock_transport(seen=seen))
        config = {"url": "https://api.example.com", "headers": {"Authorization": {"$secret": "API_TOKEN"}}}

        result = await dispatcher.execute("http", config, dispatch_context("fetch"))

        assert result.success
        assert seen[0].headers["authorization"] == "s3cr3t"
        assert config["headers"] == {"Authorization": {"$secret": "API_TOKEN"}}

    async def test_condition_sets_branch(self, dispatcher):
        ctx = dispatch_context("check", namespace={"trigger": {"amount": 5}, "nodes": {}})
        result = await dispatcher.execute("condition", {"rules": TestCondition.RULES, "default": "small"}, ctx)
        assert result.branch == "small"
        assert result.branches == ["small"]

    async def test_unknown_kind(self, dispatcher):
        result = await dispatcher.execute("teleport", {}, dispatch_context())
        assert not result.success
        assert result.error.code == "UNKNOWN_KIND"

    async def test_timeout_is_retryable(self, dispatcher):
        async def slow(node_id, config, context):
            await asyncio.sleep(5)

        dispatcher.register("http", slow)
        result = await dispatcher.execute("http", {}, dispatch_context(), timeout=0.01)

        assert result.error.code == "TIMEOUT"
        assert result.retryable

    async def test_unexpected_exception_is_not_retryable(self, dispatcher):
        async def buggy(node_id, config, context):
            raise KeyError("oops")

        dispatcher.register("transform", buggy)
        result = await dispatcher.execute("transform", {}, dispatch_context())

        assert result.error.code == "INTERNAL_ERROR"
        assert not result.retryable
        assert result.to_dict()["error"]["code"] == "INTERNAL_ERROR"

    async def test_cancellation_propagates(self, dispatcher):
        async def cancelled(node_id, config, context):
            raise CancellationSignal()

        dispatcher.register("http", cancelled)
        with pytest.raises(CancellationSignal):
            await dispatcher.execute("http", {}, dispatch_context())

    async def test_persistence_error_propagates(self, dispatcher):
        async def unstorable(node_id, config, context):
            raise PersistenceError("continuation write failed")

        dispatcher.register("delay", unstorable)
        with pytest.raises(PersistenceError):
            await dispatcher.execute("delay", {"seconds": 1}, dispatch_context())

    @pytest.mark.parametrize("output", [{1, 2}, {"at": time}, b"raw"])
    async def test_output_must_be_json(self, dispatcher, output):
        async def handler(node_id, config, context):
            return output

        dispatcher.register("http", handler)
        result = await dispatcher.execute("http", {}, dispatch_context())

        assert not result.success
        assert result.error.code == "BAD_INPUT"
        assert not result.retryable

    @pytest.mark.parametrize("timeout", ["soon", 0, -1, True, "inf", [5]])
    async def test_invalid_configured_timeout_is_bad_input(self, dispatcher, timeout):
        calls = []

        async def handler(node_id, config, context):
            calls.append(node_id)
            return {}

        dispatcher.register("http", handler)
        result = await dispatcher.execute("http", {"timeout": timeout}, dispatch_context())

        assert result.error.code == "BAD_INPUT"
        assert not result.retryable
        assert calls == []

    def test_timeout_resolution_order(self, dispatcher, settings):
        assert dispatcher.timeout_for("http", {}) == settings.node_timeout
        assert dispatcher.timeout_for("http", {"timeout": "2.5"}) == 2.5
        assert dispatcher.timeout_for("http", {"timeout": 9}, node_timeout=3) == 3.0
        assert dispatcher.timeout_for("delay", {"seconds": 10}, node_timeout=3) == 13.0

    async def test_ai_through_dispatcher(self, settings, secrets, timers, store):
        factory = FakeModelFactory(reply="ok")
        dispatcher = NodeDispatcher(settings, secrets, timers, store, chat_model_factory=factory)

        result = await dispatcher.execute("ai", {"prompt": "Hi", "api_key": {"$secret": "API_TOKEN"}},
                                          dispatch_context("ask"))

        assert result.output["text"] == "ok"
        assert factory.calls[0]["api_key"] == "s3cr3t"

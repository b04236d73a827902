"""
Tests for the cache-aware language model proxy, against a real cache server.
"""

import asyncio
import json
import threading
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rollout_replay.opentelemetry_lib.tracing.attributes import (
    PROMPT_MESSAGES,
    PROMPT_TOOLS,
    ROLLOUT_CACHE_INDEX,
    ROLLOUT_PATH_COUNT,
    ROLLOUT_SESSION_ID,
    SPAN_ORIGINAL_TYPE,
    SPAN_TYPE,
)
from rollout_replay.sdk.rollout.cache_client import CacheClient
from rollout_replay.sdk.rollout.cache_server import CacheServer, cache_key
from rollout_replay.sdk.rollout.language_model import (
    LanguageModelCacheProxy,
    wrap_language_model,
)
from rollout_replay.sdk.rollout.streaming import CachedStream, empty_usage
from rollout_replay.sdk.rollout_control import (
    CACHE_SERVER_ADDRESS_ENV,
    SESSION_ID_ENV,
)

LIVE_USAGE = {"inputTokens": 10, "outputTokens": 5, "totalTokens": 15}
SCHEMA = {"type": "object", "properties": {"x": {"type": "number"}}}


class FakeModel:
    provider = "fake"
    model_id = "fake-model"
    specification_version = "v2"

    def __init__(self):
        self.generate_calls = []
        self.stream_calls = []

    async def generate(self, options):
        self.generate_calls.append(options)
        return {
            "content": [{"type": "text", "text": "live"}],
            "finishReason": "stop",
            "usage": LIVE_USAGE,
            "warnings": [],
        }

    async def stream(self, options):
        self.stream_calls.append(options)

        async def parts():
            yield {"type": "stream-start", "warnings": []}
            yield {"type": "finish", "finishReason": "stop", "usage": LIVE_USAGE}

        return {"stream": parts()}


def _cached_span(output, attributes=None) -> dict:
    return {
        "name": "step",
        "input": "[]",
        "output": output if isinstance(output, str) else json.dumps(output),
        "attributes": attributes or {},
    }


OPTIONS = {"prompt": [{"role": "user", "content": "hello"}]}


@pytest_asyncio.fixture
async def cache_server():
    server = CacheServer(start_port=0)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def cache_client(cache_server: CacheServer):
    client = CacheClient(cache_server.get_url())
    yield client
    await client.close()


@pytest.fixture
def rollout_session(monkeypatch, cache_server: CacheServer):
    monkeypatch.setenv(SESSION_ID_ENV, "session-1")
    monkeypatch.setenv(CACHE_SERVER_ADDRESS_ENV, cache_server.get_url())


@pytest.fixture
def model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def proxy(model: FakeModel, path_tracker, cache_client) -> LanguageModelCacheProxy:
    return wrap_language_model(
        model, path_tracker=path_tracker, cache_client=cache_client
    )


def _spans_by_name(exporter: InMemorySpanExporter):
    return {span.name: span for span in exporter.get_finished_spans()}


@pytest.mark.asyncio
async def test_proxy_forwards_attributes(proxy: LanguageModelCacheProxy, model: FakeModel):
    assert isinstance(proxy, LanguageModelCacheProxy)
    assert proxy.provider == "fake"
    assert proxy.model_id == "fake-model"
    assert proxy.specification_version == "v2"
    assert proxy.__wrapped__ is model


@pytest.mark.asyncio
async def test_passthrough_without_session(
    proxy: LanguageModelCacheProxy, model: FakeModel, tracer, cache_server
):
    cache_server.set_entry(cache_key("agent.step", 0), _cached_span("hi"))
    cache_server.set_metadata({"pathToCount": {"agent.step": 1}})

    with tracer.start_as_current_span("agent"):
        with tracer.start_as_current_span("step"):
            result = await proxy.generate(OPTIONS)

    assert result["content"] == [{"type": "text", "text": "live"}]
    assert model.generate_calls == [OPTIONS]


@pytest.mark.asyncio
async def test_cached_then_live_at_same_path(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    cache_server: CacheServer,
    rollout_session,
):
    cache_server.set_entry(
        cache_key("agent.step", 0), _cached_span([{"type": "text", "text": "hi"}])
    )
    cache_server.set_metadata({"pathToCount": {"agent.step": 1}})

    with tracer.start_as_current_span("agent"):
        with tracer.start_as_current_span("step"):
            first = await proxy.generate(OPTIONS)
        assert model.generate_calls == []

        with tracer.start_as_current_span("step"):
            second = await proxy.generate(OPTIONS)

    assert first == {
        "content": [{"type": "text", "text": "hi"}],
        "finishReason": "stop",
        "usage": empty_usage(),
        "warnings": [],
    }
    assert second["content"] == [{"type": "text", "text": "live"}]
    assert model.generate_calls == [OPTIONS]


@pytest.mark.asyncio
async def test_serves_indices_below_count_then_goes_live(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    cache_server: CacheServer,
    rollout_session,
):
    for index in range(3):
        cache_server.set_entry(
            cache_key("agent.llm", index), _cached_span(f"answer {index}")
        )
    cache_server.set_entry(cache_key("agent.other", 0), _cached_span("other"))
    cache_server.set_metadata({"pathToCount": {"agent.llm": 3, "agent.other": 1}})

    texts = []
    with tracer.start_as_current_span("agent"):
        for _ in range(4):
            with tracer.start_as_current_span("llm"):
                result = await proxy.generate(OPTIONS)
                texts.append(result["content"][0]["text"])
            # calls at another path do not move this path's index
            with tracer.start_as_current_span("other"):
                await proxy.generate(OPTIONS)

    assert texts == ["answer 0", "answer 1", "answer 2", "live"]
    # agent.other: one cached call, then three live ones; agent.llm: one live
    assert len(model.generate_calls) == 4


@pytest.mark.asyncio
async def test_cache_hit_span_attributes(
    proxy: LanguageModelCacheProxy,
    tracer,
    cache_server: CacheServer,
    span_exporter: InMemorySpanExporter,
    rollout_session,
):
    cache_server.set_entry(cache_key("agent.step", 0), _cached_span("hi"))
    cache_server.set_metadata({"pathToCount": {"agent.step": 1}})

    with tracer.start_as_current_span("agent"):
        with tracer.start_as_current_span("step"):
            await proxy.generate(OPTIONS)

    attributes = _spans_by_name(span_exporter)["step"].attributes
    assert attributes[SPAN_TYPE] == "CACHED"
    assert attributes[SPAN_ORIGINAL_TYPE] == "LLM"
    assert attributes[ROLLOUT_SESSION_ID] == "session-1"
    assert attributes[ROLLOUT_CACHE_INDEX] == 0
    assert attributes[ROLLOUT_PATH_COUNT] == 1


@pytest.mark.asyncio
async def test_cached_finish_reason(
    proxy: LanguageModelCacheProxy,
    tracer,
    cache_server: CacheServer,
    rollout_session,
):
    cache_server.set_entry(
        cache_key("agent", 0),
        _cached_span(
            [
                {
                    "type": "tool-call",
                    "toolCallId": "c1",
                    "toolName": "get_weather",
                    "input": {"location": "SF"},
                }
            ],
            attributes={"ai.response.finishReason": "tool-calls"},
        ),
    )
    cache_server.set_metadata({"pathToCount": {"agent": 1}})

    with tracer.start_as_current_span("agent"):
        result = await proxy.generate(OPTIONS)

    assert result["finishReason"] == "tool-calls"
    assert result["content"] == [
        {
            "type": "tool-call",
            "toolCallId": "c1",
            "toolName": "get_weather",
            "input": '{"location":"SF"}',
        }
    ]


@pytest.mark.asyncio
async def test_stream_cache_hit(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    cache_server: CacheServer,
    rollout_session,
):
    cache_server.set_entry(
        cache_key("agent", 0),
        _cached_span(
            [
                {"type": "reasoning", "text": "think"},
                {"type": "text", "text": "hi"},
            ]
        ),
    )
    cache_server.set_metadata({"pathToCount": {"agent": 1}})

    with tracer.start_as_current_span("agent"):
        result = await proxy.stream(OPTIONS)

    assert isinstance(result["stream"], CachedStream)
    parts = [part async for part in result["stream"]]
    assert [part["type"] for part in parts] == [
        "stream-start",
        "reasoning-start",
        "reasoning-delta",
        "reasoning-end",
        "text-start",
        "text-delta",
        "text-end",
        "finish",
    ]
    assert parts[-1] == {"type": "finish", "finishReason": "stop", "usage": empty_usage()}
    assert model.stream_calls == []


@pytest.mark.asyncio
async def test_stream_live_when_exhausted(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    cache_server: CacheServer,
    rollout_session,
):
    cache_server.set_entry(cache_key("agent", 0), _cached_span("hi"))
    cache_server.set_metadata({"pathToCount": {"agent": 1}})

    with tracer.start_as_current_span("agent"):
        await proxy.stream(OPTIONS)
        result = await proxy.stream(OPTIONS)

    parts = [part async for part in result["stream"]]
    assert parts[-1]["usage"] == LIVE_USAGE
    assert len(model.stream_calls) == 1


@pytest.mark.asyncio
async def test_miss_goes_live(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    rollout_session,
):
    with tracer.start_as_current_span("agent"):
        result = await proxy.generate(OPTIONS)

    assert result["usage"] == LIVE_USAGE
    assert model.generate_calls == [OPTIONS]


@pytest.mark.asyncio
async def test_call_outside_any_span_goes_live(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    cache_server: CacheServer,
    rollout_session,
):
    cache_server.set_entry(cache_key("agent", 0), _cached_span("hi"))
    cache_server.set_metadata({"pathToCount": {"agent": 1}})

    result = await proxy.generate(OPTIONS)

    assert result["content"] == [{"type": "text", "text": "live"}]
    assert model.generate_calls == [OPTIONS]


@pytest.mark.asyncio
async def test_unreachable_cache_server_goes_live(
    model: FakeModel, path_tracker, tracer, monkeypatch
):
    server = CacheServer(start_port=0)
    await server.start()
    url = server.get_url()
    await server.stop()

    monkeypatch.setenv(SESSION_ID_ENV, "session-1")
    monkeypatch.setenv(CACHE_SERVER_ADDRESS_ENV, url)
    proxy = wrap_language_model(model, path_tracker=path_tracker)

    with tracer.start_as_current_span("agent"):
        result = await proxy.generate(OPTIONS)
        await proxy._self_cache_client.close()

    assert result["content"] == [{"type": "text", "text": "live"}]


@pytest.mark.asyncio
async def test_overrides_applied_to_live_call(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    cache_server: CacheServer,
    span_exporter: InMemorySpanExporter,
    rollout_session,
):
    # one hit delivers the metadata, the next call at the path is live
    cache_server.set_entry(cache_key("agent", 0), _cached_span("hi"))
    cache_server.set_metadata(
        {
            "pathToCount": {"agent": 1},
            "overrides": {
                "agent": {
                    "system": "You are X.",
                    "tools": [
                        {"name": "calc", "description": "d2"},
                        {"name": "search", "parameters": SCHEMA},
                        {"name": "ghost"},
                    ],
                }
            },
        }
    )
    options = {
        "prompt": [
            {"role": "system", "content": "old 1"},
            {"role": "system", "content": "old 2"},
            {"role": "user", "content": "hello"},
        ],
        "tools": [
            {
                "type": "function",
                "name": "calc",
                "description": "d1",
                "inputSchema": SCHEMA,
            }
        ],
    }

    with tracer.start_as_current_span("agent"):
        await proxy.generate(options)
    with tracer.start_as_current_span("agent"):
        await proxy.generate(options)

    sent = model.generate_calls[0]
    assert sent["prompt"] == [
        {"role": "system", "content": "You are X."},
        {"role": "user", "content": "hello"},
    ]
    assert sent["tools"] == [
        {"type": "function", "name": "calc", "description": "d2", "inputSchema": SCHEMA},
        {"type": "function", "name": "search", "inputSchema": SCHEMA},
    ]
    # caller's request is untouched
    assert options["prompt"][0] == {"role": "system", "content": "old 1"}

    live_span = span_exporter.get_finished_spans()[-1]
    assert json.loads(live_span.attributes[PROMPT_MESSAGES]) == sent["prompt"]
    assert [json.loads(tool) for tool in live_span.attributes[PROMPT_TOOLS]] == sent[
        "tools"
    ]


@pytest.mark.asyncio
async def test_metadata_handshake_happens_once(
    model: FakeModel, path_tracker, tracer, rollout_session
):
    cache_client = AsyncMock(spec=CacheClient)
    cache_client.get_cached.return_value = None
    proxy = wrap_language_model(
        model, path_tracker=path_tracker, cache_client=cache_client
    )

    with tracer.start_as_current_span("agent"):
        await asyncio.gather(proxy.generate(OPTIONS), proxy.generate(OPTIONS))

    handshakes = [
        call for call in cache_client.get_cached.await_args_list if call.args == ("", 0)
    ]
    assert len(handshakes) == 1
    lookups = sorted(
        call.args[1]
        for call in cache_client.get_cached.await_args_list
        if call.args[0] == "agent"
    )
    assert lookups == [0, 1]


@pytest.mark.asyncio
async def test_known_metadata_skips_cache_for_exhausted_path(
    model: FakeModel, path_tracker, tracer, rollout_session
):
    cache_client = AsyncMock(spec=CacheClient)
    cache_client.get_cached.return_value = {
        "span": _cached_span("hi"),
        "pathToCount": {"other": 1},
        "overrides": {},
    }
    proxy = wrap_language_model(
        model, path_tracker=path_tracker, cache_client=cache_client
    )

    with tracer.start_as_current_span("agent"):
        await proxy.generate(OPTIONS)

    # only the handshake reached the cache, "agent" has no cached entries
    cache_client.get_cached.assert_awaited_once_with("", 0)
    assert model.generate_calls == [OPTIONS]


@pytest.mark.asyncio
async def test_live_call_failure_propagates(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    rollout_session,
):
    model.generate = AsyncMock(side_effect=ValueError("provider error"))

    with tracer.start_as_current_span("agent"):
        with pytest.raises(ValueError, match="provider error"):
            await proxy.generate(OPTIONS)


@pytest.mark.asyncio
async def test_index_counter_per_path(proxy: LanguageModelCacheProxy):
    assert proxy.get_current_index_for_path("a") == 0
    assert proxy.get_current_index_for_path("a") == 1
    assert proxy.get_current_index_for_path("b") == 0
    assert proxy.get_current_index_for_path("a") == 2


@pytest.mark.asyncio
async def test_concurrent_paths_keep_their_own_cached_calls(
    proxy: LanguageModelCacheProxy,
    model: FakeModel,
    tracer,
    span_exporter: InMemorySpanExporter,
    cache_server: CacheServer,
    rollout_session,
):
    cached_counts = {"alpha": 2, "beta": 3, "gamma": 0}
    for name, count in cached_counts.items():
        for index in range(count):
            cache_server.set_entry(
                cache_key(f"agent.{name}", index), _cached_span(f"{name} {index}")
            )
    cache_server.set_metadata(
        {"pathToCount": {f"agent.{name}": n for name, n in cached_counts.items()}}
    )

    async def run_steps(name: str) -> list[str]:
        texts = []
        for _ in range(cached_counts[name] + 1):
            with tracer.start_as_current_span(name):
                result = await proxy.generate(OPTIONS)
            texts.append(result["content"][0]["text"])
        return texts

    with tracer.start_as_current_span("agent"):
        alpha, beta, gamma = await asyncio.gather(
            run_steps("alpha"), run_steps("beta"), run_steps("gamma")
        )

    assert alpha == ["alpha 0", "alpha 1", "live"]
    assert beta == ["beta 0", "beta 1", "beta 2", "live"]
    assert gamma == ["live"]
    assert len(model.generate_calls) == 3

    served = sorted(
        (span.name, span.attributes[ROLLOUT_CACHE_INDEX])
        for span in span_exporter.get_finished_spans()
        if span.attributes.get(SPAN_TYPE) == "CACHED"
    )
    assert served == [
        ("alpha", 0),
        ("alpha", 1),
        ("beta", 0),
        ("beta", 1),
        ("beta", 2),
    ]


@pytest.fixture
def cache_server_in_thread():
    """A cache server running on its own event loop in another thread."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    server = CacheServer(start_port=0)
    asyncio.run_coroutine_threadsafe(server.start(), loop).result(timeout=5)
    yield server
    asyncio.run_coroutine_threadsafe(server.stop(), loop).result(timeout=5)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


def test_cached_calls_are_served_across_event_loops(
    model: FakeModel, path_tracker, tracer, cache_server_in_thread, monkeypatch
):
    server = cache_server_in_thread
    for index in range(2):
        server.set_entry(cache_key("agent", index), _cached_span(f"cached {index}"))
    server.set_metadata({"pathToCount": {"agent": 2}})
    monkeypatch.setenv(SESSION_ID_ENV, "session-1")
    monkeypatch.setenv(CACHE_SERVER_ADDRESS_ENV, server.get_url())
    proxy = wrap_language_model(model, path_tracker=path_tracker)

    async def step() -> str:
        with tracer.start_as_current_span("agent"):
            result = await proxy.generate(OPTIONS)
        return result["content"][0]["text"]

    # one event loop per agent step
    assert asyncio.run(step()) == "cached 0"
    assert asyncio.run(step()) == "cached 1"
    assert asyncio.run(step()) == "live"
    assert len(model.generate_calls) == 1

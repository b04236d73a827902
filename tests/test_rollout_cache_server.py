"""
Tests for rollout cache server (aiohttp server).
"""

import socket

import httpx
import pytest

from rollout_replay.sdk.rollout.cache_server import (
    DEFAULT_START_PORT,
    CacheServer,
    cache_key,
)


def _span(output: str) -> dict:
    return {
        "name": "llm_call",
        "input": '{"prompt":"test"}',
        "output": output,
        "attributes": {"gen_ai.request.model": "gpt-4"},
    }


def test_cache_key_puts_index_first():
    assert cache_key("root.llm_call", 0) == "0:root.llm_call"
    assert cache_key("a:b.c", 3) == "3:a:b.c"


def test_default_start_port():
    server = CacheServer()
    assert server.start_port == DEFAULT_START_PORT == 35667
    assert server.host == "127.0.0.1"


@pytest.mark.asyncio
async def test_cache_server_lifecycle():
    """Test cache server start and stop."""
    server = CacheServer(start_port=0)

    port = await server.start()
    assert port > 0
    assert server.port == port
    assert server.get_url() == f"http://127.0.0.1:{port}"

    async with httpx.AsyncClient() as client:
        response = await client.get(f"{server.get_url()}/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    await server.stop()


def test_cache_server_get_url_before_start():
    """Test that get_url() raises error before server is started."""
    server = CacheServer(start_port=0)

    with pytest.raises(RuntimeError, match="Server not started yet"):
        server.get_url()


@pytest.mark.asyncio
async def test_cache_server_skips_busy_port():
    """The server binds the first free port at or above the start port."""
    busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    busy.bind(("127.0.0.1", 0))
    busy.listen(1)
    busy_port = busy.getsockname()[1]

    server = CacheServer(start_port=busy_port)
    try:
        port = await server.start()
        assert port > busy_port
    finally:
        await server.stop()
        busy.close()


@pytest.mark.asyncio
async def test_two_servers_get_different_ports():
    first = CacheServer(start_port=0)
    first_port = await first.start()
    second = CacheServer(start_port=first_port)
    try:
        second_port = await second.start()
        assert second_port != first_port
    finally:
        await second.stop()
        await first.stop()


@pytest.mark.asyncio
async def test_get_cached_span_hit_returns_entry_and_metadata():
    server = CacheServer(start_port=0)
    await server.start()

    try:
        server.set_entries(
            {
                cache_key("root.llm", 0): _span("response 1"),
                cache_key("root.llm", 1): _span("response 2"),
            }
        )
        server.set_metadata(
            {
                "pathToCount": {"root.llm": 2},
                "overrides": {"root.llm": {"system": "You are X."}},
            }
        )

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{server.get_url()}/cached",
                json={"path": "root.llm", "index": 1},
            )
            assert response.status_code == 200
            data = response.json()
            assert data["span"] == _span("response 2")
            assert data["pathToCount"] == {"root.llm": 2}
            assert data["overrides"] == {"root.llm": {"system": "You are X."}}
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_get_cached_span_miss_is_404_without_body():
    server = CacheServer(start_port=0)
    await server.start()

    try:
        server.set_entry(cache_key("root.llm", 0), _span("response"))
        server.set_metadata({"pathToCount": {"root.llm": 1}, "overrides": {}})

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{server.get_url()}/cached",
                json={"path": "root.llm", "index": 1},
            )
            assert response.status_code == 404
            assert response.content == b""
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_hit_reflects_metadata_at_request_time():
    """Metadata changes are visible on the next hit without any other call."""
    server = CacheServer(start_port=0)
    await server.start()

    try:
        server.set_entry(cache_key("root.llm", 0), _span("response"))
        server.set_metadata({"pathToCount": {"root.llm": 1}})

        async with httpx.AsyncClient() as client:
            first = await client.post(
                f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
            )
            server.set_metadata({"pathToCount": {"root.llm": 5}, "overrides": {}})
            second = await client.post(
                f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
            )

        assert first.json()["pathToCount"] == {"root.llm": 1}
        assert first.json()["overrides"] == {}
        assert second.json()["pathToCount"] == {"root.llm": 5}
    finally:
        await server.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"path": "root.llm"},
        {"index": 0},
        {"path": 1, "index": 0},
        {"path": "root.llm", "index": "0"},
        {"path": "root.llm", "index": True},
        ["root.llm", 0],
    ],
)
async def test_cached_rejects_invalid_request(body):
    server = CacheServer(start_port=0)
    await server.start()

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{server.get_url()}/cached", json=body)
            assert response.status_code == 400
            assert "error" in response.json()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_cached_rejects_invalid_json():
    server = CacheServer(start_port=0)
    await server.start()

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{server.get_url()}/cached",
                content=b"not json",
                headers={"Content-Type": "application/json"},
            )
            assert response.status_code == 400
            assert response.json() == {"error": "Invalid JSON"}
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_cors_headers_and_preflight():
    server = CacheServer(start_port=0)
    await server.start()

    try:
        async with httpx.AsyncClient() as client:
            response = await client.options(f"{server.get_url()}/cached")
            assert response.status_code == 200
            assert response.headers["Access-Control-Allow-Origin"] == "*"

            response = await client.get(f"{server.get_url()}/health")
            assert response.headers["Access-Control-Allow-Origin"] == "*"
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_mutators_are_not_exposed_remotely():
    server = CacheServer(start_port=0)
    await server.start()

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{server.get_url()}/spans",
                json={cache_key("root.llm", 0): _span("injected")},
            )
            assert response.status_code in (404, 405)

            response = await client.post(
                f"{server.get_url()}/cached", json={"path": "root.llm", "index": 0}
            )
            assert response.status_code == 404
    finally:
        await server.stop()


def test_get_metadata_returns_snapshot():
    server = CacheServer(start_port=0)
    assert server.get_metadata() == {"pathToCount": {}, "overrides": {}}

    server.set_metadata({"pathToCount": {"root.llm": 1}})
    snapshot = server.get_metadata()
    snapshot["pathToCount"]["root.llm"] = 10

    assert server.get_metadata() == {"pathToCount": {"root.llm": 1}, "overrides": {}}

from typing import Generator
from unittest.mock import Mock

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rollout_replay.opentelemetry_lib.tracing.path_tracker import PathTracker
from rollout_replay.opentelemetry_lib.tracing.processor import RolloutSpanProcessor
from rollout_replay.sdk.rollout.session_client import RolloutSessionClient
from rollout_replay.sdk.rollout_control import (
    CACHE_SERVER_ADDRESS_ENV,
    CACHE_SERVER_URL,
    ROLLOUT_SESSION_ID,
    SESSION_ID_ENV,
)

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def reset_rollout_config(monkeypatch):
    """Start every test outside of any rollout session."""
    monkeypatch.delenv(SESSION_ID_ENV, raising=False)
    monkeypatch.delenv(CACHE_SERVER_ADDRESS_ENV, raising=False)
    session_token = ROLLOUT_SESSION_ID.set(None)
    cache_token = CACHE_SERVER_URL.set(None)
    yield
    ROLLOUT_SESSION_ID.reset(session_token)
    CACHE_SERVER_URL.reset(cache_token)


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def session_client() -> Mock:
    return Mock(spec=RolloutSessionClient)


@pytest.fixture
def path_tracker() -> PathTracker:
    return PathTracker()


@pytest.fixture
def span_processor(
    path_tracker: PathTracker,
    span_exporter: InMemorySpanExporter,
    session_client: Mock,
) -> RolloutSpanProcessor:
    return RolloutSpanProcessor(
        path_tracker=path_tracker,
        exporter=span_exporter,
        disable_batch=True,
        session_client=session_client,
    )


@pytest.fixture
def tracer_provider(
    span_processor: RolloutSpanProcessor,
) -> Generator[TracerProvider, None, None]:
    provider = TracerProvider()
    provider.add_span_processor(span_processor)
    yield provider
    provider.shutdown()


@pytest.fixture
def tracer(tracer_provider: TracerProvider):
    return tracer_provider.get_tracer("rollout-replay-tests")

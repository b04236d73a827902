"""
Example demonstrating replay of a recorded agent run.

A harness owns the cache server and fills it with the outputs recorded in a
previous run. The agent wraps its model with `wrap_language_model`, so calls
at recorded paths are answered from the cache and only new calls reach the
live model. Here the first "plan" call is replayed and the second one, which
the recording does not cover, goes live with an overridden system prompt.
"""

import asyncio
import json

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter

from rollout_replay import (
    CacheServer,
    RolloutSessionClient,
    RolloutSpanProcessor,
    set_rollout_session,
    wrap_language_model,
)
from rollout_replay.sdk.rollout.cache_server import cache_key


class EchoModel:
    """Stand-in for a real provider model."""

    provider = "echo"
    model_id = "echo-1"

    async def generate(self, options):
        system = next(
            (m["content"] for m in options["prompt"] if m["role"] == "system"), ""
        )
        return {
            "content": [{"type": "text", "text": f"live answer ({system})"}],
            "finishReason": "stop",
            "usage": {"inputTokens": 3, "outputTokens": 3, "totalTokens": 6},
            "warnings": [],
        }

    async def stream(self, options):
        raise NotImplementedError


async def main():
    server = CacheServer()
    await server.start()
    print(f"Cache server listening on {server.get_url()}")

    server.set_entry(
        cache_key("agent.plan", 0),
        {
            "name": "plan",
            "input": "[]",
            "output": json.dumps([{"type": "text", "text": "recorded plan"}]),
            "attributes": {"ai.response.finishReason": "stop"},
        },
    )
    server.set_metadata(
        {
            "pathToCount": {"agent.plan": 1},
            "overrides": {"agent.plan": {"system": "You are a careful planner."}},
        }
    )

    set_rollout_session("example-session", server.get_url())

    # Span updates go to the tracker configured by ROLLOUT_TRACKER_BASE_URL and
    # ROLLOUT_PROJECT_API_KEY; without a key they are skipped with a warning.
    session_client = RolloutSessionClient()
    processor = RolloutSpanProcessor(
        exporter=ConsoleSpanExporter(),
        disable_batch=True,
        session_client=session_client,
    )
    provider = TracerProvider()
    provider.add_span_processor(processor)
    tracer = provider.get_tracer("replay-example")

    model = wrap_language_model(EchoModel(), path_tracker=processor.path_tracker)
    prompt = {"prompt": [{"role": "user", "content": "What next?"}]}

    with tracer.start_as_current_span("agent"):
        for _ in range(2):
            with tracer.start_as_current_span("plan"):
                result = await model.generate(prompt)
                print(result["content"][0]["text"])

    session_client.flush(timeout=5)
    provider.shutdown()
    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())

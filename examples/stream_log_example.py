"""Streaming example: accumulate a scripted stream and log the turn.

Demonstrates:
- Implementing ModelProvider.stream_complete with stream chunks
- Accumulating text and interleaved tool calls with complete()
- Recording the turn in an EventLog and writing it as JSON lines
- Rendering the conversation for an OpenAI-style API with ChatMLFormatter

Usage:
    uv run examples/stream_log_example.py --out session.jsonl --trace
"""

import argparse
import asyncio
import json
import sys
import uuid

from umf.chatml import ChatMLFormatter
from umf.events import EventLog, ToolResult
from umf.message import Message
from umf.provider import ModelProvider
from umf.streaming import Done, TextDelta, ToolCallDelta


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from umf.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


class ScriptedProvider(ModelProvider):
    """Replays fragments the way a provider delivers them over SSE."""

    async def stream_complete(self, model, messages, tools=None):
        if messages[-1].role.value == "tool":
            for word in ["It is ", "4C ", "in Oslo."]:
                yield TextDelta(delta=word)
            yield Done()
            return

        yield TextDelta(delta="Let me ")
        yield ToolCallDelta(index=0, id="call_1", name="weather")
        yield TextDelta(delta="check.")
        yield ToolCallDelta(index=0, arguments_delta='{"city": ')
        yield ToolCallDelta(index=0, arguments_delta='"Oslo"}')
        yield Done()


def weather(city: str) -> str:
    return json.dumps({"city": city, "celsius": 4})


async def main():
    parser = argparse.ArgumentParser(description="Stream accumulation demo")
    parser.add_argument("--model", default="scripted")
    parser.add_argument("--out", default=None, help="JSONL file for the event log")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("umf-stream-example")

    provider = ScriptedProvider()
    log = EventLog(session_id=str(uuid.uuid4()))
    history = [Message.user("What's the weather in Oslo?")]
    log.record_message(history[0])

    response = await provider.complete(args.model, history)
    message_event, call_events = log.record_response(response)
    history.append(message_event.message)
    print(f"Assistant: {response.text}")

    for tc, call_event in zip(response.tool_calls, call_events):
        output = weather(**tc.parsed_arguments())
        print(f"  -> {tc.name}({tc.arguments}) = {output}")
        history.append(Message.tool_result(tc.id, tc.name, output))
        log.record_tool_result(call_event.event_id, ToolResult.success(tc.id, output))

    final = await provider.complete(args.model, history)
    history.append(final.to_message())
    log.record_message(history[-1])
    print(f"Assistant: {final.text}\n")

    formatter = ChatMLFormatter()
    for msg in history:
        formatter.add_message(msg)
    print(json.dumps(formatter.to_openai_format(), indent=2))

    if args.out:
        with open(args.out, "w") as f:
            count = log.write(f)
        print(f"\nWrote {count} events to {args.out}")
    else:
        sys.stdout.write("\n" + log.to_jsonl())


if __name__ == "__main__":
    asyncio.run(main())

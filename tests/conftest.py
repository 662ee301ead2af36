import itertools

import pytest

from umf.provider import ModelProvider
from umf.streaming import Done, TextDelta, ToolCallDelta


# ---------------------------------------------------------------------------
# Chunk sources
# ---------------------------------------------------------------------------

async def chunk_source(chunks, error: Exception | None = None, seen: list | None = None):
    """Async chunk source.  Raises *error* after the chunks when given.

    Every chunk handed to the consumer is also appended to *seen*.
    """
    for chunk in chunks:
        if seen is not None:
            seen.append(chunk)
        yield chunk
    if error is not None:
        raise error


def tool_call_chunks(
    name: str,
    arguments: str,
    call_id: str = "call_1",
    index: int = 0,
) -> list:
    """Deltas for one tool call: id and name first, then arguments split
    in two fragments."""
    mid = len(arguments) // 2
    return [
        ToolCallDelta(index=index, id=call_id, name=name),
        ToolCallDelta(index=index, arguments_delta=arguments[:mid]),
        ToolCallDelta(index=index, arguments_delta=arguments[mid:]),
    ]


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that streams pre-queued chunk lists. No network calls."""

    def __init__(self):
        self.streams: list[list] = []
        self.call_log: list[dict] = []

    async def stream_complete(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        for chunk in self.streams.pop(0):
            yield chunk


class FakeTokenizer:
    """Whitespace tokenizer standing in for a real BPE encoder."""

    def encode(self, text: str) -> list[str]:
        return text.split()


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def tokenizer():
    return FakeTokenizer()


@pytest.fixture
def fixed_clock():
    """Clock returning 1000, 1001, 1002, ... ms."""
    counter = itertools.count(1000)
    return lambda: next(counter)


@pytest.fixture
def sequential_ids():
    """Id factory returning evt_1, evt_2, ..."""
    counter = itertools.count(1)
    return lambda: f"evt_{next(counter)}"


@pytest.fixture
def mixed_stream():
    """Text, an interleaved tool call at sparse index 1, then Done."""
    return [
        TextDelta(delta="Let me "),
        ToolCallDelta(index=1, id="call_9", name="search"),
        TextDelta(delta="look."),
        ToolCallDelta(index=1, arguments_delta='{"q": '),
        ToolCallDelta(index=1, arguments_delta='"umf"}'),
        Done(),
    ]

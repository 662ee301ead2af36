"""Streaming primitives for provider responses.

Provider adapters yield :data:`StreamChunk` values.  The
:class:`StreamingAccumulator` folds them, in arrival order, into one
:class:`AccumulatedResponse`: text deltas are appended to a single
buffer and tool-call deltas are merged per index, with argument
fragments concatenated as raw text.

Indices are sparse.  Anthropic-style streams put a text block at
index 0 and the first ``tool_use`` at index 1, so entries are kept in
a dict and only sorted when the accumulator finishes.

Chunks must come from a single producer in order.  Reordered argument
fragments cannot be repaired and are not detected.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, Iterable
from contextlib import aclosing, nullcontext
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from umf.instrumentation import record_error, record_response, stream_span
from umf.message import Message, ToolUseBlock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stream protocol
# ---------------------------------------------------------------------------

class TextDelta(BaseModel):
    """A span of assistant text."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["text"] = "text"
    delta: str


class ToolCallDelta(BaseModel):
    """A partial update to the tool call at ``index``.

    ``id`` and ``name`` replace the current value when present;
    ``arguments_delta`` is appended to the arguments collected so far.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tool_call_delta"] = "tool_call_delta"
    index: int = Field(ge=0)
    id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


class Done(BaseModel):
    """End-of-stream sentinel."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["done"] = "done"


StreamChunk = Annotated[
    Union[TextDelta, ToolCallDelta, Done],
    Field(discriminator="type"),
]

_chunk_adapter = TypeAdapter(StreamChunk)


def parse_stream_chunk(data: Any) -> TextDelta | ToolCallDelta | Done:
    """Validate a stored or transmitted chunk.

    Raises:
        pydantic.ValidationError: On an unknown ``type`` or a malformed
            variant.
    """
    return _chunk_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A tool call assembled from stream deltas.

    ``arguments`` is the raw JSON text exactly as streamed.
    """

    id: str = ""
    name: str = ""
    arguments: str = ""

    def to_openai(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }

    @classmethod
    def from_openai(cls, data: dict) -> ToolCall:
        function = data["function"]
        return cls(
            id=data["id"],
            name=function["name"],
            arguments=function.get("arguments", ""),
        )

    def parsed_arguments(self) -> Any:
        """Arguments decoded as JSON, or ``None`` if they do not parse."""
        try:
            return json.loads(self.arguments)
        except json.JSONDecodeError:
            return None

    def to_block(self) -> ToolUseBlock:
        # Streams may omit the id.
        return ToolUseBlock(id=self.id, name=self.name, input=self.parsed_arguments())


@dataclass
class AccumulatedResponse:
    """Everything a stream produced: the full text and the named tool
    calls in ascending index order."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_message(self) -> Message:
        if not self.tool_calls:
            return Message.assistant(self.text)
        return Message.assistant_with_tools(
            self.text, [tc.to_block() for tc in self.tool_calls],
        )


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

class AccumulatorClosedError(RuntimeError):
    """Raised when an accumulator is used after ``Done`` or ``finish()``."""


class StreamingAccumulator:
    """Single-shot reducer from stream chunks to one response.

    Feed chunks with :meth:`process_chunk` until it returns ``True``,
    then call :meth:`finish` exactly once.  There is no locking; the
    accumulator must only be fed by one producer.
    """

    def __init__(self) -> None:
        self._text = ""
        self._pending: dict[int, ToolCall] = {}
        self._done = False
        self._finished = False
        self.chunk_count = 0

    @property
    def done(self) -> bool:
        return self._done

    def process_chunk(self, chunk: TextDelta | ToolCallDelta | Done) -> bool:
        """Apply one chunk.  Returns ``True`` once the stream is done."""
        if self._finished:
            raise AccumulatorClosedError("accumulator has already been finished")
        if self._done:
            raise AccumulatorClosedError("stream already terminated by Done")
        self.chunk_count += 1

        if isinstance(chunk, TextDelta):
            self._text += chunk.delta
            return False
        if isinstance(chunk, ToolCallDelta):
            self._feed(chunk)
            return False
        if isinstance(chunk, Done):
            self._done = True
            logger.debug(f"Stream done after {self.chunk_count} chunks")
            return True
        raise TypeError(f"Unsupported stream chunk: {type(chunk).__name__}")

    def _feed(self, delta: ToolCallDelta) -> None:
        if delta.index not in self._pending:
            self._pending[delta.index] = ToolCall()
        tc = self._pending[delta.index]
        # Last write wins when a provider repeats id or name.
        if delta.id is not None:
            tc.id = delta.id
        if delta.name is not None:
            tc.name = delta.name
        if delta.arguments_delta is not None:
            tc.arguments += delta.arguments_delta

    def finish(self) -> AccumulatedResponse:
        """Return the response and release the accumulator's state.

        Tool calls come back in ascending index order; entries that
        never received a name are dropped.
        """
        if self._finished:
            raise AccumulatorClosedError("accumulator has already been finished")
        self._finished = True

        pending, self._pending = self._pending, {}
        text, self._text = self._text, ""

        tool_calls = []
        for index in sorted(pending):
            tc = pending[index]
            if not tc.name:
                logger.debug(f"Dropping unnamed tool call at index {index} (id={tc.id!r})")
                continue
            tool_calls.append(tc)
        return AccumulatedResponse(text=text, tool_calls=tool_calls)


def accumulate(chunks: Iterable[TextDelta | ToolCallDelta | Done]) -> AccumulatedResponse:
    """Drive a synchronous chunk sequence.  Nothing after ``Done`` is read."""
    acc = StreamingAccumulator()
    for chunk in chunks:
        if acc.process_chunk(chunk):
            break
    return acc.finish()


def _closing(source):
    if hasattr(source, "aclose"):
        return aclosing(source)
    return nullcontext(source)


async def accumulate_stream(
    source: AsyncIterable[TextDelta | ToolCallDelta | Done],
    *,
    model: str | None = None,
) -> AccumulatedResponse:
    """Drive an async chunk source to completion.

    Stops at ``Done`` or when the source is exhausted.  A source with
    ``aclose()`` (an async generator) is closed as soon as the loop
    ends.  An exception raised by the source propagates unchanged and
    the partial state is discarded; so does cancellation.

    Args:
        source: Async iterable of chunks from a single producer.
        model: Optional model name, recorded on the tracing span.
    """
    acc = StreamingAccumulator()
    async with stream_span(model) as span:
        try:
            async with _closing(source) as chunks:
                async for chunk in chunks:
                    if acc.process_chunk(chunk):
                        break
        except Exception as e:
            record_error(span, e)
            raise
        response = acc.finish()
        record_response(span, response, acc.chunk_count)
    return response

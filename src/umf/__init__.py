"""Universal Message Format: provider-neutral LLM messages and stream accumulation."""

from umf.instrumentation import instrument, uninstrument
from umf.message import (
    ContentBlock,
    ImageBlock,
    Message,
    MessageContent,
    MessageRole,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from umf.streaming import (
    AccumulatedResponse,
    Done,
    StreamChunk,
    StreamingAccumulator,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    accumulate,
    accumulate_stream,
)

__all__ = [
    "AccumulatedResponse",
    "ContentBlock",
    "Done",
    "ImageBlock",
    "Message",
    "MessageContent",
    "MessageRole",
    "StreamChunk",
    "StreamingAccumulator",
    "TextBlock",
    "TextDelta",
    "ToolCall",
    "ToolCallDelta",
    "ToolResultBlock",
    "ToolUseBlock",
    "accumulate",
    "accumulate_stream",
    "instrument",
    "uninstrument",
]

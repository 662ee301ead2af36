from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from umf.message import Message
from umf.streaming import (
    AccumulatedResponse,
    Done,
    TextDelta,
    ToolCallDelta,
    accumulate_stream,
)


class ModelProvider(ABC):
    """Seam between a provider's wire format and the stream protocol.

    Adapters implement :meth:`stream_complete` and translate their
    provider's streaming events into :data:`~umf.streaming.StreamChunk`
    values.  :meth:`complete` drives that stream through the
    accumulator.
    """

    @abstractmethod
    def stream_complete(
            self,
            model: str,
            messages: list[Message],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[TextDelta | ToolCallDelta | Done]:
        ...

    async def complete(
            self,
            model: str,
            messages: list[Message],
            tools: list[dict] | None = None,
    ) -> AccumulatedResponse:
        return await accumulate_stream(
            self.stream_complete(model, messages, tools),
            model=model,
        )

"""Conversation events for append-only, line-delimited JSON logs.

Each event wraps a finished value (a message, a tool call or a tool
result) with an identifier, a millisecond timestamp and a per-session
sequence number.  :class:`EventEnvelope` gives every event the same
outer shape so a log can hold one envelope per line.

Identifiers and timestamps come from the :class:`EventLog` that
records the event.  Pass ``clock`` and ``id_factory`` to make them
deterministic.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from enum import Enum
from typing import Any, ClassVar, TextIO

from pydantic import BaseModel, ConfigDict, field_serializer, model_serializer

from umf.message import Message
from umf.streaming import AccumulatedResponse, ToolCall

logger = logging.getLogger(__name__)


class EventType(Enum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM_SIGNAL = "system_signal"
    ERROR = "error"


class ToolCallStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _Record(BaseModel):
    """Base for logged values.  Top-level ``None`` fields are not written."""

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    @model_serializer(mode="wrap")
    def _omit_none(self, handler):
        data = handler(self)
        return {k: v for k, v in data.items() if v is not None}


class ModelInfo(_Record):
    model_name: str
    provider: str | None = None


class McpContext(_Record):
    server_name: str
    server_url: str | None = None
    transport: str | None = None


class ToolInvocation(_Record):
    """Provider-neutral tool call with decoded arguments."""

    id: str
    name: str
    arguments: Any = None

    @classmethod
    def from_tool_call(cls, tc: ToolCall) -> ToolInvocation:
        """Decode streamed arguments; text that is not JSON is kept as a string."""
        args = tc.parsed_arguments()
        if args is None and tc.arguments.strip() not in ("", "null"):
            args = tc.arguments
        return cls(id=tc.id, name=tc.name, arguments=args)


class ToolResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tool_call_id: str
    content: Any
    is_error: bool = False

    @classmethod
    def success(cls, tool_call_id: str, content: str) -> ToolResult:
        return cls(tool_call_id=tool_call_id, content=content)

    @classmethod
    def success_json(cls, tool_call_id: str, content: Any) -> ToolResult:
        return cls(tool_call_id=tool_call_id, content=content)

    @classmethod
    def error(cls, tool_call_id: str, error: str) -> ToolResult:
        return cls(tool_call_id=tool_call_id, content=error, is_error=True)


class Event(_Record):
    event_type: ClassVar[EventType]

    event_id: str
    session_id: str
    project_hash: str | None = None
    timestamp_ms: int
    sequence: int


class MessageEvent(Event):
    event_type: ClassVar[EventType] = EventType.MESSAGE

    message: Message
    token_count: int | None = None
    model_info: ModelInfo | None = None


class ToolCallEvent(Event):
    event_type: ClassVar[EventType] = EventType.TOOL_CALL

    message_event_id: str
    tool_call: ToolInvocation
    status: ToolCallStatus = ToolCallStatus.PENDING
    mcp_context: McpContext | None = None

    @field_serializer("status")
    def serialize_status(self, status: ToolCallStatus, _info) -> str:
        return status.value


class ToolResultEvent(Event):
    event_type: ClassVar[EventType] = EventType.TOOL_RESULT

    tool_call_event_id: str
    result: ToolResult
    duration_ms: int | None = None
    error: str | None = None


class EventEnvelope(_Record):
    """Uniform wrapper stored as one JSON line per event."""

    event_id: str
    event_type: EventType
    session_id: str
    project_hash: str | None = None
    timestamp_ms: int
    sequence: int
    payload: dict[str, Any]

    @field_serializer("event_type")
    def serialize_event_type(self, event_type: EventType, _info) -> str:
        return event_type.value

    @classmethod
    def wrap(cls, event: Event) -> EventEnvelope:
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            session_id=event.session_id,
            project_hash=event.project_hash,
            timestamp_ms=event.timestamp_ms,
            sequence=event.sequence,
            payload=event.model_dump(mode="json"),
        )

    def _unwrap(self, event_cls: type[Event]):
        if self.event_type != event_cls.event_type:
            return None
        return event_cls.model_validate(self.payload)

    def as_message_event(self) -> MessageEvent | None:
        return self._unwrap(MessageEvent)

    def as_tool_call_event(self) -> ToolCallEvent | None:
        return self._unwrap(ToolCallEvent)

    def as_tool_result_event(self) -> ToolResultEvent | None:
        return self._unwrap(ToolResultEvent)

    def to_json_line(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json_line(cls, line: str) -> EventEnvelope:
        return cls.model_validate_json(line)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class EventLog:
    """Append-only event log for one session.

    Sequence numbers start at 1 and increase by one per recorded event.

    Args:
        session_id: Session every event belongs to.
        clock: Returns the current time in Unix milliseconds.
        id_factory: Returns a fresh event identifier.
        project_hash: Optional storage-routing key stamped on every event.
    """

    def __init__(
        self,
        session_id: str,
        *,
        clock: Callable[[], int] | None = None,
        id_factory: Callable[[], str] | None = None,
        project_hash: str | None = None,
    ):
        self.session_id = session_id
        self.project_hash = project_hash
        self._clock = clock or _now_ms
        self._new_id = id_factory or _new_event_id
        self._sequence = 0
        self._envelopes: list[EventEnvelope] = []

    @property
    def sequence(self) -> int:
        """Sequence number of the most recent event (0 when empty)."""
        return self._sequence

    @property
    def envelopes(self) -> list[EventEnvelope]:
        return list(self._envelopes)

    def _stamp(self) -> dict:
        self._sequence += 1
        return {
            "event_id": self._new_id(),
            "session_id": self.session_id,
            "project_hash": self.project_hash,
            "timestamp_ms": self._clock(),
            "sequence": self._sequence,
        }

    def _append(self, event: Event) -> None:
        self._envelopes.append(EventEnvelope.wrap(event))
        logger.debug(
            f"Recorded {event.event_type.value} event {event.event_id} "
            f"seq={event.sequence} session={self.session_id}"
        )

    def record_message(
        self,
        message: Message,
        *,
        token_count: int | None = None,
        model_info: ModelInfo | None = None,
    ) -> MessageEvent:
        event = MessageEvent(
            **self._stamp(),
            message=message,
            token_count=token_count,
            model_info=model_info,
        )
        self._append(event)
        return event

    def record_tool_call(
        self,
        message_event_id: str,
        tool_call: ToolInvocation | ToolCall,
        *,
        status: ToolCallStatus = ToolCallStatus.PENDING,
        mcp_context: McpContext | None = None,
    ) -> ToolCallEvent:
        if isinstance(tool_call, ToolCall):
            tool_call = ToolInvocation.from_tool_call(tool_call)
        event = ToolCallEvent(
            **self._stamp(),
            message_event_id=message_event_id,
            tool_call=tool_call,
            status=status,
            mcp_context=mcp_context,
        )
        self._append(event)
        return event

    def record_tool_result(
        self,
        tool_call_event_id: str,
        result: ToolResult,
        *,
        duration_ms: int | None = None,
    ) -> ToolResultEvent:
        event = ToolResultEvent(
            **self._stamp(),
            tool_call_event_id=tool_call_event_id,
            result=result,
            duration_ms=duration_ms,
            error=result.content if result.is_error and isinstance(result.content, str) else None,
        )
        self._append(event)
        return event

    def record_response(
        self,
        response: AccumulatedResponse,
        *,
        token_count: int | None = None,
        model_info: ModelInfo | None = None,
    ) -> tuple[MessageEvent, list[ToolCallEvent]]:
        """Record a finished stream as one assistant message event
        followed by one pending tool-call event per tool call."""
        message_event = self.record_message(
            response.to_message(),
            token_count=token_count,
            model_info=model_info,
        )
        call_events = [
            self.record_tool_call(message_event.event_id, tc)
            for tc in response.tool_calls
        ]
        return message_event, call_events

    def to_jsonl(self) -> str:
        return "".join(f"{e.to_json_line()}\n" for e in self._envelopes)

    def write(self, stream: TextIO) -> int:
        """Write every envelope as a JSON line.  Returns the line count."""
        for envelope in self._envelopes:
            stream.write(envelope.to_json_line())
            stream.write("\n")
        return len(self._envelopes)

    @staticmethod
    def read(lines: Iterable[str]) -> list[EventEnvelope]:
        """Parse JSON lines back into envelopes, skipping blank lines.

        Raises:
            pydantic.ValidationError: On a malformed line or unknown
                event type.
        """
        return [
            EventEnvelope.from_json_line(line)
            for line in lines
            if line.strip()
        ]

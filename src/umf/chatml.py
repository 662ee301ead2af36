"""ChatML / OpenAI chat formatting.

:class:`ChatMLMessage` is the flat, OpenAI-compatible shape: string
content plus optional ``name``, ``tool_call_id`` and ``tool_calls``.
It converts to and from :class:`~umf.message.Message`.
:class:`ChatMLFormatter` collects a conversation and renders it either
as a list of API dicts or as a ``<|im_start|>`` template string.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator, model_serializer

from umf.message import Message, MessageRole, TextBlock, ToolUseBlock
from umf.streaming import ToolCall

logger = logging.getLogger(__name__)


class ChatMLMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: MessageRole
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("tool_calls")
    def serialize_tool_calls(self, tool_calls: list[ToolCall] | None) -> list[dict] | None:
        if tool_calls is None:
            return None
        return [tc.to_openai() for tc in tool_calls]

    @field_validator("tool_calls", mode="before")
    @classmethod
    def _accept_openai_shape(cls, value):
        if value is None:
            return None
        return [
            ToolCall.from_openai(item) if isinstance(item, dict) and "function" in item else item
            for item in value
        ]

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        data = handler(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def system(cls, content: str, name: str | None = None) -> "ChatMLMessage":
        return cls(role=MessageRole.SYSTEM, content=content, name=name)

    @classmethod
    def user(cls, content: str, name: str | None = None) -> "ChatMLMessage":
        return cls(role=MessageRole.USER, content=content, name=name)

    @classmethod
    def assistant(cls, content: str, name: str | None = None) -> "ChatMLMessage":
        return cls(role=MessageRole.ASSISTANT, content=content, name=name)

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str) -> "ChatMLMessage":
        return cls(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=tool_call_id,
            name=name,
        )

    @classmethod
    def assistant_with_tool_calls(
        cls, content: str, tool_calls: list[ToolCall]
    ) -> "ChatMLMessage":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tool_calls)

    def to_dict(self) -> dict:
        """Dict for the OpenAI chat completions API."""
        return self.model_dump()

    def to_chatml_string(self) -> str:
        name_part = f" name={self.name}" if self.name is not None else ""
        return f"<|im_start|>{self.role.value}{name_part}\n{self.content}\n<|im_end|>"

    @classmethod
    def from_message(cls, msg: Message) -> "ChatMLMessage":
        """Flatten a :class:`Message`.

        Text blocks are joined with newlines.  Tool-use blocks become
        ``tool_calls`` with their input rendered as compact JSON; other
        block kinds have no ChatML equivalent and are skipped.
        """
        if msg.role == MessageRole.TOOL:
            if isinstance(msg.content, str):
                content = msg.content
            else:
                content = "\n".join(
                    b.text for b in msg.content if isinstance(b, TextBlock)
                )
            return cls(
                role=msg.role,
                content=content,
                name=msg.name,
                tool_call_id=msg.tool_call_id,
            )

        if isinstance(msg.content, str):
            content, tool_calls = msg.content, None
        else:
            text_parts = []
            calls = []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    calls.append(ToolCall(
                        id=block.id,
                        name=block.name,
                        arguments=json.dumps(
                            block.input, separators=(",", ":"), ensure_ascii=False,
                        ),
                    ))
            content = "\n".join(text_parts)
            tool_calls = calls or None

        return cls(
            role=msg.role,
            content=content,
            name=msg.name,
            tool_call_id=msg.tool_call_id,
            tool_calls=tool_calls,
        )

    def to_message(self) -> Message:
        if self.tool_call_id is not None:
            return Message(
                role=MessageRole.TOOL,
                content=self.content,
                tool_call_id=self.tool_call_id,
                name=self.name,
            )

        if self.tool_calls is not None:
            blocks = []
            if self.content:
                blocks.append(TextBlock.of(self.content))
            blocks.extend(tc.to_block() for tc in self.tool_calls)
            return Message(role=self.role, content=blocks)

        return Message(role=self.role, content=self.content)


class ChatMLFormatter:
    """Builds a conversation in ChatML form.

    Args:
        tokenizer: Any object with an ``encode(str)`` method returning a
            sequence of tokens (a ``tiktoken`` encoding or a Hugging Face
            tokenizer both fit).  Only used by :meth:`count_tokens`.
    """

    def __init__(self, tokenizer=None):
        self.tokenizer = tokenizer
        self._messages: list[ChatMLMessage] = []

    def add_system_message(self, content: str, name: str | None = None) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.system(content, name))
        return self

    def add_user_message(self, content: str, name: str | None = None) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.user(content, name))
        return self

    def add_assistant_message(self, content: str, name: str | None = None) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.assistant(content, name))
        return self

    def add_assistant_message_with_tool_calls(
        self, content: str, tool_calls: list[ToolCall]
    ) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.assistant_with_tool_calls(content, tool_calls))
        return self

    def add_tool_message(self, content: str, tool_call_id: str, name: str) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.tool(content, tool_call_id, name))
        return self

    def add_tool_results_message(self, content: str, name: str | None = None) -> "ChatMLFormatter":
        """Add several tool outputs as one combined tool message."""
        self._messages.append(ChatMLMessage.tool(
            content, "combined_tool_results", name or "tool_results",
        ))
        return self

    def add_message(self, msg: Message) -> "ChatMLFormatter":
        self._messages.append(ChatMLMessage.from_message(msg))
        return self

    def to_openai_format(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    def to_chatml_string(self) -> str:
        return "\n".join(m.to_chatml_string() for m in self._messages)

    def clear(self) -> "ChatMLFormatter":
        self._messages.clear()
        return self

    def limit_history(self, max_messages: int) -> "ChatMLFormatter":
        """Keep the first message plus the most recent ``max_messages - 1``.

        Raises:
            ValueError: If ``max_messages`` is less than 1.
        """
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        if len(self._messages) > max_messages:
            first = self._messages[0]
            recent = self._messages[len(self._messages) - (max_messages - 1):]
            self._messages = [first, *recent]
        return self

    @property
    def message_count(self) -> int:
        return len(self._messages)

    @property
    def last_message(self) -> ChatMLMessage | None:
        return self._messages[-1] if self._messages else None

    @property
    def messages(self) -> list[ChatMLMessage]:
        return list(self._messages)

    def format_thought_command(self, thought: str, command: str) -> str:
        return f"THOUGHT: {thought}\n\n```bash\n{command}\n```"

    def replace_template_variables(self, template: str, variables: dict[str, str]) -> str:
        result = template
        for key, value in variables.items():
            result = result.replace(f"{{{key}}}", value)
        return result

    def process_template(self, template_path: str | Path, variables: dict[str, str]) -> str:
        template = Path(template_path).read_text()
        return self.replace_template_variables(template, variables)

    def validate_messages(self) -> bool:
        """Check the conversation against OpenAI's message rules.

        Assistant messages carrying tool calls may have empty content and
        no name.  System messages must be named; tool messages need both
        ``tool_call_id`` and ``name``.
        """
        for m in self._messages:
            if not m.content and m.tool_calls is None:
                return False
            if m.role == MessageRole.SYSTEM and m.name is None:
                return False
            if m.role == MessageRole.ASSISTANT and m.tool_calls is None and m.name is None:
                return False
            if m.role == MessageRole.TOOL and (m.tool_call_id is None or m.name is None):
                return False
        return True

    def count_tokens(self) -> int:
        """Token count of :meth:`to_chatml_string`, or 0 without a tokenizer."""
        if self.tokenizer is None:
            logger.debug("No tokenizer configured; reporting 0 tokens")
            return 0
        return len(self.tokenizer.encode(self.to_chatml_string()))

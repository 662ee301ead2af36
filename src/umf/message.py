"""Provider-neutral message model.

A :class:`Message` carries either plain text or an ordered list of
content blocks.  The two forms are kept distinct on the wire: text
serializes as a JSON string and blocks as a JSON array, so callers tell
them apart by shape alone.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationInfo,
    field_serializer,
    field_validator,
    model_serializer,
)


class MessageRole(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ---------------------------------------------------------------------------
# Image sources
# ---------------------------------------------------------------------------

class Base64ImageSource(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class UrlImageSource(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["url"] = "url"
    url: str


ImageSource = Annotated[
    Union[Base64ImageSource, UrlImageSource],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------

class _Block(BaseModel):
    """Shared accessors.  Each variant overrides the one that applies."""

    model_config = ConfigDict(extra="forbid")

    def as_text(self) -> str | None:
        return None

    def as_image(self) -> Base64ImageSource | UrlImageSource | None:
        return None

    def as_tool_use(self) -> tuple[str, str, Any] | None:
        return None

    def as_tool_result(self) -> tuple[str, str] | None:
        return None


class TextBlock(_Block):
    """``{"type": "text", "text": ...}``"""

    type: Literal["text"] = "text"
    text: str

    @classmethod
    def of(cls, text: str) -> "TextBlock":
        return cls(text=text)

    def as_text(self) -> str:
        return self.text


class ImageBlock(_Block):
    """``{"type": "image", "source": {...}}``"""

    type: Literal["image"] = "image"
    source: ImageSource

    @classmethod
    def of(cls, source: Base64ImageSource | UrlImageSource) -> "ImageBlock":
        return cls(source=source)

    def as_image(self) -> Base64ImageSource | UrlImageSource:
        return self.source


class ToolUseBlock(_Block):
    """A tool invocation requested by the assistant.

    ``input`` is any JSON value and must be present; ``null`` and ``{}``
    are both valid.  :meth:`of` rejects an empty ``id`` or ``name``.
    Parsed and streamed blocks keep whatever the provider sent, so a
    logged call without an id still reads back.
    """

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Any

    @field_validator("id", "name")
    @classmethod
    def _non_empty_when_built(cls, value: str, info: ValidationInfo) -> str:
        if info.context and info.context.get("built") and not value:
            raise ValueError(f"{info.field_name} must not be empty")
        return value

    @classmethod
    def of(cls, id: str, name: str, input: Any) -> "ToolUseBlock":
        return cls.model_validate(
            {"id": id, "name": name, "input": input}, context={"built": True},
        )

    def as_tool_use(self) -> tuple[str, str, Any]:
        return self.id, self.name, self.input


class ToolResultBlock(_Block):
    """``{"type": "tool_result", "tool_use_id": ..., "content": ...}``"""

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(min_length=1)
    content: str

    @classmethod
    def of(cls, tool_use_id: str, content: str) -> "ToolResultBlock":
        return cls(tool_use_id=tool_use_id, content=content)

    def as_tool_result(self) -> tuple[str, str]:
        return self.tool_use_id, self.content


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]

MessageContent = Union[str, list[ContentBlock]]

_block_adapter = TypeAdapter(ContentBlock)


def parse_content_block(data: Any) -> TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock:
    """Validate a serialized block, dispatching on its ``type`` tag.

    Raises:
        pydantic.ValidationError: If the tag is unknown or the fields do
            not match the variant exactly.
    """
    return _block_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single conversation message.

    ``tool_call_id`` and ``name`` are only set on tool-result messages.
    ``metadata`` holds provider-specific string pairs and is left out of
    the serialized form when empty.
    """

    model_config = ConfigDict(extra="forbid")

    role: MessageRole
    content: MessageContent
    metadata: dict[str, str] = Field(default_factory=dict)
    tool_call_id: str | None = None
    name: str | None = None

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @model_serializer(mode="wrap")
    def _omit_unset(self, handler):
        data = handler(self)
        if not self.metadata:
            data.pop("metadata", None)
        for key in ("tool_call_id", "name"):
            if data.get(key) is None:
                data.pop(key, None)
        return data

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=MessageRole.USER, content=text)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=text)

    @classmethod
    def tool(cls, content: MessageContent) -> "Message":
        """Tool message without call linkage.  Prefer :meth:`tool_result`."""
        return cls(role=MessageRole.TOOL, content=content)

    @classmethod
    def tool_result(cls, tool_call_id: str, name: str, content: str) -> "Message":
        return cls(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=tool_call_id,
            name=name,
        )

    @classmethod
    def assistant_with_tools(cls, text: str, tool_calls: list[ContentBlock]) -> "Message":
        """Assistant turn made of a leading text block plus ``tool_calls``."""
        return cls(
            role=MessageRole.ASSISTANT,
            content=[TextBlock.of(text), *tool_calls],
        )

    def is_text(self) -> bool:
        return isinstance(self.content, str)

    def is_blocks(self) -> bool:
        return not isinstance(self.content, str)

    def text(self) -> str | None:
        return self.content if isinstance(self.content, str) else None

    def blocks(self) -> list[ContentBlock] | None:
        return None if isinstance(self.content, str) else self.content

    def to_text(self) -> str:
        """Flatten the message to text.

        Block messages contribute their text and tool-result blocks,
        joined with newlines; images and tool invocations are skipped.
        """
        if isinstance(self.content, str):
            return self.content
        parts = []
        for block in self.content:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolResultBlock):
                parts.append(block.content)
        return "\n".join(parts)

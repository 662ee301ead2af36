"""Table-driven operation dispatcher.

Requests arrive as :class:`Packet` objects naming an operation.  The
operation must be listed in the operation table (``operations.json``
bundled with the package, or the file named by ``UMF_OPERATIONS_PATH``)
and have a handler registered for it.  Handlers take the request
``data`` and return ``(entity_id, data)`` for the response.

Example::

    dispatcher = Dispatcher()
    request = create_message_packet("create-user-message", "Hello", "my-app")
    response = dispatcher.handle(request)
    message = Message.model_validate(response.data)
"""

import logging
import os
from collections.abc import Callable
from importlib import resources
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from umf.chatml import ChatMLMessage
from umf.message import Message, parse_content_block

logger = logging.getLogger(__name__)

COMPONENT_ID = "umf"
OPERATIONS_ENV_VAR = "UMF_OPERATIONS_PATH"

Handler = Callable[[Any], tuple[str, Any]]


class DispatchError(ValueError):
    """The request cannot be routed to a handler."""


class MissingFieldError(DispatchError):
    """A required field is absent from the request data."""

    def __init__(self, field: str):
        super().__init__(f"Missing field: {field}")
        self.field = field


class Operation(BaseModel):
    id: str
    domain: str
    description: str = ""


class OperationTable(BaseModel):
    component: str
    version: str
    operations: list[Operation]

    def ids(self) -> list[str]:
        return [op.id for op in self.operations]

    def get(self, operation_id: str) -> Operation | None:
        for op in self.operations:
            if op.id == operation_id:
                return op
        return None


def load_operations(path: str | Path | None = None) -> OperationTable:
    """Load the operation table.

    Args:
        path: JSON file to read.  Falls back to ``UMF_OPERATIONS_PATH``,
            then to the table shipped with the package.
    """
    if path is None:
        path = os.getenv(OPERATIONS_ENV_VAR)
    if path:
        text = Path(path).read_text()
    else:
        text = resources.files("umf").joinpath("operations.json").read_text()
    return OperationTable.model_validate_json(text)


def schema_ref(entity_id: str) -> str:
    return f"{COMPONENT_ID}#{entity_id}"


class Packet(BaseModel):
    """Request or response exchanged with the dispatcher."""

    model_config = ConfigDict(extra="forbid")

    source_component: str
    target_component: str
    operation: str
    entity_id: str = ""
    schema_ref: str = ""
    data: Any = None


def create_message_packet(operation: str, text: str, source_component: str) -> Packet:
    """Build a request for one of the ``create-*-message`` operations."""
    return Packet(
        source_component=source_component,
        target_component=COMPONENT_ID,
        operation=operation,
        entity_id="message-request",
        schema_ref=f"{source_component}#message-request",
        data={"text": text},
    )


def _require(data: Any, key: str, kind: type = str):
    if data is None:
        raise MissingFieldError("data")
    if not isinstance(data, dict) or not isinstance(data.get(key), kind):
        raise MissingFieldError(key)
    return data[key]


def _require_data(data: Any) -> Any:
    if data is None:
        raise MissingFieldError("data")
    return data


class Dispatcher:
    """Routes packets to handlers by operation id.

    Args:
        operations: Operation table; loaded with :func:`load_operations`
            when omitted.
        tokenizer: Object with an ``encode(str)`` method, used by
            ``count-tokens``.  Without one the count is 0.

    Raises:
        DispatchError: If the table belongs to another component.
    """

    def __init__(self, operations: OperationTable | None = None, tokenizer=None):
        self.operations = operations or load_operations()
        if self.operations.component != COMPONENT_ID:
            raise DispatchError(
                f"Operation table is for '{self.operations.component}', "
                f"expected '{COMPONENT_ID}'"
            )
        self.tokenizer = tokenizer
        builtin: dict[str, Handler] = {
            "create-system-message": self._create_system_message,
            "create-user-message": self._create_user_message,
            "create-assistant-message": self._create_assistant_message,
            "create-assistant-with-tools": self._create_assistant_with_tools,
            "create-tool-result-message": self._create_tool_result_message,
            "to-chatml": self._to_chatml,
            "from-chatml": self._from_chatml,
            "extract-text-content": self._extract_text,
            "count-tokens": self._count_tokens,
        }
        self.handlers: dict[str, Handler] = {
            op_id: builtin[op_id]
            for op_id in self.operations.ids()
            if op_id in builtin
        }

    def register(self, operation: str, handler: Handler) -> None:
        """Attach a handler to an operation listed in the table.

        Raises:
            DispatchError: If the table does not list *operation*.
        """
        if self.operations.get(operation) is None:
            raise DispatchError(f"Operation '{operation}' is not in the operation table")
        self.handlers[operation] = handler

    def handle(self, packet: Packet) -> Packet:
        """Run the packet's operation and return the response packet.

        Raises:
            DispatchError: Wrong target component or unknown operation.
            MissingFieldError: Required request data is absent.
            pydantic.ValidationError: Request data has the wrong shape.
        """
        if packet.target_component != COMPONENT_ID:
            logger.warning(f"Rejected packet for '{packet.target_component}'")
            raise DispatchError(
                f"Packet target is '{packet.target_component}', expected '{COMPONENT_ID}'"
            )
        handler = self.handlers.get(packet.operation)
        if handler is None:
            logger.warning(f"Unknown operation: {packet.operation}")
            raise DispatchError(f"Unknown operation: {packet.operation}")

        entity_id, data = handler(packet.data)
        return Packet(
            source_component=COMPONENT_ID,
            target_component=packet.source_component,
            operation=packet.operation,
            entity_id=entity_id,
            schema_ref=schema_ref(entity_id),
            data=data,
        )

    # ------------------------------------------------------------------
    # Message creation
    # ------------------------------------------------------------------

    @staticmethod
    def _message_result(message: Message) -> tuple[str, Any]:
        return "internal-message", message.model_dump(mode="json")

    def _create_system_message(self, data):
        return self._message_result(Message.system(_require(data, "text")))

    def _create_user_message(self, data):
        return self._message_result(Message.user(_require(data, "text")))

    def _create_assistant_message(self, data):
        return self._message_result(Message.assistant(_require(data, "text")))

    def _create_assistant_with_tools(self, data):
        text = _require(data, "text")
        blocks = [parse_content_block(b) for b in _require(data, "tool_calls", list)]
        return self._message_result(Message.assistant_with_tools(text, blocks))

    def _create_tool_result_message(self, data):
        return self._message_result(Message.tool_result(
            _require(data, "tool_call_id"),
            _require(data, "name"),
            _require(data, "content"),
        ))

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _to_chatml(self, data):
        message = Message.model_validate(_require_data(data))
        return "chatml-message", ChatMLMessage.from_message(message).model_dump(mode="json")

    def _from_chatml(self, data):
        chatml = ChatMLMessage.model_validate(_require_data(data))
        return self._message_result(chatml.to_message())

    def _extract_text(self, data):
        message = Message.model_validate(_require_data(data))
        return "text", message.to_text()

    def _count_tokens(self, data):
        chatml = ChatMLMessage.model_validate(_require_data(data))
        if self.tokenizer is None:
            return "token-count", 0
        return "token-count", len(self.tokenizer.encode(chatml.to_chatml_string()))

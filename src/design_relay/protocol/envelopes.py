"""Wire envelopes shared by the relay server and both client sides.

Commands travel caller -> server -> consumer; responses travel back along the
same path. Every response carries the id of the command it answers, which is
the only correlation key the relay uses.

Wire keys are camelCase (``clientId``, ``existingId``, ``lastPing``) while the
Python attributes stay snake_case. Both spellings are accepted on input.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_command_id() -> str:
    """Mint a command id that is unique for the lifetime of the relay."""
    return f"cmd_{uuid.uuid4().hex[:12]}"


def new_client_id() -> str:
    """Mint a client id for a fresh registration."""
    return f"client_{uuid.uuid4().hex[:12]}"


class WireModel(BaseModel):
    """Base model with camelCase aliases on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to JSON-safe values using wire aliases, dropping unset optionals.

        Raises:
            ValueError: If a value has no JSON representation
        """
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CommandCategory(str, Enum):
    """Handler families understood by the design-tool consumer."""

    NODE_CREATION = "node-creation"
    NODE_MODIFICATION = "node-modification"
    STYLE_MODIFICATION = "style-modification"
    TEXT_OPERATIONS = "text-operations"
    LAYOUT_OPERATIONS = "layout-operations"
    COMPONENT_OPERATIONS = "component-operations"
    BOOLEAN_OPERATIONS = "boolean-operations"
    HIERARCHY_OPERATIONS = "hierarchy-operations"
    SELECTION_NAVIGATION = "selection-navigation"
    EXPORT_OPERATIONS = "export-operations"
    DESIGN_API = "design-api"

    @classmethod
    def parse(cls, value: str | CommandCategory) -> CommandCategory | None:
        """Return the category for ``value`` or None when it is not known."""
        if isinstance(value, CommandCategory):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class ErrorCode(str, Enum):
    """Machine-readable failure codes carried on failed responses."""

    TIMEOUT = "timeout"
    NO_CONSUMER = "no_consumer"
    UNKNOWN_CATEGORY = "unknown_category"
    UNKNOWN_OPERATION = "unknown_operation"
    HANDLER_ERROR = "handler_error"
    TRANSPORT_ERROR = "transport_error"


class CommandEnvelope(WireModel):
    """A unit of work sent from a caller to a consumer.

    Example:
        {
            "id": "cmd_3f2a9c01b7de",
            "category": "node-creation",
            "operation": "create-rectangle",
            "parameters": {"width": 100, "height": 50}
        }

    ``category`` stays a plain string on the wire so that a command for a
    category the consumer does not know is still deliverable; the dispatcher
    turns it into a failed response instead of the server rejecting it.
    """

    id: str = Field(default_factory=new_command_id, min_length=1)
    category: str = Field(min_length=1)
    operation: str = Field(min_length=1)
    parameters: dict[str, Any]

    @property
    def description(self) -> str:
        """Human readable ``category.operation`` label for logs."""
        return f"{self.category}.{self.operation}"

    @classmethod
    def create(
        cls,
        category: str | CommandCategory,
        operation: str,
        parameters: dict[str, Any] | None = None,
        command_id: str | None = None,
    ) -> CommandEnvelope:
        """Factory method for creating commands."""
        return cls(
            id=command_id or new_command_id(),
            category=category.value if isinstance(category, CommandCategory) else category,
            operation=operation,
            parameters=parameters or {},
        )


class ResponseEnvelope(WireModel):
    """The correlated result of a CommandEnvelope.

    ``id`` always equals the originating command's id.
    """

    id: str = Field(min_length=1)
    success: bool
    data: Any = None
    error: str | None = None
    code: str | None = None

    @property
    def is_timeout(self) -> bool:
        """True for the synthetic envelope the server produces on deadline."""
        return not self.success and self.code == ErrorCode.TIMEOUT.value

    @classmethod
    def ok(cls, command_id: str, data: Any = None) -> ResponseEnvelope:
        """Create a successful response."""
        return cls(id=command_id, success=True, data=data)

    @classmethod
    def failure(
        cls,
        command_id: str,
        error: str,
        code: str | ErrorCode | None = None,
    ) -> ResponseEnvelope:
        """Create a failed response."""
        return cls(
            id=command_id,
            success=False,
            error=error,
            code=code.value if isinstance(code, ErrorCode) else code,
        )

    @classmethod
    def timeout(cls, command_id: str, timeout: float) -> ResponseEnvelope:
        """Create the synthetic response returned when a waiter expires."""
        return cls.failure(
            command_id,
            f"Command {command_id} timeout ({int(timeout * 1000)}ms)",
            code=ErrorCode.TIMEOUT,
        )


class ClientRegistration(WireModel):
    """Server-side record of a registered client."""

    client_id: str
    type: str
    connected: bool = True
    last_ping: float = Field(default_factory=time.time)
    registered_at: float = Field(default_factory=time.time)

    def touch(self) -> None:
        """Record activity from this client."""
        self.last_ping = time.time()
        self.connected = True

    def is_alive(self, window: float, now: float | None = None) -> bool:
        """Whether the client was heard from within ``window`` seconds."""
        now = time.time() if now is None else now
        return (now - self.last_ping) < window


class RegisterRequest(WireModel):
    """Body of ``POST /register``."""

    type: str = Field(min_length=1)
    existing_id: str | None = None


class RegisterResponse(WireModel):
    """Body returned by ``POST /register``."""

    success: bool = True
    client_id: str
    message: str | None = None
    timestamp: float = Field(default_factory=time.time)


class PollResponse(WireModel):
    """Body returned by ``GET /commands``."""

    commands: list[CommandEnvelope] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)

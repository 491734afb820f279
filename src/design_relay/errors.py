"""Error taxonomy for the relay.

Transport faults are recovered locally (retry, backoff, reconnect) up to a
bound and then surface as one of these. Handler faults never surface as
exceptions on the wire: the dispatcher turns them into failed responses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol import ResponseEnvelope


class RelayError(Exception):
    """Base class for all relay errors."""


class RelayConnectionError(RelayError, ConnectionError):
    """Health check or registration failed."""


class TransientTransportError(RelayError):
    """Network failure or 5xx on a call that is safe to retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RelayTransportError(RelayError):
    """Transport failure on a call that is never retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CommandTimeoutError(RelayError, TimeoutError):
    """No correlated response arrived within the caller's deadline."""

    def __init__(self, command_id: str, description: str, timeout: float) -> None:
        self.command_id = command_id
        self.description = description
        self.timeout = timeout
        super().__init__(f"Command {description} timeout after {int(timeout * 1000)}ms")


class CommandFailedError(RelayError):
    """The consumer (or the server on its behalf) reported a failure."""

    def __init__(self, response: ResponseEnvelope, description: str | None = None) -> None:
        self.response = response
        self.command_id = response.id
        self.code = response.code
        self.description = description
        super().__init__(response.error or "Command failed")


class NoConsumerError(RelayError):
    """No connected consumer is registered for the target type."""

    def __init__(self, target_type: str, command_id: str | None = None) -> None:
        self.target_type = target_type
        self.command_id = command_id
        super().__init__(f"No {target_type} client connected")


class DuplicateCommandError(RelayError):
    """A command id was submitted more than once."""

    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"Command id already submitted: {command_id}")


class UnknownClientError(RelayError):
    """A client id is not (or no longer) registered with the server."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        super().__init__(f"Unknown client: {client_id}")


class HandlerError(RelayError):
    """A leaf handler failed while executing a command."""


class UnknownOperationError(HandlerError):
    """No handler is registered for a (category, operation) pair."""

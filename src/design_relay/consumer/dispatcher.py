"""Command dispatcher.

Routes each CommandEnvelope to a leaf handler through a table keyed by
``(CommandCategory, operation)``. The table is filled at startup, either
with ``register`` or with the ``handler`` decorator:

    dispatcher = CommandDispatcher()

    @dispatcher.handler(CommandCategory.NODE_CREATION, "create-rectangle")
    async def create_rectangle(params: dict) -> dict:
        return {"width": params["width"], "height": params["height"]}

Handlers receive the command's parameters and may be coroutine functions
or plain callables. ``dispatch`` never raises: unknown categories, unknown
operations, handler exceptions and results with no JSON representation all
become failed ResponseEnvelopes.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any

from ..errors import HandlerError, UnknownOperationError
from ..protocol import CommandCategory, CommandEnvelope, ErrorCode, ResponseEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]


class CommandDispatcher:
    """Enum-keyed dispatch table for consumer-side handlers."""

    def __init__(self) -> None:
        self._handlers: dict[tuple[CommandCategory, str], Handler] = {}

    def register(self, category: str | CommandCategory, operation: str, handler: Handler) -> None:
        """Register a handler for one (category, operation) pair.

        Raises:
            ValueError: If the category is unknown or the pair is taken
        """
        parsed = CommandCategory.parse(category)
        if parsed is None:
            raise ValueError(f"Unknown command category: {category}")
        key = (parsed, operation)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {parsed.value}.{operation}")
        self._handlers[key] = handler
        logger.debug(f"Registered handler for {parsed.value}.{operation}")

    def handler(self, category: str | CommandCategory, operation: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""

        def decorator(func: Handler) -> Handler:
            self.register(category, operation, func)
            return func

        return decorator

    def unregister(self, category: str | CommandCategory, operation: str) -> bool:
        parsed = CommandCategory.parse(category)
        if parsed is None:
            return False
        return self._handlers.pop((parsed, operation), None) is not None

    def resolve(self, category: str, operation: str) -> Handler:
        """Look up the handler for a pair.

        Raises:
            HandlerError: Unknown category
            UnknownOperationError: Known category, unknown operation
        """
        parsed = CommandCategory.parse(category)
        if parsed is None:
            raise HandlerError(f"Unknown command category: {category}")
        handler = self._handlers.get((parsed, operation))
        if handler is None:
            raise UnknownOperationError(f"Unknown {parsed.value} operation: {operation}")
        return handler

    async def dispatch(self, command: CommandEnvelope) -> ResponseEnvelope:
        """Run one command and build its response. Never raises."""
        try:
            handler = self.resolve(command.category, command.operation)
        except UnknownOperationError as e:
            logger.warning(str(e))
            return ResponseEnvelope.failure(command.id, str(e), ErrorCode.UNKNOWN_OPERATION)
        except HandlerError as e:
            logger.warning(str(e))
            return ResponseEnvelope.failure(command.id, str(e), ErrorCode.UNKNOWN_CATEGORY)

        logger.debug(f"Dispatching {command.description} ({command.id})")
        try:
            result = handler(command.parameters)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.error(f"Handler for {command.description} failed: {e}", exc_info=True)
            message = str(e) or type(e).__name__
            return ResponseEnvelope.failure(command.id, message, ErrorCode.HANDLER_ERROR)

        response = ResponseEnvelope.ok(command.id, result)
        try:
            response.to_wire()
        except ValueError as e:
            logger.error(f"Handler for {command.description} returned an unserializable result: {e}")
            return ResponseEnvelope.failure(
                command.id, f"Result is not JSON-serializable: {e}", ErrorCode.HANDLER_ERROR
            )
        return response

    async def dispatch_many(self, commands: Iterable[CommandEnvelope]) -> list[ResponseEnvelope]:
        """Dispatch commands sequentially, in order."""
        return [await self.dispatch(command) for command in commands]

    def validate_command(self, command: CommandEnvelope) -> str | None:
        """Return why ``command`` cannot be dispatched, or None if it can."""
        try:
            self.resolve(command.category, command.operation)
        except HandlerError as e:
            return str(e)
        return None

    def supported_categories(self) -> list[str]:
        """Categories with at least one registered handler."""
        seen = {category for category, _ in self._handlers}
        return [c.value for c in CommandCategory if c in seen]

    def operations(self, category: str | CommandCategory) -> list[str]:
        parsed = CommandCategory.parse(category)
        return sorted(op for cat, op in self._handlers if cat == parsed)

    def stats(self) -> dict[str, Any]:
        """Implemented vs placeholder categories, for status displays."""
        implemented = self.supported_categories()
        placeholder = [c.value for c in CommandCategory if c.value not in implemented]
        return {
            "total_categories": len(CommandCategory),
            "implemented": implemented,
            "placeholder": placeholder,
            "handlers": len(self._handlers),
        }

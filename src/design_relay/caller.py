"""Caller-side RPC client.

Makes the polling consumer look like a synchronous RPC target: ``execute``
sends one blocking submit and waits for the correlated response under a
category-specific deadline.

Usage:
    async with RelayCaller() as caller:
        result = await caller.execute("node-creation", "create-rectangle", {"width": 100})
        print(result.data)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import BaseModel

from .config import CallerConfig
from .errors import (
    CommandFailedError,
    CommandTimeoutError,
    RelayConnectionError,
    RelayError,
    TransientTransportError,
)
from .protocol import CommandCategory, CommandEnvelope, ResponseEnvelope
from .transport import RelayHTTPClient, retry_transient

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """Successful outcome of ``RelayCaller.execute``."""

    command_id: str
    success: bool = True
    data: Any = None
    error: str | None = None


@dataclass
class PendingCall:
    """An in-flight command awaiting its response."""

    command_id: str
    future: asyncio.Future[ResponseEnvelope]
    deadline: float
    context: str
    created_at: float = field(default_factory=time.monotonic)


class PendingCallRegistry:
    """One-shot futures keyed by command id.

    Every call settles at most once and is removed from the registry on
    settlement, whichever way it settles.
    """

    def __init__(self) -> None:
        self._calls: dict[str, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._calls

    def open(self, command_id: str, deadline: float, context: str) -> PendingCall:
        if command_id in self._calls:
            raise ValueError(f"Command {command_id} is already pending")
        call = PendingCall(
            command_id=command_id,
            future=asyncio.get_running_loop().create_future(),
            deadline=deadline,
            context=context,
        )
        self._calls[command_id] = call
        return call

    def resolve(self, response: ResponseEnvelope) -> bool:
        """Settle the call for ``response.id``. False if none is pending."""
        call = self._calls.pop(response.id, None)
        if call is None or call.future.done():
            return False
        call.future.set_result(response)
        return True

    def reject(self, command_id: str, error: BaseException) -> bool:
        call = self._calls.pop(command_id, None)
        if call is None or call.future.done():
            return False
        call.future.set_exception(error)
        return True

    def discard(self, command_id: str) -> None:
        """Drop a call without settling it (its waiter has given up)."""
        call = self._calls.pop(command_id, None)
        if call is not None and not call.future.done():
            call.future.cancel()

    def reject_all(self, error: BaseException) -> int:
        count = 0
        for command_id in list(self._calls):
            if self.reject(command_id, error):
                count += 1
        return count


class RelayCaller:
    """Connects to the relay as a ``caller`` and executes commands.

    Args:
        config: Caller settings (defaults to environment-derived settings)
        transport: Optional httpx transport, mainly for tests
        sleep: Sleep used between connection retries, mainly for tests
    """

    def __init__(
        self,
        config: CallerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Any = asyncio.sleep,
    ) -> None:
        self.config = config or CallerConfig.from_env()
        self._transport = transport
        self._sleep = sleep
        self._http: RelayHTTPClient | None = None
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._pending = PendingCallRegistry()

    @property
    def client_id(self) -> str | None:
        return self._http.client_id if self._http else None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def __aenter__(self) -> RelayCaller:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self) -> str:
        """Health-check the relay and register as a caller.

        Concurrent callers share one attempt. Transient failures are retried
        per ``config.retry``.

        Returns:
            The assigned client id

        Raises:
            RelayConnectionError: If the relay stays unreachable
        """
        async with self._connect_lock:
            if self._connected and self._http and self._http.client_id:
                return self._http.client_id

            if self._http is None:
                self._http = RelayHTTPClient(
                    self.config.base_url,
                    self.config.client_type,
                    timeout=self.config.http_timeout,
                    transport=self._transport,
                )
            http = self._http

            try:
                await retry_transient(http.health, self.config.retry, "Health check", self._sleep)
                client_id = await retry_transient(
                    lambda: http.register(http.client_id),
                    self.config.retry,
                    "Registration",
                    self._sleep,
                )
            except TransientTransportError as e:
                raise RelayConnectionError(f"Relay not reachable at {self.config.base_url}: {e}") from e
            except RelayError as e:
                raise RelayConnectionError(f"Registration failed: {e}") from e

            self._connected = True
            logger.info(f"Connected to relay as {client_id}")
            return client_id

    async def disconnect(self) -> None:
        """Fail every in-flight call and release HTTP resources."""
        rejected = self._pending.reject_all(RelayConnectionError("Caller disconnected"))
        if rejected:
            logger.warning(f"Rejected {rejected} pending commands on disconnect")
        self._connected = False
        if self._http is not None:
            await self._http.close()
            self._http = None
        logger.info("Disconnected from relay")

    # =========================================================================
    # Commands
    # =========================================================================

    async def execute(
        self,
        category: str | CommandCategory,
        operation: str,
        parameters: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Send one command and wait for its result.

        The submit is sent exactly once. The deadline runs from send time and
        defaults to the category's timeout.

        Raises:
            CommandTimeoutError: No response within the deadline
            CommandFailedError: The consumer reported a failure
            NoConsumerError: No consumer of the target type is connected
            RelayTransportError: The submit itself failed
            RelayConnectionError: Auto-connect failed
        """
        if not self._connected:
            await self.connect()
        assert self._http is not None

        command = CommandEnvelope.create(category, operation, parameters)
        deadline = timeout if timeout is not None else self.config.timeout_for(command.category, operation)
        call = self._pending.open(command.id, deadline, command.description)
        logger.debug(f"Executing {command.description} ({command.id}) with {deadline}s deadline")

        send = asyncio.create_task(self._send(command, deadline))
        try:
            response = await asyncio.wait_for(asyncio.shield(call.future), timeout=deadline)
        except TimeoutError:
            logger.warning(f"Command {command.description} ({command.id}) timed out after {deadline}s")
            raise CommandTimeoutError(command.id, command.description, deadline) from None
        finally:
            self._pending.discard(command.id)
            if not send.done():
                send.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await send

        if response.is_timeout:
            raise CommandTimeoutError(command.id, command.description, deadline)
        if not response.success:
            raise CommandFailedError(response, command.description)
        return CommandResult(command_id=response.id, success=True, data=response.data)

    async def enqueue(
        self,
        category: str | CommandCategory,
        operation: str,
        parameters: dict[str, Any] | None = None,
    ) -> str:
        """Queue a command without waiting for its result.

        Any response the consumer posts is dropped by the relay as an orphan.

        Returns:
            The command id
        """
        if not self._connected:
            await self.connect()
        assert self._http is not None

        command = CommandEnvelope.create(category, operation, parameters)
        await self._http.enqueue(command, self.config.target_type)
        logger.debug(f"Queued {command.description} ({command.id})")
        return command.id

    async def _send(self, command: CommandEnvelope, deadline: float) -> None:
        assert self._http is not None
        try:
            response = await self._http.submit(command, self.config.target_type, timeout=deadline)
        except RelayError as e:
            self._pending.reject(command.id, e)
            return
        if response.id != command.id:
            logger.warning(f"Response id {response.id} does not match command {command.id}")
            response = response.model_copy(update={"id": command.id})
        self._pending.resolve(response)

    # =========================================================================
    # Introspection
    # =========================================================================

    async def check_connection(self) -> dict[str, Any]:
        """Relay reachability and whether a consumer is connected. Never raises."""
        if self._http is None:
            return {"bridge_connected": False, "consumer_connected": False}
        try:
            status = await self._http.status()
        except RelayError as e:
            logger.warning(f"Status check failed: {e}")
            return {"bridge_connected": False, "consumer_connected": False, "error": str(e)}
        return {
            "bridge_connected": bool(status.get("bridge_connected", True)),
            "consumer_connected": bool(status.get("consumer_connected", False)),
        }

    async def ping(self) -> dict[str, Any]:
        if not self._connected:
            await self.connect()
        assert self._http is not None
        return await self._http.ping()

    def connection_info(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "connected": self._connected,
            "base_url": self.config.base_url,
            "target_type": self.config.target_type,
            "pending_commands": self.pending_count,
        }

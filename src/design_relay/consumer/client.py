"""Consumer orchestrator.

Wires a ConsumerConnection, a CommandDispatcher and a PollingLoop together
behind an explicit lifecycle:

    client = ConsumerClient(dispatcher=dispatcher)
    await client.start()
    ...
    await client.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..config import ConsumerConfig
from ..errors import RelayConnectionError
from ..protocol import CommandEnvelope, ResponseEnvelope
from .connection import ConsumerConnection
from .dispatcher import CommandDispatcher
from .polling import PollingLoop

logger = logging.getLogger(__name__)


class ConsumerClient:
    """A polling consumer: connect, poll, dispatch, respond.

    Args:
        config: Consumer settings (defaults to environment-derived settings)
        dispatcher: Handler table (an empty one if omitted)
        transport: Optional httpx transport, mainly for tests
        on_give_up: Called once automatic reconnects are exhausted
        sleep: Sleep used for reconnect backoff, mainly for tests
    """

    def __init__(
        self,
        config: ConsumerConfig | None = None,
        dispatcher: CommandDispatcher | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_give_up: Callable[[], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ConsumerConfig.from_env()
        self.dispatcher = dispatcher or CommandDispatcher()
        self.connection = ConsumerConnection(self.config, transport=transport)
        self.polling = PollingLoop(self.connection, self.dispatcher, on_give_up=on_give_up, sleep=sleep)
        self._started = False

    @property
    def client_id(self) -> str | None:
        return self.connection.client_id

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> bool:
        """Connect and start polling.

        If the first connect fails the reconnect schedule takes over and
        False is returned.
        """
        self._started = True
        try:
            await self.connection.connect()
        except RelayConnectionError as e:
            logger.warning(f"Initial connect failed, scheduling reconnect: {e}")
            self.polling.schedule_reconnect()
            return False

        self.polling.start()
        logger.info(f"Consumer {self.client_id} started")
        return True

    async def shutdown(self) -> None:
        """Stop polling and close the connection."""
        await self.polling.stop()
        await self.connection.disconnect()
        self._started = False
        logger.info("Consumer shut down")

    async def reconnect(self) -> bool:
        """Manual reconnect, also after the loop has given up."""
        return await self.polling.force_reconnect()

    async def process_command(self, command: CommandEnvelope) -> ResponseEnvelope:
        """Dispatch one command locally without posting its response."""
        return await self.dispatcher.dispatch(command)

    async def run_forever(self) -> None:
        """Start and block until cancelled, then shut down."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.shutdown()

    def status(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "connection": self.connection.status(),
            "polling": self.polling.status(),
            "dispatcher": self.dispatcher.stats(),
        }

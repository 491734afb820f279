"""Consumer-side connection manager.

Owns the consumer's identity on the relay and the reconnect counter. One
``ConsumerConnection`` is constructed per consumer and handed to the polling
loop; there is no module-level connection.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED   (poll failure, explicit disconnect)
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any

import httpx

from ..config import ConsumerConfig
from ..errors import RelayConnectionError, RelayError
from ..transport import RelayHTTPClient

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Consumer connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConsumerConnection:
    """Registration, identity and reconnect bookkeeping for one consumer.

    Args:
        config: Consumer settings
        transport: Optional httpx transport, mainly for tests
    """

    def __init__(
        self,
        config: ConsumerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or ConsumerConfig.from_env()
        self.http = RelayHTTPClient(
            self.config.base_url,
            self.config.client_type,
            timeout=self.config.http_timeout,
            transport=transport,
        )
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_connected_at: float | None = None
        self.last_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def client_id(self) -> str | None:
        return self.http.client_id

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def connect(self) -> str:
        """Health-check the relay and register, resuming the previous id.

        On success the reconnect counter is reset to zero. On failure the
        state is DISCONNECTED and the error propagates.

        Raises:
            RelayConnectionError: Health check or registration failed
        """
        async with self._lock:
            self.state = ConnectionState.CONNECTING
            try:
                try:
                    await self.http.health()
                except RelayError as e:
                    raise RelayConnectionError(f"Relay health check failed: {e}") from e
                try:
                    client_id = await self.http.register(self.http.client_id)
                except RelayError as e:
                    raise RelayConnectionError(f"Registration failed: {e}") from e
            except RelayConnectionError as e:
                self.state = ConnectionState.DISCONNECTED
                self.last_error = str(e)
                logger.warning(f"Connect failed: {e}")
                raise

            self.state = ConnectionState.CONNECTED
            self.reset_reconnect_attempts()
            self.last_connected_at = time.time()
            self.last_error = None
            logger.info(f"Connected to relay as {client_id} ({self.config.client_type})")
            return client_id

    def should_reconnect(self) -> bool:
        return self.reconnect_attempts < self.config.max_reconnect_attempts

    def increment_reconnect_attempts(self) -> int:
        self.reconnect_attempts += 1
        return self.reconnect_attempts

    def reset_reconnect_attempts(self) -> None:
        self.reconnect_attempts = 0

    def mark_disconnected(self, reason: str | None = None) -> None:
        if self.state != ConnectionState.DISCONNECTED:
            logger.warning(f"Connection lost: {reason or 'unknown reason'}")
        self.state = ConnectionState.DISCONNECTED
        if reason:
            self.last_error = reason

    async def disconnect(self) -> None:
        """Drop the connection and release HTTP resources."""
        self.state = ConnectionState.DISCONNECTED
        await self.http.close()
        logger.info("Disconnected from relay")

    async def force_reconnect(self) -> str:
        """Reset the reconnect counter and connect immediately."""
        logger.info("Manual reconnect requested")
        self.reset_reconnect_attempts()
        self.mark_disconnected("manual reconnect")
        return await self.connect()

    async def test_connection(self) -> bool:
        """Whether the relay answers its health check. Never raises."""
        try:
            await self.http.health()
        except RelayError as e:
            logger.debug(f"Connection test failed: {e}")
            return False
        return True

    def status(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "state": self.state.value,
            "connected": self.is_connected,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "base_url": self.config.base_url,
            "last_connected_at": self.last_connected_at,
            "last_error": self.last_error,
        }

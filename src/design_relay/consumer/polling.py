"""Consumer-side polling loop.

Runs two background tasks against one ConsumerConnection:

- the poll task drains the consumer's queue every ``poll_interval`` seconds,
  dispatches each command in receipt order and posts one response each
- the keep-alive task pings the relay every ``keepalive_interval`` seconds

A poll failure marks the connection DISCONNECTED and starts the reconnect
schedule. A keep-alive failure is only logged; it never changes connection
state. The two tasks are always stopped together before a reconnect and
restarted together after one.

Reconnect schedule: attempt ``n`` waits ``min(base * 2**(n-1), cap)`` and
then connects. After ``max_reconnect_attempts`` consecutive failures the loop
gives up and only ``force_reconnect`` resumes it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import RelayConnectionError, RelayError
from .connection import ConsumerConnection
from .dispatcher import CommandDispatcher

logger = logging.getLogger(__name__)


class PollingLoop:
    """Poll, dispatch and keep-alive tasks plus the reconnect schedule.

    Args:
        connection: The consumer's connection
        dispatcher: Handler table commands are dispatched through
        on_give_up: Called once reconnect attempts are exhausted
        sleep: Sleep used for reconnect backoff, mainly for tests
    """

    def __init__(
        self,
        connection: ConsumerConnection,
        dispatcher: CommandDispatcher,
        on_give_up: Callable[[], Any] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.connection = connection
        self.dispatcher = dispatcher
        self.config = connection.config
        self.on_give_up = on_give_up
        self._sleep = sleep

        self._poll_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

        self.gave_up = False
        self.commands_processed = 0
        self.last_poll_at: float | None = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the poll and keep-alive tasks."""
        self.gave_up = False
        self._start_tasks()

    async def stop(self) -> None:
        """Stop every task, including a pending reconnect."""
        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._stop_tasks()
        logger.info("Polling stopped")

    def schedule_reconnect(self) -> asyncio.Task[None]:
        """Start the reconnect schedule unless one is already running."""
        if not self.is_reconnecting:
            self._reconnect_task = asyncio.create_task(self._reconnect())
        assert self._reconnect_task is not None
        return self._reconnect_task

    async def force_reconnect(self) -> bool:
        """Manual reconnect: reset the counter and connect now.

        On failure the automatic schedule takes over again.
        """
        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._stop_tasks()
        self.gave_up = False

        try:
            await self.connection.force_reconnect()
        except RelayConnectionError as e:
            logger.warning(f"Manual reconnect failed: {e}")
            self.schedule_reconnect()
            return False

        self._start_tasks()
        return True

    # =========================================================================
    # Poll path
    # =========================================================================

    async def poll_once(self) -> bool:
        """Poll once and process the batch.

        Returns False if the poll itself failed, in which case the
        connection is marked DISCONNECTED and a reconnect is scheduled.
        """
        try:
            commands = await self.connection.http.poll()
        except RelayError as e:
            logger.warning(f"Poll failed: {e}")
            self.connection.mark_disconnected(str(e))
            self.schedule_reconnect()
            return False

        self.last_poll_at = time.time()
        if commands:
            logger.info(f"Received {len(commands)} commands")

        for command in commands:
            response = await self.dispatcher.dispatch(command)
            self.commands_processed += 1
            try:
                await self.connection.http.send_response(response)
            except RelayError as e:
                logger.error(f"Failed to send response for {command.id}: {e}")
        return True

    async def _poll_loop(self) -> None:
        while True:
            if self.connection.is_connected and not await self.poll_once():
                return
            await asyncio.sleep(self.config.poll_interval)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            if not self.connection.is_connected:
                continue
            try:
                known = await self.connection.http.keep_alive()
            except RelayError as e:
                logger.warning(f"Keep-alive failed: {e}")
                continue
            if not known:
                logger.warning("Keep-alive not recognized by relay")

    # =========================================================================
    # Reconnect schedule
    # =========================================================================

    async def _reconnect(self) -> None:
        await self._stop_tasks()
        while True:
            if not self.connection.should_reconnect():
                self.gave_up = True
                logger.error(
                    f"Giving up after {self.connection.reconnect_attempts} reconnect attempts; "
                    "manual reconnect required"
                )
                if self.on_give_up is not None:
                    self.on_give_up()
                return

            attempt = self.connection.increment_reconnect_attempts()
            delay = self.config.reconnect_delay(attempt)
            logger.info(
                f"Reconnecting attempt {attempt}/{self.config.max_reconnect_attempts} in {delay:.1f}s"
            )
            await self._sleep(delay)

            try:
                await self.connection.connect()
            except RelayConnectionError:
                continue

            logger.info("Reconnected, resuming polling")
            self._start_tasks()
            return

    # =========================================================================
    # Task helpers
    # =========================================================================

    def _start_tasks(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.debug("Polling started")

    async def _stop_tasks(self) -> None:
        poll, keepalive = self._poll_task, self._keepalive_task
        self._poll_task = None
        self._keepalive_task = None
        await asyncio.gather(self._cancel(poll), self._cancel(keepalive))

    @staticmethod
    async def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def status(self) -> dict[str, Any]:
        return {
            "polling": self.is_polling,
            "keepalive": self._keepalive_task is not None and not self._keepalive_task.done(),
            "reconnecting": self.is_reconnecting,
            "gave_up": self.gave_up,
            "commands_processed": self.commands_processed,
            "last_poll_at": self.last_poll_at,
            "poll_interval": self.config.poll_interval,
            "keepalive_interval": self.config.keepalive_interval,
        }

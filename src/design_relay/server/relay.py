"""Relay server state.

Holds the only shared state in the system:

- a registry of clients keyed by client id
- one FIFO command queue per registered client
- a table of in-flight waiters keyed by command id

A waiter is a one-shot ``asyncio.Future`` that a blocking submit awaits
until the consumer posts the matching response or the deadline elapses.
The server runs on a single event loop, so a queue drain or a waiter
lookup-and-remove never interleaves with another request: neither contains
an ``await``.

Usage:
    state = RelayState()
    consumer_id = state.register("design-tool")
    response = await state.submit("design-tool", command)   # blocks
    # ... meanwhile, on the consumer's requests:
    commands = state.poll(consumer_id)
    state.respond(ResponseEnvelope.ok(commands[0].id, {"width": 100}))
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any

from ..config import ServerConfig
from ..errors import DuplicateCommandError, NoConsumerError, UnknownClientError
from ..protocol import (
    ClientRegistration,
    CommandEnvelope,
    ResponseEnvelope,
    new_client_id,
)

logger = logging.getLogger(__name__)


@dataclass
class Waiter:
    """An open correlation point for one blocking submit."""

    command_id: str
    future: asyncio.Future[ResponseEnvelope]
    deadline: float
    created_at: float = field(default_factory=time.monotonic)

    def settle(self, response: ResponseEnvelope) -> bool:
        """Resolve the waiter. Returns False if it was already settled."""
        if self.future.done():
            return False
        self.future.set_result(response)
        return True


class RelayState:
    """Client registry, per-client queues and waiter table."""

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig()
        self._clients: dict[str, ClientRegistration] = {}
        self._queues: dict[str, deque[CommandEnvelope]] = {}
        self._waiters: dict[str, Waiter] = {}
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._orphans = 0

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, client_type: str, existing_id: str | None = None) -> str:
        """Register a client, or resume a still-known registration.

        Resuming keeps the client's queue; anything queued while it was away
        is delivered on its next poll.
        """
        if existing_id and existing_id in self._clients:
            client = self._clients[existing_id]
            client.type = client_type
            client.registered_at = time.time()
            client.touch()
            self._queues.setdefault(existing_id, deque())
            logger.info(f"Client resumed: {existing_id} ({client_type})")
            return existing_id

        client_id = new_client_id()
        while client_id in self._clients:
            client_id = new_client_id()

        self._clients[client_id] = ClientRegistration(client_id=client_id, type=client_type)
        self._queues[client_id] = deque()
        if existing_id:
            logger.info(f"Client {existing_id} unknown, registered as {client_id} ({client_type})")
        else:
            logger.info(f"Client registered: {client_id} ({client_type})")
        return client_id

    def get_client(self, client_id: str) -> ClientRegistration | None:
        return self._clients.get(client_id)

    def keep_alive(self, client_id: str) -> bool:
        """Record a heartbeat. Returns False for an unknown client."""
        client = self._clients.get(client_id)
        if client is None:
            return False
        client.touch()
        logger.debug(f"Keep-alive from {client_id}")
        return True

    def find_consumer(self, target_type: str) -> ClientRegistration | None:
        """Most recently registered, connected and alive client of a type."""
        now = time.time()
        candidates = [
            c
            for c in self._clients.values()
            if c.type == target_type
            and c.connected
            and c.is_alive(self.config.client_alive_window, now)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.registered_at)

    # =========================================================================
    # Command flow
    # =========================================================================

    def enqueue(self, target_type: str, command: CommandEnvelope) -> str:
        """Queue a command for the current consumer of ``target_type``.

        Returns the id of the consumer the command was queued for.

        Raises:
            NoConsumerError: If no consumer of that type is connected
            DuplicateCommandError: If the command id was already submitted
        """
        if self._is_duplicate(command.id):
            raise DuplicateCommandError(command.id)

        consumer = self.find_consumer(target_type)
        if consumer is None:
            raise NoConsumerError(target_type, command.id)

        self._remember(command.id)
        self._queues.setdefault(consumer.client_id, deque()).append(command)
        logger.info(f"Queued {command.description} ({command.id}) for {consumer.client_id}")
        return consumer.client_id

    async def submit(
        self,
        target_type: str,
        command: CommandEnvelope,
        timeout: float | None = None,
    ) -> ResponseEnvelope:
        """Queue a command and block until its response or the deadline.

        On deadline a synthetic timeout envelope is returned. The queued
        command is not retracted: the consumer may still run it, and its
        late response is then dropped as an orphan.
        """
        deadline = self.config.effective_timeout(timeout)

        self.enqueue(target_type, command)
        waiter = Waiter(command.id, asyncio.get_running_loop().create_future(), deadline)
        self._waiters[command.id] = waiter

        try:
            return await asyncio.wait_for(asyncio.shield(waiter.future), timeout=deadline)
        except TimeoutError:
            logger.warning(f"Command {command.description} ({command.id}) timed out after {deadline}s")
            return ResponseEnvelope.timeout(command.id, deadline)
        finally:
            # Whatever happened (result, deadline, caller hung up), the waiter is gone
            self._waiters.pop(command.id, None)
            if not waiter.future.done():
                waiter.future.cancel()

    def poll(self, client_id: str) -> list[CommandEnvelope]:
        """Drain and return everything queued for ``client_id``.

        Raises:
            UnknownClientError: If the client is not registered
        """
        client = self._clients.get(client_id)
        if client is None:
            raise UnknownClientError(client_id)
        client.touch()

        queue = self._queues.setdefault(client_id, deque())
        commands = list(queue)
        queue.clear()
        if commands:
            logger.info(f"Poll from {client_id}, returning {len(commands)} commands")
        return commands

    def respond(self, response: ResponseEnvelope, client_id: str | None = None) -> bool:
        """Deliver a response to its waiter.

        Returns True if a blocked submit was released, False if the response
        is an orphan (its waiter timed out, or the command was never blocking).
        Orphans are accepted silently.
        """
        if client_id:
            client = self._clients.get(client_id)
            if client is not None:
                client.touch()

        waiter = self._waiters.pop(response.id, None)
        if waiter is None or not waiter.settle(response):
            self._orphans += 1
            logger.debug(f"Orphan response for {response.id} dropped")
            return False

        status = "success" if response.success else f"error: {response.error}"
        logger.info(f"Response for {response.id} delivered ({status})")
        return True

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def cleanup(self, now: float | None = None) -> dict[str, int]:
        """Drop expired registrations and stale waiters.

        Clients silent for longer than ``client_expiry`` are removed with
        their queues; clients outside ``client_alive_window`` are marked
        disconnected. Waiters still open ``waiter_max_age`` past their own
        deadline are settled with a timeout envelope.
        """
        now = time.time() if now is None else now
        removed_clients = 0
        for client_id, client in list(self._clients.items()):
            silent_for = now - client.last_ping
            if silent_for > self.config.client_expiry:
                logger.info(f"Cleaning up expired client: {client_id}")
                del self._clients[client_id]
                self._queues.pop(client_id, None)
                removed_clients += 1
            elif silent_for >= self.config.client_alive_window and client.connected:
                client.connected = False

        expired_waiters = 0
        mono_now = time.monotonic()
        for command_id, waiter in list(self._waiters.items()):
            if mono_now - waiter.created_at > waiter.deadline + self.config.waiter_max_age:
                logger.warning(f"Expiring pending command {command_id}")
                self._waiters.pop(command_id, None)
                waiter.settle(ResponseEnvelope.timeout(command_id, waiter.deadline))
                expired_waiters += 1

        return {"clients": removed_clients, "waiters": expired_waiters}

    async def run_janitor(self) -> None:
        """Run ``cleanup`` every ``cleanup_interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Relay cleanup failed")

    def _is_duplicate(self, command_id: str) -> bool:
        return command_id in self._waiters or command_id in self._seen_ids

    def _remember(self, command_id: str) -> None:
        self._seen_ids[command_id] = None
        while len(self._seen_ids) > self.config.seen_ids_limit:
            self._seen_ids.popitem(last=False)

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def pending_count(self) -> int:
        return len(self._waiters)

    @property
    def orphan_count(self) -> int:
        return self._orphans

    def queue_depth(self, client_id: str) -> int:
        return len(self._queues.get(client_id, ()))

    def has_waiter(self, command_id: str) -> bool:
        return command_id in self._waiters

    def connections(self) -> dict[str, bool]:
        """Which client types currently have a live connection."""
        now = time.time()
        types: dict[str, bool] = {}
        for client in self._clients.values():
            alive = client.connected and client.is_alive(self.config.client_alive_window, now)
            types[client.type] = types.get(client.type, False) or alive
        return types

    def status(self) -> dict[str, Any]:
        """Debug snapshot of known clients and in-flight work."""
        now = time.time()
        connections = self.connections()
        return {
            "bridge_connected": True,
            "consumer_connected": connections.get(self.config.default_target_type, False),
            "connections": connections,
            "clients": [
                {
                    **client.to_wire(),
                    "alive": client.is_alive(self.config.client_alive_window, now),
                    "queued": self.queue_depth(client.client_id),
                }
                for client in self._clients.values()
            ],
            "pending_commands": self.pending_count,
            "orphan_responses": self._orphans,
            "timestamp": now,
        }

    def close(self) -> None:
        """Settle all open waiters so blocked submits return promptly."""
        for command_id, waiter in list(self._waiters.items()):
            waiter.settle(ResponseEnvelope.failure(command_id, "Relay shutting down"))
        self._waiters.clear()

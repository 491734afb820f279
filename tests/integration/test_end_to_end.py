"""End-to-end tests: caller -> relay -> consumer -> relay -> caller.

All three parties run in-process: the relay app is served through
httpx.ASGITransport and both clients talk to it over that transport.
"""

import asyncio
from typing import Any

import httpx
import pytest

from design_relay.caller import RelayCaller
from design_relay.config import CallerConfig, ConsumerConfig, RetryPolicy, ServerConfig
from design_relay.consumer import CommandDispatcher, ConsumerClient
from design_relay.errors import CommandFailedError, CommandTimeoutError
from design_relay.protocol import CommandCategory
from design_relay.server import RelayState, create_app

BASE_URL = "http://relay.test"


@pytest.fixture
def relay() -> RelayState:
    """Relay state with short deadlines."""
    return RelayState(ServerConfig(command_timeout=2.0, max_command_timeout=5.0))


@pytest.fixture
def transport(relay: RelayState) -> httpx.ASGITransport:
    """In-process transport to the relay app."""
    return httpx.ASGITransport(app=create_app(relay.config, relay=relay))


@pytest.fixture
def dispatcher() -> CommandDispatcher:
    """Dispatcher with a couple of design-tool handlers."""
    d = CommandDispatcher()

    @d.handler(CommandCategory.NODE_CREATION, "create-rectangle")
    async def create_rectangle(params: dict[str, Any]) -> dict[str, Any]:
        return {"width": params.get("width", 100), "height": params.get("height", 50)}

    @d.handler(CommandCategory.NODE_MODIFICATION, "delete-node")
    def delete_node(params: dict[str, Any]) -> None:
        raise LookupError(f"Node {params['nodeId']} not found")

    return d


def make_caller(transport: httpx.ASGITransport) -> RelayCaller:
    return RelayCaller(
        CallerConfig(base_url=BASE_URL, retry=RetryPolicy.disabled()),
        transport=transport,
    )


def make_consumer(transport: httpx.ASGITransport, dispatcher: CommandDispatcher) -> ConsumerClient:
    return ConsumerClient(
        ConsumerConfig(base_url=BASE_URL, poll_interval=0.01, keepalive_interval=0.05),
        dispatcher=dispatcher,
        transport=transport,
    )


# =============================================================================
# Tests: Round trip
# =============================================================================


class TestRoundTrip:
    """A command submitted by the caller is executed by the consumer."""

    @pytest.mark.asyncio
    async def test_create_rectangle(self, relay, transport, dispatcher):
        """The blocking submit returns exactly the data the consumer posted."""
        consumer = make_consumer(transport, dispatcher)
        assert await consumer.start() is True
        caller = make_caller(transport)

        result = await caller.execute(
            CommandCategory.NODE_CREATION, "create-rectangle", {"width": 100, "height": 50}
        )

        assert result.success is True
        assert result.data == {"width": 100, "height": 50}
        assert relay.pending_count == 0
        assert relay.queue_depth(consumer.client_id) == 0
        assert consumer.polling.commands_processed == 1

        await caller.disconnect()
        await consumer.shutdown()

    @pytest.mark.asyncio
    async def test_handler_failure_reaches_caller(self, transport, dispatcher):
        """A handler exception becomes a failed result for the caller."""
        consumer = make_consumer(transport, dispatcher)
        await consumer.start()
        caller = make_caller(transport)

        with pytest.raises(CommandFailedError, match="Node 1:2 not found") as exc_info:
            await caller.execute("node-modification", "delete-node", {"nodeId": "1:2"})

        assert exc_info.value.code == "handler_error"
        await caller.disconnect()
        await consumer.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_operation_reaches_caller(self, transport, dispatcher):
        """Unknown operations fail fast instead of timing out."""
        consumer = make_consumer(transport, dispatcher)
        await consumer.start()
        caller = make_caller(transport)

        with pytest.raises(CommandFailedError, match="Unknown node-creation operation: create-star"):
            await caller.execute("node-creation", "create-star", {})

        await caller.disconnect()
        await consumer.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_commands_correlate(self, transport, dispatcher):
        """Concurrent calls each receive their own response."""
        consumer = make_consumer(transport, dispatcher)
        await consumer.start()
        caller = make_caller(transport)
        await caller.connect()

        results = await asyncio.gather(
            *(caller.execute("node-creation", "create-rectangle", {"width": w}) for w in range(1, 6))
        )

        assert [r.data["width"] for r in results] == [1, 2, 3, 4, 5]
        assert len({r.command_id for r in results}) == 5
        await caller.disconnect()
        await consumer.shutdown()


# =============================================================================
# Tests: Late responses
# =============================================================================


class TestLateResponse:
    """A consumer that stops polling and later answers."""

    @pytest.mark.asyncio
    async def test_late_response_is_orphan(self, relay, transport, dispatcher):
        """The caller times out; the late answer is accepted as an orphan."""
        consumer = make_consumer(transport, dispatcher)
        await consumer.start()
        await consumer.polling.stop()
        caller = make_caller(transport)

        with pytest.raises(CommandTimeoutError):
            await caller.execute("node-creation", "create-rectangle", {}, timeout=0.1)
        assert caller.pending_count == 0

        # Consumer resumes and answers the stale command
        assert await consumer.polling.poll_once() is True

        assert consumer.polling.commands_processed == 1
        assert relay.orphan_count == 1
        assert relay.pending_count == 0
        assert caller.pending_count == 0

        await caller.disconnect()
        await consumer.shutdown()

    @pytest.mark.asyncio
    async def test_consumer_status(self, transport, dispatcher):
        """The consumer status combines connection, loop and dispatcher views."""
        consumer = make_consumer(transport, dispatcher)
        await consumer.start()

        status = consumer.status()

        assert status["running"] is True
        assert status["connection"]["state"] == "connected"
        assert status["polling"]["polling"] is True
        assert status["dispatcher"]["implemented"] == ["node-creation", "node-modification"]
        await consumer.shutdown()
        assert consumer.status()["running"] is False

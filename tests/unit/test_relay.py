"""Unit tests for RelayState: registry, queues and waiters."""

from __future__ import annotations

import asyncio
import time

import pytest

from design_relay.config import ServerConfig
from design_relay.errors import DuplicateCommandError, NoConsumerError, UnknownClientError
from design_relay.protocol import CommandEnvelope, ResponseEnvelope
from design_relay.server import RelayState


def make_command(operation: str = "create-rectangle", **params) -> CommandEnvelope:
    return CommandEnvelope.create("node-creation", operation, params)


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """Tests for register / keep_alive / find_consumer."""

    def test_register_mints_fresh_ids(self) -> None:
        """Each plain registration gets a new id."""
        relay = RelayState()
        ids = {relay.register("design-tool") for _ in range(5)}
        assert len(ids) == 5

    def test_resume_keeps_id_and_queue(self) -> None:
        """Re-registering a known id returns it and keeps queued work."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        relay.enqueue("design-tool", make_command())

        assert relay.register("design-tool", existing_id=client_id) == client_id
        assert relay.queue_depth(client_id) == 1
        assert len(relay.status()["clients"]) == 1

    def test_unknown_existing_id_gets_fresh_id(self) -> None:
        """An expired id is not resurrected."""
        relay = RelayState()
        client_id = relay.register("design-tool", existing_id="client_gone")
        assert client_id != "client_gone"

    def test_keep_alive_unknown_client(self) -> None:
        """keep_alive for an unknown id is a no-op returning False."""
        assert RelayState().keep_alive("client_nobody") is False

    def test_keep_alive_refreshes_liveness(self) -> None:
        """keep_alive updates last_ping and connected."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        client = relay.get_client(client_id)
        client.last_ping = 0
        client.connected = False

        assert relay.keep_alive(client_id) is True
        assert client.connected is True
        assert client.last_ping > 0

    def test_find_consumer_prefers_most_recent(self) -> None:
        """The most recently registered live consumer receives work."""
        relay = RelayState()
        first = relay.register("design-tool")
        second = relay.register("design-tool")
        relay.get_client(first).registered_at = time.time() - 10

        assert relay.find_consumer("design-tool").client_id == second

    def test_find_consumer_skips_silent_clients(self) -> None:
        """Clients outside the alive window are not routed to."""
        relay = RelayState(ServerConfig(client_alive_window=60.0))
        client_id = relay.register("design-tool")
        relay.get_client(client_id).last_ping = time.time() - 120

        assert relay.find_consumer("design-tool") is None


# =============================================================================
# Command flow
# =============================================================================


class TestCommandFlow:
    """Tests for enqueue / poll / submit / respond."""

    def test_enqueue_without_consumer(self) -> None:
        """Submitting to a type with no consumer fails."""
        with pytest.raises(NoConsumerError, match="No design-tool client connected"):
            RelayState().enqueue("design-tool", make_command())

    def test_enqueue_rejects_reused_id(self) -> None:
        """A command id can be submitted only once."""
        relay = RelayState()
        relay.register("design-tool")
        command = make_command()
        relay.enqueue("design-tool", command)

        with pytest.raises(DuplicateCommandError):
            relay.enqueue("design-tool", command)

    def test_poll_empty_queue(self) -> None:
        """An empty queue polls as an empty list."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        assert relay.poll(client_id) == []

    def test_poll_unknown_client(self) -> None:
        """Polling with an unknown id fails."""
        with pytest.raises(UnknownClientError):
            RelayState().poll("client_nobody")

    def test_poll_drains_in_order_exactly_once(self) -> None:
        """A queued command is handed out by one poll, in FIFO order."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        commands = [make_command(f"op-{i}") for i in range(3)]
        for command in commands:
            relay.enqueue("design-tool", command)

        assert [c.id for c in relay.poll(client_id)] == [c.id for c in commands]
        assert relay.poll(client_id) == []

    @pytest.mark.asyncio
    async def test_submit_resolves_with_matching_response(self) -> None:
        """A blocking submit returns the consumer's response."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        command = make_command(width=100, height=50)

        task = asyncio.create_task(relay.submit("design-tool", command))
        await asyncio.sleep(0)
        polled = relay.poll(client_id)
        assert [c.id for c in polled] == [command.id]
        assert relay.has_waiter(command.id)

        matched = relay.respond(ResponseEnvelope.ok(command.id, {"width": 100, "height": 50}))
        response = await task

        assert matched is True
        assert response.id == command.id
        assert response.data == {"width": 100, "height": 50}
        assert relay.pending_count == 0

    @pytest.mark.asyncio
    async def test_submit_timeout_then_orphan(self) -> None:
        """A late response after the deadline is an orphan, not an error."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        command = make_command()

        response = await relay.submit("design-tool", command, timeout=0.05)

        assert response.is_timeout
        assert response.id == command.id
        assert relay.pending_count == 0
        # The command is not retracted
        assert [c.id for c in relay.poll(client_id)] == [command.id]

        assert relay.respond(ResponseEnvelope.ok(command.id, {"late": True})) is False
        assert relay.orphan_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_response_is_orphan(self) -> None:
        """Only the first response for an id releases the waiter."""
        relay = RelayState()
        client_id = relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command))
        await asyncio.sleep(0)
        relay.poll(client_id)

        assert relay.respond(ResponseEnvelope.ok(command.id, 1)) is True
        assert relay.respond(ResponseEnvelope.ok(command.id, 2)) is False
        assert (await task).data == 1

    @pytest.mark.asyncio
    async def test_cancelled_submit_removes_waiter(self) -> None:
        """A caller hanging up leaves no waiter behind."""
        relay = RelayState()
        relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not relay.has_waiter(command.id)

    def test_respond_unknown_id(self) -> None:
        """A response nobody waits for is accepted and counted."""
        relay = RelayState()
        assert relay.respond(ResponseEnvelope.ok("cmd_unknown")) is False
        assert relay.orphan_count == 1


# =============================================================================
# Housekeeping
# =============================================================================


class TestCleanup:
    """Tests for the janitor pass."""

    def test_expired_clients_removed_with_queue(self) -> None:
        """Clients silent past expiry are dropped."""
        relay = RelayState(ServerConfig(client_expiry=120.0))
        client_id = relay.register("design-tool")
        relay.enqueue("design-tool", make_command())
        relay.get_client(client_id).last_ping = time.time() - 200

        result = relay.cleanup()

        assert result["clients"] == 1
        assert relay.get_client(client_id) is None
        assert relay.queue_depth(client_id) == 0

    def test_silent_clients_marked_disconnected(self) -> None:
        """Clients outside the alive window are marked disconnected."""
        relay = RelayState(ServerConfig(client_alive_window=60.0, client_expiry=120.0))
        client_id = relay.register("design-tool")
        relay.get_client(client_id).last_ping = time.time() - 90

        relay.cleanup()

        assert relay.get_client(client_id).connected is False
        assert relay.connections() == {"design-tool": False}

    @pytest.mark.asyncio
    async def test_stale_waiters_expired(self) -> None:
        """Waiters still open waiter_max_age past their deadline settle with a timeout."""
        relay = RelayState(ServerConfig(command_timeout=10.0, waiter_max_age=30.0))
        relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command))
        await asyncio.sleep(0)
        relay._waiters[command.id].created_at -= 60

        assert relay.cleanup()["waiters"] == 1
        response = await task
        assert response.is_timeout

    @pytest.mark.asyncio
    async def test_long_granted_deadline_survives_cleanup(self) -> None:
        """A deadline above waiter_max_age is not cut short by the janitor."""
        relay = RelayState(ServerConfig(max_command_timeout=60.0, waiter_max_age=30.0))
        relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command, timeout=45.0))
        await asyncio.sleep(0)
        relay._waiters[command.id].created_at -= 31

        assert relay.cleanup()["waiters"] == 0
        assert relay.has_waiter(command.id)

        assert relay.respond(ResponseEnvelope.ok(command.id, {"done": True})) is True
        response = await task
        assert response.success is True
        assert response.data == {"done": True}

    @pytest.mark.asyncio
    async def test_expired_waiter_reports_its_own_deadline(self) -> None:
        """The janitor's timeout envelope carries the waiter's deadline."""
        relay = RelayState(ServerConfig(max_command_timeout=60.0, waiter_max_age=30.0))
        relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command, timeout=45.0))
        await asyncio.sleep(0)
        relay._waiters[command.id].created_at -= 80

        assert relay.cleanup()["waiters"] == 1
        response = await task
        assert response.is_timeout
        assert "45000ms" in response.error

    @pytest.mark.asyncio
    async def test_close_settles_waiters(self) -> None:
        """close() releases blocked submits with a failure."""
        relay = RelayState()
        relay.register("design-tool")
        command = make_command()

        task = asyncio.create_task(relay.submit("design-tool", command))
        await asyncio.sleep(0)
        relay.close()

        response = await task
        assert response.success is False
        assert response.error == "Relay shutting down"

    def test_status_snapshot(self) -> None:
        """status() reports clients, queue depth and connection flags."""
        relay = RelayState()
        relay.register("caller")
        consumer_id = relay.register("design-tool")
        relay.enqueue("design-tool", make_command())

        status = relay.status()

        assert status["consumer_connected"] is True
        assert status["connections"] == {"caller": True, "design-tool": True}
        queued = {c["clientId"]: c["queued"] for c in status["clients"]}
        assert queued[consumer_id] == 1

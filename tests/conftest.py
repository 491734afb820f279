"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from design_relay.config import ConsumerConfig, RetryPolicy, ServerConfig


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def server_config() -> ServerConfig:
    """Server settings with short deadlines for tests."""
    return ServerConfig(command_timeout=2.0, max_command_timeout=5.0, waiter_max_age=30.0)


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    """Consumer settings pointing at the in-process test host."""
    return ConsumerConfig(base_url="http://relay.test", poll_interval=0.01, keepalive_interval=0.01)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without real backoff delays."""
    return RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0)


class FakeRelay:
    """Scripted relay for httpx.MockTransport.

    Each endpoint can be made to fail with a network error by setting the
    matching ``*_down`` flag, or by queuing outcomes in ``script``: a list of
    "ok" / "network" / "html" (a 2xx non-JSON body) / an HTTP status code,
    consumed per call.
    """

    def __init__(self) -> None:
        self.calls: dict[str, int] = {}
        self.script: dict[str, list[str | int]] = {}
        self.health_down = False
        self.poll_down = False
        self.keepalive_down = False
        self.commands: list[dict] = []
        self.responses: list[dict] = []
        self.client_id = "client_fake"

    def count(self, path: str) -> int:
        return self.calls.get(path, 0)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1

        outcome = self.script[path].pop(0) if self.script.get(path) else "ok"
        down = {
            "/health": self.health_down,
            "/commands": self.poll_down,
            "/keepalive": self.keepalive_down,
        }.get(path, False)
        if outcome == "network" or down:
            raise httpx.ConnectError("connection refused", request=request)
        if outcome == "html":
            return httpx.Response(200, text="<html>proxy error</html>")
        if isinstance(outcome, int):
            return httpx.Response(outcome, json={"error": f"scripted {outcome}"})

        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if path == "/register":
            body = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "clientId": body.get("existingId") or self.client_id})
        if path == "/commands":
            commands, self.commands = self.commands, []
            return httpx.Response(200, json={"commands": commands, "timestamp": 0})
        if path == "/response":
            self.responses.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "matched": True})
        if path == "/keepalive":
            return httpx.Response(200, json={"success": True, "known": True})
        if path == "/status":
            return httpx.Response(200, json={"bridge_connected": True, "consumer_connected": True})
        return httpx.Response(404, json={"error": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_relay() -> FakeRelay:
    """Scripted relay endpoint for client-side tests."""
    return FakeRelay()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Backoff sleep that does not actually wait."""
    return RecordingSleep()

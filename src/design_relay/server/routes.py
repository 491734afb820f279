"""Relay HTTP endpoints.

Provides registration, blocking command submission, consumer polling,
response delivery and heartbeats. Every handler reads the shared
``RelayState`` from ``request.app.state.relay``.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from .. import __version__
from ..config import (
    CLIENT_ID_HEADER,
    COMMAND_TIMEOUT_HEADER,
    TARGET_TYPE_HEADER,
)
from ..errors import DuplicateCommandError, NoConsumerError, UnknownClientError
from ..protocol import (
    CommandEnvelope,
    ErrorCode,
    PollResponse,
    RegisterRequest,
    RegisterResponse,
    ResponseEnvelope,
)
from .relay import RelayState

logger = logging.getLogger(__name__)

SERVER_NAME = "design-relay"

M = TypeVar("M", bound=BaseModel)


# =============================================================================
# Helpers
# =============================================================================


def _relay(request: Request) -> RelayState:
    return request.app.state.relay


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra, "timestamp": time.time()}, status_code=status_code)


async def _parse_body(request: Request, model: type[M]) -> M | JSONResponse:
    """Parse and validate a JSON body, or build the 400 response."""
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
        return model.model_validate(body)
    except (ValueError, ValidationError) as e:
        return _error(f"Invalid {model.__name__} body: {e}", 400)


def _requested_timeout(request: Request) -> float | None:
    value = request.headers.get(COMMAND_TIMEOUT_HEADER)
    if not value:
        return None
    try:
        requested = float(value)
    except ValueError:
        return None
    return requested if math.isfinite(requested) else None


# =============================================================================
# Route Handlers
# =============================================================================


async def health(request: Request) -> JSONResponse:
    """Liveness probe, independent of any client state."""
    return JSONResponse(
        {
            "status": "ok",
            "timestamp": time.time(),
            "server": SERVER_NAME,
            "version": __version__,
        }
    )


async def ping(request: Request) -> JSONResponse:
    """Ping with a summary of which client types are connected."""
    return JSONResponse(
        {"pong": True, "timestamp": time.time(), "connections": _relay(request).connections()}
    )


async def register(request: Request) -> JSONResponse:
    """Register a client, or resume an existing id."""
    req = await _parse_body(request, RegisterRequest)
    if isinstance(req, JSONResponse):
        return req

    client_id = _relay(request).register(req.type, req.existing_id)
    body = RegisterResponse(client_id=client_id, message=f"Client {client_id} registered as {req.type}")
    return JSONResponse(body.to_wire())


async def submit_command(request: Request) -> JSONResponse:
    """Blocking submit: queue a command and wait for its response.

    Returns 200 with the consumer's ResponseEnvelope, or 504 with a
    synthetic timeout envelope once the server deadline elapses.
    """
    command = await _parse_body(request, CommandEnvelope)
    if isinstance(command, JSONResponse):
        return command

    relay = _relay(request)
    target_type = request.headers.get(TARGET_TYPE_HEADER) or relay.config.default_target_type
    logger.info(f"Received command {command.description} ({command.id}) for {target_type}")

    try:
        response = await relay.submit(target_type, command, timeout=_requested_timeout(request))
    except NoConsumerError as e:
        logger.error(f"No {target_type} client available for command {command.id}")
        return _error(str(e), 503, code=ErrorCode.NO_CONSUMER.value, commandId=command.id)
    except DuplicateCommandError as e:
        return _error(str(e), 409, commandId=command.id)

    status_code = 504 if response.is_timeout else 200
    return JSONResponse(response.to_wire(), status_code=status_code)


async def enqueue_command(request: Request) -> JSONResponse:
    """Non-blocking submit: queue a command and return immediately."""
    command = await _parse_body(request, CommandEnvelope)
    if isinstance(command, JSONResponse):
        return command

    relay = _relay(request)
    target_type = request.headers.get(TARGET_TYPE_HEADER) or relay.config.default_target_type
    try:
        relay.enqueue(target_type, command)
    except NoConsumerError as e:
        return _error(str(e), 503, code=ErrorCode.NO_CONSUMER.value, commandId=command.id)
    except DuplicateCommandError as e:
        return _error(str(e), 409, commandId=command.id)

    return JSONResponse({"queued": True, "id": command.id}, status_code=202)


async def poll_commands(request: Request) -> JSONResponse:
    """Consumer poll: drain the calling client's queue."""
    client_id = request.headers.get(CLIENT_ID_HEADER)
    if not client_id:
        return _error(f"Missing {CLIENT_ID_HEADER} header", 400)

    try:
        commands = _relay(request).poll(client_id)
    except UnknownClientError as e:
        return _error(str(e), 404)

    return JSONResponse(PollResponse(commands=commands).to_wire())


async def deliver_response(request: Request) -> JSONResponse:
    """Deliver a ResponseEnvelope. Orphans are accepted without error."""
    response = await _parse_body(request, ResponseEnvelope)
    if isinstance(response, JSONResponse):
        return response

    matched = _relay(request).respond(response, client_id=request.headers.get(CLIENT_ID_HEADER))
    return JSONResponse(
        {"success": True, "matched": matched, "message": "Response received", "timestamp": time.time()}
    )


async def keep_alive(request: Request) -> JSONResponse:
    """Heartbeat from a registered client."""
    client_id = request.headers.get(CLIENT_ID_HEADER)
    known = bool(client_id) and _relay(request).keep_alive(client_id)
    return JSONResponse({"success": True, "known": known, "timestamp": time.time()})


async def status(request: Request) -> JSONResponse:
    """Debug view of known clients and in-flight commands."""
    return JSONResponse(_relay(request).status())


relay_routes = [
    Route("/health", health, methods=["GET"]),
    Route("/ping", ping, methods=["GET"]),
    Route("/register", register, methods=["POST"]),
    Route("/command", submit_command, methods=["POST"]),
    Route("/enqueue", enqueue_command, methods=["POST"]),
    Route("/commands", poll_commands, methods=["GET"]),
    Route("/response", deliver_response, methods=["POST"]),
    Route("/keepalive", keep_alive, methods=["POST"]),
    Route("/status", status, methods=["GET"]),
]

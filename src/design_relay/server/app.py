"""Relay Server Application.

Creates the Starlette ASGI application with all relay routes.

Route organization:
- /health, /ping - Liveness
- /register, /keepalive - Client identity
- /command, /enqueue - Caller side (blocking / fire-and-forget submit)
- /commands, /response - Consumer side (poll / deliver result)
- /status - Debug snapshot
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from ..config import CLIENT_ID_HEADER, CLIENT_TYPE_HEADER, ServerConfig
from .relay import RelayState
from .routes import relay_routes

logger = logging.getLogger(__name__)


def create_app(config: ServerConfig | None = None, relay: RelayState | None = None) -> Starlette:
    """Create the relay application.

    Args:
        config: Server settings (defaults to environment-derived settings)
        relay: Pre-built relay state, mainly for tests

    Returns:
        Configured Starlette application with the relay on ``app.state.relay``
    """
    config = config or ServerConfig.from_env()
    state = relay or RelayState(config)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        janitor = asyncio.create_task(state.run_janitor())
        logger.info("Relay server started")
        try:
            yield
        finally:
            janitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await janitor
            state.close()
            logger.info("Relay server stopped")

    # The extension runs from a sandboxed origin (often "null"), so allow any origin
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origin_regex=".*",
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", CLIENT_TYPE_HEADER, CLIENT_ID_HEADER],
        ),
    ]

    app = Starlette(routes=list(relay_routes), middleware=middleware, lifespan=lifespan)
    app.state.relay = state
    return app

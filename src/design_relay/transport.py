"""HTTP transport shared by the caller and consumer sides.

Wraps one ``httpx.AsyncClient`` per relay client and maps relay status codes
onto the error taxonomy:

- network failure or 5xx on a connection call -> TransientTransportError
- 503 on submit -> NoConsumerError
- 409 on submit -> DuplicateCommandError
- anything else non-2xx -> RelayTransportError

Only connection-establishment calls (health, register) are safe to retry;
``retry_transient`` implements that bounded backoff. Submits are sent once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from .config import (
    CLIENT_ID_HEADER,
    CLIENT_TYPE_HEADER,
    COMMAND_TIMEOUT_HEADER,
    TARGET_TYPE_HEADER,
    RetryPolicy,
)
from .errors import (
    DuplicateCommandError,
    NoConsumerError,
    RelayTransportError,
    TransientTransportError,
)
from .protocol import (
    CommandEnvelope,
    PollResponse,
    RegisterRequest,
    RegisterResponse,
    ResponseEnvelope,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``func``, retrying TransientTransportError with backoff.

    Any other exception propagates immediately. After ``policy.max_retries``
    retries the last transient error is re-raised.
    """
    retry = 0
    while True:
        try:
            return await func()
        except TransientTransportError as e:
            if retry >= policy.max_retries:
                logger.error(f"{operation} failed after {retry + 1} attempts: {e}")
                raise
            delay = policy.delay_for(retry)
            retry += 1
            logger.warning(
                f"{operation} failed (attempt {retry}/{policy.max_retries + 1}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            await sleep(delay)


class RelayHTTPClient:
    """Thin async client for the relay's HTTP surface.

    Args:
        base_url: Relay server URL
        client_type: Value sent in ``X-Client-Type``
        timeout: Socket timeout for non-blocking calls
        transport: Optional httpx transport (``ASGITransport`` or
            ``MockTransport`` in tests)
    """

    def __init__(
        self,
        base_url: str,
        client_type: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.client_type = client_type
        self.client_id: str | None = None
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json", CLIENT_TYPE_HEADER: client_type},
        )

    def set_client_id(self, client_id: str | None) -> None:
        self.client_id = client_id
        if client_id:
            self._http.headers[CLIENT_ID_HEADER] = client_id
        else:
            self._http.headers.pop(CLIENT_ID_HEADER, None)

    async def close(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # Connection calls (retry-safe)
    # =========================================================================

    async def health(self) -> dict[str, Any]:
        """GET /health. Raises TransientTransportError on any failure."""
        response = await self._request_transient("GET", "/health")
        return self._json(response, "Health check")

    async def register(self, existing_id: str | None = None) -> str:
        """POST /register and adopt the returned client id."""
        body = RegisterRequest(type=self.client_type, existing_id=existing_id)
        response = await self._request_transient("POST", "/register", json=body.to_wire())
        registered = self._parse(RegisterResponse, response, "Registration")
        self.set_client_id(registered.client_id)
        return registered.client_id

    # =========================================================================
    # Command flow (single attempt)
    # =========================================================================

    async def submit(
        self,
        command: CommandEnvelope,
        target_type: str,
        timeout: float | None = None,
    ) -> ResponseEnvelope:
        """Blocking submit: POST /command and wait for the correlated response.

        The socket read timeout is left open; the caller bounds the wait.
        A server-side deadline comes back as a timeout envelope (HTTP 504).
        """
        headers = {TARGET_TYPE_HEADER: target_type}
        if timeout is not None:
            headers[COMMAND_TIMEOUT_HEADER] = str(timeout)

        response = await self._request(
            "POST",
            "/command",
            json=command.to_wire(),
            headers=headers,
            timeout=httpx.Timeout(self._http.timeout.connect, read=None),
        )
        if response.status_code == 503:
            raise NoConsumerError(target_type, command.id)
        if response.status_code == 409:
            raise DuplicateCommandError(command.id)
        if response.status_code not in (200, 504):
            raise RelayTransportError(
                f"Submit of {command.id} failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return self._parse(ResponseEnvelope, response, f"Submit of {command.id}")

    async def enqueue(self, command: CommandEnvelope, target_type: str) -> None:
        """Non-blocking submit: POST /enqueue."""
        response = await self._request(
            "POST", "/enqueue", json=command.to_wire(), headers={TARGET_TYPE_HEADER: target_type}
        )
        if response.status_code == 503:
            raise NoConsumerError(target_type, command.id)
        if response.status_code == 409:
            raise DuplicateCommandError(command.id)
        self._check(response, f"Enqueue of {command.id}")

    async def poll(self) -> list[CommandEnvelope]:
        """GET /commands for this client."""
        response = await self._request("GET", "/commands")
        self._check(response, "Poll")
        return self._parse(PollResponse, response, "Poll").commands

    async def send_response(self, response: ResponseEnvelope) -> bool:
        """POST /response. Returns whether a waiter was released."""
        what = f"Response for {response.id}"
        reply = await self._request("POST", "/response", json=response.to_wire())
        self._check(reply, what)
        return bool(self._json(reply, what).get("matched", False))

    async def keep_alive(self) -> bool:
        """POST /keepalive. Returns whether the server knows this client."""
        response = await self._request("POST", "/keepalive")
        self._check(response, "Keep-alive")
        return bool(self._json(response, "Keep-alive").get("known", False))

    async def status(self) -> dict[str, Any]:
        response = await self._request("GET", "/status")
        self._check(response, "Status")
        return self._json(response, "Status")

    async def ping(self) -> dict[str, Any]:
        response = await self._request("GET", "/ping")
        self._check(response, "Ping")
        return self._json(response, "Ping")

    # =========================================================================
    # Internals
    # =========================================================================

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RelayTransportError(f"{method} {path} failed: {e}") from e

    async def _request_transient(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 500:
            raise TransientTransportError(
                f"{method} {path} failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        self._check(response, f"{method} {path}")
        return response

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        detail = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            detail = body.get("error", "")
        message = f"{what} failed: HTTP {response.status_code}"
        if detail:
            message = f"{message} ({detail})"
        raise RelayTransportError(message, status_code=response.status_code)

    @staticmethod
    def _parse(model: type[M], response: httpx.Response, what: str) -> M:
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            raise RelayTransportError(
                f"{what} returned a malformed body: {e}", status_code=response.status_code
            ) from e

    @staticmethod
    def _json(response: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise RelayTransportError(
                f"{what} returned a malformed body: {e}", status_code=response.status_code
            ) from e
        if not isinstance(body, dict):
            raise RelayTransportError(
                f"{what} returned a malformed body: expected an object", status_code=response.status_code
            )
        return body

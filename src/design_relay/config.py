"""Relay configuration.

Each side of the relay has its own config dataclass. Defaults match the
values the design-tool extension was tuned with; every field can be
overridden from ``DESIGN_RELAY_*`` environment variables via ``from_env()``.

Durations are in seconds.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field

from .protocol import CommandCategory

ENV_PREFIX = "DESIGN_RELAY_"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8765
DEFAULT_BASE_URL = f"http://localhost:{DEFAULT_PORT}"
DEFAULT_CONSUMER_TYPE = "design-tool"
CALLER_TYPE = "caller"

CLIENT_ID_HEADER = "X-Client-ID"
CLIENT_TYPE_HEADER = "X-Client-Type"
TARGET_TYPE_HEADER = "X-Target-Type"
COMMAND_TIMEOUT_HEADER = "X-Command-Timeout"

FAST_CATEGORIES = frozenset(
    {
        CommandCategory.NODE_CREATION.value,
        CommandCategory.NODE_MODIFICATION.value,
        CommandCategory.STYLE_MODIFICATION.value,
        CommandCategory.TEXT_OPERATIONS.value,
    }
)


def _env(name: str) -> str | None:
    value = os.environ.get(ENV_PREFIX + name)
    return value if value not in (None, "") else None


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value is not None else default


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value is not None else default


def _env_str(name: str, default: str) -> str:
    value = _env(name)
    return value if value is not None else default


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Capped exponential backoff: ``min(base * 2**(attempt-1), cap)``.

    ``attempt`` is 1-based. With base 1s and cap 30s the schedule is
    1, 2, 4, 8, 16, 30, 30, ...
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    # Avoid float overflow for very large attempt counts
    exponent = min(attempt - 1, 62)
    return min(base * (2**exponent), cap)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient failures.

    Attempt ``n`` (0-based retry count) waits
    ``min(base_delay * backoff**n, max_delay)`` before retrying.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, retry: int) -> float:
        """Delay before retry number ``retry`` (0-based)."""
        return min(self.base_delay * (self.backoff**retry), self.max_delay)

    @classmethod
    def from_env(cls) -> RetryPolicy:
        return cls(
            max_retries=_env_int("RETRY_ATTEMPTS", 3),
            base_delay=_env_float("RETRY_DELAY", 1.0),
            backoff=_env_float("RETRY_BACKOFF", 2.0),
            max_delay=_env_float("RETRY_MAX_DELAY", 30.0),
        )

    @classmethod
    def disabled(cls) -> RetryPolicy:
        """A policy that never retries."""
        return cls(max_retries=0)


@dataclass
class ServerConfig:
    """Relay server settings."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    # Blocking submit deadline, and the ceiling a caller may request
    command_timeout: float = 10.0
    max_command_timeout: float = 60.0

    # A consumer must have been heard from within this window to receive work
    client_alive_window: float = 60.0
    # Registrations silent for longer than this are dropped with their queues
    client_expiry: float = 120.0
    # Grace the janitor allows past a waiter's own deadline before expiring it
    waiter_max_age: float = 30.0
    cleanup_interval: float = 30.0

    default_target_type: str = DEFAULT_CONSUMER_TYPE
    # Number of recent command ids remembered for duplicate detection
    seen_ids_limit: int = 10_000

    def effective_timeout(self, requested: float | None) -> float:
        """Server deadline for a blocking submit."""
        if requested is None or not math.isfinite(requested) or requested <= 0:
            return self.command_timeout
        return min(requested, self.max_command_timeout)

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=_env_str("HOST", DEFAULT_HOST),
            port=_env_int("PORT", DEFAULT_PORT),
            command_timeout=_env_float("COMMAND_TIMEOUT", 10.0),
            max_command_timeout=_env_float("MAX_COMMAND_TIMEOUT", 60.0),
            client_alive_window=_env_float("CLIENT_ALIVE_WINDOW", 60.0),
            client_expiry=_env_float("CLIENT_EXPIRY", 120.0),
            waiter_max_age=_env_float("WAITER_MAX_AGE", 30.0),
            cleanup_interval=_env_float("CLEANUP_INTERVAL", 30.0),
            default_target_type=_env_str("TARGET_TYPE", DEFAULT_CONSUMER_TYPE),
        )


@dataclass
class CallerConfig:
    """Caller-side RPC client settings."""

    base_url: str = DEFAULT_BASE_URL
    client_type: str = CALLER_TYPE
    target_type: str = DEFAULT_CONSUMER_TYPE

    # Category-specific deadlines, measured from send time
    default_timeout: float = 10.0
    fast_timeout: float = 5.0
    bulk_timeout: float = 30.0

    # Per-request socket timeout for non-blocking calls
    http_timeout: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def timeout_for(self, category: str, operation: str) -> float:
        """Deadline for a command of the given category and operation."""
        if category in FAST_CATEGORIES:
            return self.fast_timeout
        if category == CommandCategory.DESIGN_API.value and "file" in operation.lower():
            return self.bulk_timeout
        return self.default_timeout

    @classmethod
    def from_env(cls) -> CallerConfig:
        return cls(
            base_url=_env_str("URL", DEFAULT_BASE_URL),
            target_type=_env_str("TARGET_TYPE", DEFAULT_CONSUMER_TYPE),
            default_timeout=_env_float("CALL_TIMEOUT", 10.0),
            fast_timeout=_env_float("FAST_CALL_TIMEOUT", 5.0),
            bulk_timeout=_env_float("BULK_CALL_TIMEOUT", 30.0),
            http_timeout=_env_float("HTTP_TIMEOUT", 10.0),
            retry=RetryPolicy.from_env(),
        )


@dataclass
class ConsumerConfig:
    """Consumer-side connection and polling settings."""

    base_url: str = DEFAULT_BASE_URL
    client_type: str = DEFAULT_CONSUMER_TYPE

    # Short cadence for interactive responsiveness
    poll_interval: float = 0.2
    keepalive_interval: float = 30.0

    max_reconnect_attempts: int = 10
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    http_timeout: float = 10.0

    def reconnect_delay(self, attempt: int) -> float:
        return reconnect_delay(attempt, self.reconnect_base_delay, self.reconnect_max_delay)

    @classmethod
    def from_env(cls) -> ConsumerConfig:
        return cls(
            base_url=_env_str("URL", DEFAULT_BASE_URL),
            client_type=_env_str("CONSUMER_TYPE", DEFAULT_CONSUMER_TYPE),
            poll_interval=_env_float("POLL_INTERVAL", 0.2),
            keepalive_interval=_env_float("KEEPALIVE_INTERVAL", 30.0),
            max_reconnect_attempts=_env_int("MAX_RECONNECT_ATTEMPTS", 10),
            reconnect_base_delay=_env_float("RECONNECT_DELAY", 1.0),
            reconnect_max_delay=_env_float("RECONNECT_MAX_DELAY", 30.0),
            http_timeout=_env_float("HTTP_TIMEOUT", 10.0),
        )

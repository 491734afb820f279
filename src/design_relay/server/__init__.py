"""Relay server: registry, per-consumer queues and blocking submit waiters."""

from .app import create_app
from .relay import RelayState, Waiter

__all__ = ["RelayState", "Waiter", "create_app"]

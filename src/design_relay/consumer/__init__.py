"""Consumer side: connection, polling loop and command dispatch."""

from .client import ConsumerClient
from .connection import ConnectionState, ConsumerConnection
from .dispatcher import CommandDispatcher, Handler
from .polling import PollingLoop

__all__ = [
    "CommandDispatcher",
    "ConnectionState",
    "ConsumerClient",
    "ConsumerConnection",
    "Handler",
    "PollingLoop",
]

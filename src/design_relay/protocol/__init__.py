"""Relay wire protocol.

Key concepts:
- CommandEnvelope: caller -> consumer unit of work with a unique id
- ResponseEnvelope: consumer -> caller result carrying the same id
- ClientRegistration: server-side identity record for a polling client
"""

from .envelopes import (
    ClientRegistration,
    CommandCategory,
    CommandEnvelope,
    ErrorCode,
    PollResponse,
    RegisterRequest,
    RegisterResponse,
    ResponseEnvelope,
    new_client_id,
    new_command_id,
)

__all__ = [
    "ClientRegistration",
    "CommandCategory",
    "CommandEnvelope",
    "ErrorCode",
    "PollResponse",
    "RegisterRequest",
    "RegisterResponse",
    "ResponseEnvelope",
    "new_client_id",
    "new_command_id",
]

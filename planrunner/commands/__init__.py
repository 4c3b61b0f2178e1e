"""Inbound typed commands."""

from .schemas import CommandRequest, CommandResponse, ResponseStatus
from .service import CommandService, verify_token

__all__ = [
    "CommandRequest",
    "CommandResponse",
    "CommandService",
    "ResponseStatus",
    "verify_token",
]

"""OpenCode server support."""

from .client import OpenCodeClient, OpenCodeProtocolError

__all__ = [
    "OpenCodeClient",
    "OpenCodeProtocolError",
]

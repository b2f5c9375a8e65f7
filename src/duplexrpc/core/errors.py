"""
Exception types raised by the link engine.
"""

from typing import Optional


class RPCLinkError(Exception):
    """Base class for all duplexrpc errors."""


class ConfigError(RPCLinkError, TypeError):
    """Raised when a link configuration, transport, logger or promise lib is invalid."""


class MessageError(RPCLinkError, ValueError):
    """Raised when an incoming message cannot be decoded into an envelope."""


class SerializationError(RPCLinkError, ValueError):
    """Raised when an outgoing envelope cannot be encoded for the wire."""


class RemoteCallError(RPCLinkError):
    """Exception for failures that occurred on the remote side of the link."""

    def __init__(
        self,
        message: str = "",
        name: str = "Error",
        remote_stack: Optional[str] = None,
    ):
        self.message = message
        self.name = name
        self.remote_stack = remote_stack
        super().__init__(message)


class CapabilityError(RemoteCallError):
    """Raised on the exposing side when a called path was never exposed."""

    def __init__(self, path: str):
        super().__init__(f"no such capability: {path}", name="CapabilityError")
        self.path = path


class LinkDestroyedError(RPCLinkError):
    """Raised into pending calls when the link is destroyed."""


class HandshakeError(RPCLinkError):
    """Raised when the capability exchange gave up before the peer answered."""


class AckTimeoutError(RPCLinkError, TimeoutError):
    """Raised when a call was not answered within the acknowledgement delay."""

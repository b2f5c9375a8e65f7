"""
Core modules for the link engine, its wire dialect and transports.
"""

from .message import Envelope, MessageType, Codecs, JSONCodec, MsgPackCodec
from .link import Link, LinkState, LinkStatus, create
from .config import LinkConfig, validate_config, RETRY_CURVES
from .registry import PendingCall, PendingCallRegistry
from .remote import RemoteNamespace, RemoteProcedure, build_remote_tree
from .exposed import ExposedFunction, ExposedRegistry
from .promise import AsyncioPromiseLib, Deferred, validate_promise_lib
from .rpc_error import encode_error, encode_values, decode_error, decode_values
from .uid import create_uid_generator
from .transports import LoopbackTransport, ZmqTransport, create_pipe
from .errors import (
    RPCLinkError,
    ConfigError,
    MessageError,
    SerializationError,
    RemoteCallError,
    CapabilityError,
    LinkDestroyedError,
    HandshakeError,
    AckTimeoutError,
)
from .metrics import Metrics, LinkMetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    "Envelope",
    "MessageType",
    "Codecs",
    "JSONCodec",
    "MsgPackCodec",
    "Link",
    "LinkState",
    "LinkStatus",
    "create",
    "LinkConfig",
    "validate_config",
    "RETRY_CURVES",
    "PendingCall",
    "PendingCallRegistry",
    "RemoteNamespace",
    "RemoteProcedure",
    "build_remote_tree",
    "ExposedFunction",
    "ExposedRegistry",
    "AsyncioPromiseLib",
    "Deferred",
    "validate_promise_lib",
    "encode_error",
    "encode_values",
    "decode_error",
    "decode_values",
    "create_uid_generator",
    "LoopbackTransport",
    "ZmqTransport",
    "create_pipe",
    # Errors
    "RPCLinkError",
    "ConfigError",
    "MessageError",
    "SerializationError",
    "RemoteCallError",
    "CapabilityError",
    "LinkDestroyedError",
    "HandshakeError",
    "AckTimeoutError",
    # Metrics
    "Metrics",
    "LinkMetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]

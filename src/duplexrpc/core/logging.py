"""
Structured logging for link diagnostics.

Provides JSON-formatted logs with pluggable output handlers. The
StructuredLogger also satisfies the link's logger contract
(log/info/assert_/warn/error), so it can be swapped for any console-like
object at runtime.
"""

import time
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict, Tuple
from enum import Enum


LOGGER_METHODS: Tuple[str, ...] = ("log", "info", "assert_", "warn", "error")


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for link operations."""

    MESSAGE = "message"

    # Lifecycle
    LINK_CREATE = "link_create"
    LINK_READY = "link_ready"
    LINK_DESTROY = "link_destroy"

    # Handshake
    HANDSHAKE_SEND = "handshake_send"
    HANDSHAKE_RETRY = "handshake_retry"
    HANDSHAKE_FAILED = "handshake_failed"

    # Protocol
    MESSAGE_MALFORMED = "message_malformed"
    RESULT_UNMATCHED = "result_unmatched"
    CAPABILITY_MISSING = "capability_missing"
    TREE_CONFLICT = "tree_conflict"
    EXPOSE_CYCLE = "expose_cycle"

    # Calls
    CALL_ERROR = "call_error"
    CALLBACK_REPEATED = "callback_repeated"
    LISTENER_ERROR = "listener_error"
    ACK_TIMEOUT = "ack_timeout"
    FLUSH_UNHANDLED = "flush_unhandled"

    # Wire
    SERIALIZATION_FAILED = "serialization_failed"
    TRANSPORT_ERROR = "transport_error"

    # Teardown
    DESTROY_CALLBACK_ERROR = "destroy_callback_error"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Context
    link_id: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=repr)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


def is_valid_logger(candidate: Any) -> bool:
    """Check that a candidate exposes every logger contract method as a callable."""
    if candidate is None:
        return False
    return all(callable(getattr(candidate, name, None)) for name in LOGGER_METHODS)


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        # Simple usage with callback
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json())
        )

        # Console-style calls, optionally tagged with an event
        logger.info(LogEvent.LINK_READY, "link ready")
        logger.error("something broke", detail)

    Integration with a link:
        link = create({"on": t.on, "emit": t.emit, "log_handler": default_pretty_handler})
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        link_id: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.link_id = link_id
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: LogHandler):
        """Set or update the log handler."""
        self.handler = handler

    def set_context(self, link_id: Optional[str] = None):
        """Set default context for all log entries."""
        if link_id is not None:
            self.link_id = link_id

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def _emit(self, level: LogLevel, args: tuple):
        """
        Build a LogEntry from console-style arguments and hand it to the handler.

        A leading LogEvent tags the entry; remaining args are joined into the
        message.
        """
        if not self.handler or not self._should_log(level):
            return

        event = LogEvent.MESSAGE
        if args and isinstance(args[0], LogEvent):
            event, args = args[0], args[1:]

        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=" ".join(_describe(arg) for arg in args),
            link_id=self.link_id,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the link
            print(f"Log handler error: {e}")

    def debug(self, *args):
        """Log at DEBUG level."""
        self._emit(LogLevel.DEBUG, args)

    def log(self, *args):
        """Log at INFO level (console.log equivalent)."""
        self._emit(LogLevel.INFO, args)

    def info(self, *args):
        """Log at INFO level."""
        self._emit(LogLevel.INFO, args)

    def warn(self, *args):
        """Log at WARN level."""
        self._emit(LogLevel.WARN, args)

    def error(self, *args):
        """Log at ERROR level."""
        self._emit(LogLevel.ERROR, args)

    def assert_(self, condition: Any, *args):
        """Log at ERROR level when condition is falsy."""
        if not condition:
            self._emit(LogLevel.ERROR, args or ("Assertion failed",))


def _describe(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return f"<unprintable {type(value).__name__}>"


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.link_id:
        parts.append(f"link={entry.link_id[:8]}")

    print(" ".join(parts))

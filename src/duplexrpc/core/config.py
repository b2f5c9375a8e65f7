"""
Link configuration: defaults, validation and freezing.
"""

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from .errors import ConfigError
from .logging import LogHandler, StructuredLogger, is_valid_logger
from .message import CALL_STYLES, Codecs, MessageType
from .promise import AsyncioPromiseLib, validate_promise_lib
from .uid import create_uid_generator


DEFAULT_MESSAGE = "message"
DEFAULT_ASYNC_TYPE = MessageType.PROMISE.value
DEFAULT_CREATE_RETRY = 20
DEFAULT_CREATE_RETRY_CURVE = "exponential"
DEFAULT_CREATE_WAIT = 0.01  # seconds
DEFAULT_MAX_ACK_DELAY = 5.0  # seconds


RetryCurve = Callable[[float, int], float]

RETRY_CURVES: Dict[str, RetryCurve] = {
    "flat": lambda wait, attempt: wait,
    "linear": lambda wait, attempt: wait * (attempt + 1),
    "exponential": lambda wait, attempt: wait * (2**attempt),
}


@dataclass(frozen=True)
class LinkConfig:
    """
    Frozen settings for one link.

    Build through validate_config(); fields left as None are filled with
    their defaults there.

    Transport:
    - on: registers the single inbound-message handler
    - emit: sends one encoded envelope
    - off: optional detach hook called on destroy (sync or async)

    Protocol:
    - message: payload key for error reports sent with Link.error()
    - default_async_type: style advertised for exposed functions
    - codec: "json" (text) or "msgpack" (bytes)

    Handshake:
    - create_retry: expose re-sends before giving up
    - create_retry_curve: "flat" | "linear" | "exponential" | callable(wait, attempt)
    - create_wait: initial wait between sends, in seconds
    - max_ack_delay: cap on any handshake wait, and the per-call timeout
      when use_acks is enabled

    Diagnostics:
    - enable_stack_trace: include tracebacks in error replies
    - logger / log_handler: logger object, or handler for the default one
    - enable_metrics: collect call metrics
    """

    on: Callable[[Callable[[Any], None]], Any]
    emit: Callable[[Any], Any]
    off: Optional[Callable[[], Any]] = None
    message: str = DEFAULT_MESSAGE
    default_async_type: str = DEFAULT_ASYNC_TYPE
    create_retry: int = DEFAULT_CREATE_RETRY
    create_retry_curve: Union[str, RetryCurve] = DEFAULT_CREATE_RETRY_CURVE
    create_wait: float = DEFAULT_CREATE_WAIT
    max_ack_delay: float = DEFAULT_MAX_ACK_DELAY
    enable_stack_trace: bool = False
    use_acks: bool = False
    uid: Optional[Callable[[], str]] = None
    logger: Any = None
    log_handler: Optional[LogHandler] = None
    promise_lib: Any = None
    codec: str = "json"
    enable_metrics: bool = True

    def retry_delay(self, attempt: int) -> float:
        """Seconds to wait after the given (0-based) handshake attempt."""
        curve = self.create_retry_curve
        if not callable(curve):
            curve = RETRY_CURVES[curve]
        return min(float(curve(self.create_wait, attempt)), self.max_ack_delay)


_FIELDS = {f.name for f in dataclasses.fields(LinkConfig)}


def validate_config(config: Union[LinkConfig, Mapping]) -> LinkConfig:
    """
    Validate a configuration and return a frozen copy with defaults filled in.

    Args:
        config: LinkConfig or mapping of LinkConfig field names

    Raises:
        ConfigError: On a missing transport hook or any invalid field
    """
    if isinstance(config, LinkConfig):
        values = {name: getattr(config, name) for name in _FIELDS}
    elif isinstance(config, Mapping):
        unknown = set(config) - _FIELDS
        if unknown:
            raise ConfigError(f"validateConfig: unknown option(s): {sorted(unknown)}")
        values = dict(config)
    else:
        raise ConfigError("validateConfig: config must be a mapping or LinkConfig")

    if not callable(values.get("on")):
        raise ConfigError("validateConfig: config requires an on method")
    if not callable(values.get("emit")):
        raise ConfigError("validateConfig: config requires an emit method")
    if values.get("off") is not None and not callable(values["off"]):
        raise ConfigError("validateConfig: off must be callable")

    message = values.get("message") or DEFAULT_MESSAGE
    if not isinstance(message, str):
        raise ConfigError("validateConfig: message must be a string")
    if message in ("error", "results"):
        raise ConfigError(f"validateConfig: message key {message!r} is reserved")
    values["message"] = message

    style = values.get("default_async_type") or DEFAULT_ASYNC_TYPE
    if style not in CALL_STYLES:
        raise ConfigError(f"validateConfig: unknown default_async_type {style!r}")
    values["default_async_type"] = style

    retry = values.get("create_retry", DEFAULT_CREATE_RETRY)
    if retry is None:
        retry = DEFAULT_CREATE_RETRY
    if not isinstance(retry, int) or isinstance(retry, bool) or retry < 0:
        raise ConfigError("validateConfig: create_retry must be a non-negative int")
    values["create_retry"] = retry

    curve = values.get("create_retry_curve") or DEFAULT_CREATE_RETRY_CURVE
    if not callable(curve) and curve not in RETRY_CURVES:
        raise ConfigError(f"validateConfig: unknown create_retry_curve {curve!r}")
    values["create_retry_curve"] = curve

    for name, default in (
        ("create_wait", DEFAULT_CREATE_WAIT),
        ("max_ack_delay", DEFAULT_MAX_ACK_DELAY),
    ):
        value = values.get(name) or default
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"validateConfig: {name} must be a positive number")
        values[name] = float(value)

    codec = values.get("codec") or "json"
    if codec not in Codecs.names():
        raise ConfigError(f"validateConfig: unknown codec {codec!r}")
    values["codec"] = codec

    uid = values.get("uid")
    if uid is None:
        uid = create_uid_generator()
    elif not callable(uid):
        raise ConfigError("validateConfig: uid must be callable")
    values["uid"] = uid

    logger = values.get("logger")
    if logger is None:
        logger = StructuredLogger(handler=values.get("log_handler"))
    elif not is_valid_logger(logger):
        raise ConfigError(
            "validateConfig: logger requires log, info, assert_, warn and error methods"
        )
    values["logger"] = logger

    promise_lib = values.get("promise_lib")
    values["promise_lib"] = validate_promise_lib(
        promise_lib if promise_lib is not None else AsyncioPromiseLib()
    )

    values["enable_stack_trace"] = bool(values.get("enable_stack_trace", False))
    values["use_acks"] = bool(values.get("use_acks", False))
    values["enable_metrics"] = bool(values.get("enable_metrics", True))

    return LinkConfig(**values)

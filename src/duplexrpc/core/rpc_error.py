"""
Error codec: projects thrown values onto a wire-safe shape and back.

encode_* functions are total and never raise; anything they cannot
serialise is reported through the given logger and coerced to a marker.
Decoding is lossy: only name, message and stack survive the trip.
"""

import json
import math
import traceback
from typing import Any, Dict, List, Optional

from .errors import RemoteCallError
from .logging import LogEvent


RPC_ERROR_TAG = "__rpc_error__"


def is_rpc_error(data: Any) -> bool:
    """Check whether a decoded wire value is an encoded RPC error."""
    return isinstance(data, dict) and data.get(RPC_ERROR_TAG) is True


def _safe_str(value: Any) -> Optional[str]:
    try:
        return str(value)
    except Exception:
        return None


def _format_stack(error: BaseException) -> Optional[str]:
    try:
        return "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    except Exception:
        return None


def encode_error(
    value: Any, logger: Any = None, include_stack: bool = False
) -> Dict[str, Any]:
    """
    Encode an exception (or any value used as one) into an RPC error dict.

    Args:
        value: Exception instance or arbitrary value
        logger: Logger used to report serialization fallbacks
        include_stack: Whether to attach a formatted traceback

    Returns:
        {"__rpc_error__": True, "name": ..., "message": ..., "stack"?: ...}
    """
    if isinstance(value, BaseException):
        name = type(value).__name__
        if isinstance(value, RemoteCallError):
            message, name = value.message, value.name
        else:
            message = _safe_str(value)
        if message is None:
            _report(logger, f"rpc: could not stringify {name} for the wire")
            message = f"<unprintable {name}>"
        data: Dict[str, Any] = {RPC_ERROR_TAG: True, "name": name, "message": message}
        if include_stack:
            stack = _format_stack(value)
            if stack:
                data["stack"] = stack
        return data

    if isinstance(value, str):
        message = value
    else:
        try:
            message = json.dumps(value, allow_nan=False)
        except (TypeError, ValueError, RecursionError) as e:
            _report(logger, f"rpc: error value is not serializable: {e}")
            message = _safe_str(value)
            if message is None:
                message = f"<unprintable {type(value).__name__}>"

    return {RPC_ERROR_TAG: True, "name": "Error", "message": message}


def encode_values(
    values: Any, logger: Any = None, include_stack: bool = False
) -> List[Any]:
    """
    Encode a batch of values for an error report.

    Exceptions become RPC error dicts, JSON-safe values pass through and
    unserializable leaves (functions, NaN, cycles, arbitrary objects) are
    replaced by "[unserializable: ...]" markers. One error is logged when
    any leaf had to be coerced.
    """
    if not isinstance(values, (list, tuple)):
        values = [values]

    coerced: List[str] = []
    encoded = [
        _coerce(value, coerced, set(), include_stack) for value in values
    ]
    if coerced:
        _report(
            logger,
            f"rpc: {len(coerced)} unserializable value(s) in error report: "
            + ", ".join(coerced),
        )
    return encoded


def _coerce(value: Any, coerced: List[str], seen: set, include_stack: bool) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value

    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return _marker(repr(value), coerced)
        return value

    if isinstance(value, BaseException):
        return encode_error(value, None, include_stack)

    if isinstance(value, (list, tuple, dict)):
        if id(value) in seen:
            return _marker("circular reference", coerced)
        seen = seen | {id(value)}
        if isinstance(value, dict):
            return {
                str(k): _coerce(v, coerced, seen, include_stack)
                for k, v in value.items()
            }
        return [_coerce(v, coerced, seen, include_stack) for v in value]

    if callable(value):
        name = getattr(value, "__name__", type(value).__name__)
        return _marker(f"function {name}", coerced)

    return _marker(type(value).__name__, coerced)


def _marker(description: str, coerced: List[str]) -> str:
    coerced.append(description)
    return f"[unserializable: {description}]"


def _report(logger: Any, message: str):
    if logger is None:
        return
    try:
        logger.error(LogEvent.SERIALIZATION_FAILED, message)
    except Exception as e:
        # Encoding must never raise, not even through a broken logger
        print(f"Log handler error: {e}")


def decode_error(data: Any) -> RemoteCallError:
    """Rebuild an error-like object from an encoded RPC error."""
    if not isinstance(data, dict):
        return RemoteCallError(str(data))
    message = data.get("message", "")
    if not isinstance(message, str):
        message = str(message)
    return RemoteCallError(
        message,
        name=str(data.get("name") or "Error"),
        remote_stack=data.get("stack"),
    )


def decode_values(values: Any) -> List[Any]:
    """Decode an error report: encoded errors become RemoteCallError instances."""
    if not isinstance(values, list):
        values = [values]
    return [decode_error(v) if is_rpc_error(v) else v for v in values]

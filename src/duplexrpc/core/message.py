"""
Message envelopes and wire codecs for the link dialect.
"""

import json
import math
import msgpack
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

from .errors import MessageError, SerializationError


class MessageType(Enum):
    """The link dialect."""

    EXPOSE = "expose"
    INVOKE = "invoke"
    PROMISE = "promise"
    CALLBACK = "callback"
    LISTEN = "listen"
    IGNORE = "ignore"
    RESULTS = "results"
    ERROR = "error"


# Invocation styles a proxy can use, and that a descriptor leaf can name
CALL_STYLES = (
    MessageType.INVOKE.value,
    MessageType.PROMISE.value,
    MessageType.CALLBACK.value,
    MessageType.LISTEN.value,
)

# Keys that identify a bare reply object sent without an envelope
_REPLY_KEYS = (MessageType.RESULTS.value, MessageType.ERROR.value)

INT64_MAX = 2**63 - 1
INT64_MIN = -(2**63)


def _sanitize_for_wire(obj: Any, clamp_ints: bool = False) -> Any:
    """Sanitize object for cross-language interop safety.

    Handles:
    - NaN/Infinity → null
    - Integer overflow → clamp to int64 (msgpack only)
    - Non-string keys → string conversion
    - Tuples → lists
    """
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_wire(v, clamp_ints) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize_for_wire(v, clamp_ints) for v in obj]
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, int) and not isinstance(obj, bool) and clamp_ints:
        return max(INT64_MIN, min(INT64_MAX, obj))
    return obj


class Codec(Protocol):
    name: str

    def dumps(self, obj: Any) -> Union[str, bytes]: ...

    def loads(self, data: Union[str, bytes]) -> Any: ...


class JSONCodec:
    """UTF-8 JSON text, the default wire format."""

    name = "json"

    def dumps(self, obj: Any) -> str:
        return json.dumps(
            _sanitize_for_wire(obj), separators=(",", ":"), allow_nan=False
        )

    def loads(self, data: Union[str, bytes]) -> Any:
        if not isinstance(data, (str, bytes, bytearray)):
            raise ValueError(f"Expected str or bytes, got {type(data).__name__}")
        return json.loads(data)


class MsgPackCodec:
    """msgpack binary frames, for transports that carry bytes."""

    name = "msgpack"

    def dumps(self, obj: Any) -> bytes:
        return msgpack.packb(_sanitize_for_wire(obj, clamp_ints=True), use_bin_type=True)

    def loads(self, data: Union[str, bytes]) -> Any:
        if not isinstance(data, (bytes, bytearray)):
            raise ValueError(f"Expected bytes, got {type(data).__name__}")
        if len(data) == 0:
            raise ValueError("Empty message data")
        # Unpack with size limits (DoS protection)
        return msgpack.unpackb(
            data,
            raw=False,
            max_bin_len=10 * 1024 * 1024,
            max_str_len=10 * 1024 * 1024,
            max_array_len=100_000,
            max_map_len=100_000,
        )


class Codecs:
    _registry: Dict[str, Codec] = {"json": JSONCodec(), "msgpack": MsgPackCodec()}

    @classmethod
    def get(cls, name: str) -> Codec:
        if name not in cls._registry:
            raise ValueError(f"Unknown codec: {name}")
        return cls._registry[name]

    @classmethod
    def names(cls) -> List[str]:
        return list(cls._registry)


class Envelope:
    """
    One wire-level message unit.

    Fields:
    - type: str = one of MessageType values
    - uid: str = correlation id of the call this envelope belongs to
    - payload: Any = type-specific body

    Payload shapes:
    - expose: capability descriptor dict
    - invoke/promise/callback/listen/ignore: [{"fn": path, "args": [...]}]
    - results: {"results": [{"uid": id, "result": value}]}
    - error: {"error": [{"uid": id, "error": rpc_error}]} for call failures,
      or {<report key>: [values...]} for error reports
    """

    def __init__(self, type: str, uid: Optional[str] = None, payload: Any = None):
        self.type = type
        self.uid = uid
        self.payload = payload

    def __repr__(self) -> str:
        return f"Envelope(type={self.type!r}, uid={self.uid!r})"

    @classmethod
    def create_expose(cls, uid: str, descriptor: Dict[str, Any]) -> "Envelope":
        """Create a capability announcement."""
        return cls(type=MessageType.EXPOSE.value, uid=uid, payload=descriptor)

    @classmethod
    def create_call(
        cls, style: str, uid: str, path: str, args: Any = ()
    ) -> "Envelope":
        """Create an invoke/promise/callback/listen/ignore call message."""
        return cls(type=style, uid=uid, payload=[{"fn": path, "args": list(args)}])

    @classmethod
    def create_results(cls, uid: str, result: Any) -> "Envelope":
        """Create a success reply for the call identified by uid."""
        return cls(
            type=MessageType.RESULTS.value,
            uid=uid,
            payload={"results": [{"uid": uid, "result": result}]},
        )

    @classmethod
    def create_error(cls, uid: str, error: Dict[str, Any]) -> "Envelope":
        """Create a failure reply carrying an encoded RPC error."""
        return cls(
            type=MessageType.ERROR.value,
            uid=uid,
            payload={"error": [{"uid": uid, "error": error}]},
        )

    @classmethod
    def create_report(cls, uid: str, key: str, values: List[Any]) -> "Envelope":
        """Create an uncorrelated error report for the peer's logger."""
        return cls(type=MessageType.ERROR.value, uid=uid, payload={key: values})

    def to_dict(self) -> dict:
        """Convert to plain dict."""
        return {"type": self.type, "uid": self.uid, "payload": self.payload}

    def pack(self, codec: Codec) -> Union[str, bytes]:
        """Encode for the transport with interop safety."""
        try:
            return codec.dumps(self.to_dict())
        except (TypeError, ValueError, OverflowError, RecursionError) as e:
            raise SerializationError(f"Failed to encode {self.type} message: {e}")

    @classmethod
    def unpack(cls, data: Any, codec: Codec) -> "Envelope":
        """Decode a raw transport message, with validation."""
        try:
            unpacked = codec.loads(data)
        except (ValueError, TypeError, RecursionError, msgpack.exceptions.ExtraData) as e:
            raise MessageError(f"Failed to decode message: {e}")
        except msgpack.exceptions.UnpackException as e:
            raise MessageError(f"Failed to unpack message: {e}")

        if not isinstance(unpacked, dict):
            raise MessageError(
                f"Expected an object, got {type(unpacked).__name__}"
            )

        msg_type = unpacked.get("type")
        if msg_type is None:
            # Bare reply: {"results": [...]} or {"error": [...]}
            keys = [key for key in _REPLY_KEYS if key in unpacked]
            if len(keys) != 1:
                raise MessageError("Message has no type")
            return cls(type=keys[0], uid=None, payload=unpacked)

        try:
            MessageType(msg_type)
        except ValueError:
            raise MessageError(f"Unknown message type: {msg_type!r}")

        return cls(
            type=msg_type,
            uid=unpacked.get("uid"),
            payload=unpacked.get("payload"),
        )

"""
duplexrpc - bidirectional RPC over any duplex message channel

Each side of a link exposes local functions and gets a proxy tree that
mirrors the functions the other side exposed. Every proxy can be called
in four styles: invoke, promise, callback and listen/ignore.

The link only needs a transport with `on(handler)` and `emit(raw)` (and
optionally `off()`); an in-process pipe and a ZeroMQ PAIR transport are
included.

## Quick Start

### Two links over an in-process pipe
```python
from duplexrpc import create, create_pipe

left, right = create_pipe()

server = create(left.as_config(), local={
    "math": {"add": lambda a, b: a + b},
})
client = create(right.as_config())

remote = await client.ready
result = await remote.math.add.invoke(1, 2)   # 3

await client.destroy("done")
await server.destroy("done")
```

### Call styles
```python
async def fetch(key):
    return await db.get(key)

def read(name, done):
    done(None, open(name).read())

def ticks(interval, notify):
    schedule_every(interval, lambda: notify(time.time()))

server = create(left.as_config(), local={
    "fetch": fetch, "read": read, "ticks": ticks,
}, descriptor={"ticks": "listen"})

value = await remote.fetch.promise("k")
values = await remote.read.callback("a.txt")        # [contents]
listener_id = remote.ticks.listen(1.0, print)
await remote.ticks.ignore(listener_id)
```

### Over ZeroMQ
```python
from duplexrpc import create, ZmqTransport

transport = ZmqTransport.bind("tcp://*:5555")
link = create({**transport.as_config(), "codec": "msgpack"})
```

### With Observability (Metrics & Logging)
```python
from duplexrpc import create, default_json_handler

link = create({**transport.as_config(), "log_handler": default_json_handler})
remote = await link.ready
await remote.my_function(1, 2)

snapshot = link.metrics.snapshot()
print(f"Avg latency: {snapshot.latency_avg_ms}ms")
```

## Exports

- create / Link: Build a link over a transport
- LinkConfig / validate_config: Link configuration
- LoopbackTransport / create_pipe / ZmqTransport: Reference transports
- RemoteCallError and friends: Error types
- Metrics: Metrics collection for observability
- StructuredLogger: Structured logging with pluggable handlers
"""

from .core.link import Link, LinkState, LinkStatus, create
from .core.config import LinkConfig, validate_config
from .core.message import Envelope, MessageType, Codecs
from .core.remote import RemoteNamespace, RemoteProcedure
from .core.promise import AsyncioPromiseLib, Deferred
from .core.uid import create_uid_generator
from .core.transports import LoopbackTransport, ZmqTransport, create_pipe
from .core.errors import (
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
from .core.metrics import Metrics, LinkMetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__version__ = "1.0.0"
__all__ = [
    # Core
    "create",
    "Link",
    "LinkState",
    "LinkStatus",
    "LinkConfig",
    "validate_config",
    "Envelope",
    "MessageType",
    "Codecs",
    "RemoteNamespace",
    "RemoteProcedure",
    "AsyncioPromiseLib",
    "Deferred",
    "create_uid_generator",
    # Transports
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

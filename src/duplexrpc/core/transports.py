"""
Reference transports: an in-process loopback pipe and a ZeroMQ PAIR socket.

Both satisfy the link's transport contract (on/emit/off); pass
transport.as_config() as the base of a link configuration.
"""

import asyncio
from typing import Any, Callable, Dict, Optional, Tuple, Union

import zmq
import zmq.asyncio


Handler = Callable[[Any], None]


class LoopbackTransport:
    """
    One end of an in-process pipe.

    Messages are delivered on the next loop iteration. A message that
    arrives before the receiving end registered a handler is dropped.
    """

    def __init__(self):
        self.peer: Optional["LoopbackTransport"] = None
        self.closed = False
        self._handler: Optional[Handler] = None

    def as_config(self) -> Dict[str, Any]:
        return {"on": self.on, "emit": self.emit, "off": self.off}

    def on(self, handler: Handler):
        self._handler = handler

    def emit(self, raw: Union[str, bytes]):
        if self.closed:
            raise ConnectionError("loopback transport is closed")
        if self.peer is None:
            raise ConnectionError("loopback transport has no peer")
        asyncio.get_running_loop().call_soon(self.peer._deliver, raw)

    def off(self):
        self.closed = True
        self._handler = None

    def _deliver(self, raw: Union[str, bytes]):
        if self._handler is not None and not self.closed:
            self._handler(raw)


def create_pipe() -> Tuple[LoopbackTransport, LoopbackTransport]:
    """Create two connected loopback ends."""
    left, right = LoopbackTransport(), LoopbackTransport()
    left.peer, right.peer = right, left
    return left, right


class ZmqTransport:
    """
    Link transport over a zmq.asyncio PAIR socket.

    Usage:
        server = ZmqTransport.bind("tcp://*:5555")
        link = create(server.as_config())

        # In the other process
        client = ZmqTransport.connect("tcp://localhost:5555")
        link = create(client.as_config())

    Text frames are sent as UTF-8; the receiving codec accepts bytes.
    """

    def __init__(
        self,
        socket: zmq.asyncio.Socket,
        send_retries: int = 5,
        retry_wait: float = 0.1,
    ):
        self.socket = socket
        self.send_retries = send_retries
        self.retry_wait = retry_wait
        self.running = False
        self._handler: Optional[Handler] = None
        self._recv_task: Optional[asyncio.Task] = None

    @classmethod
    def _pair_socket(cls, context: Optional[zmq.asyncio.Context]) -> zmq.asyncio.Socket:
        context = context or zmq.asyncio.Context.instance()
        socket = context.socket(zmq.PAIR)
        socket.setsockopt(zmq.LINGER, 0)
        return socket

    @classmethod
    def bind(
        cls, endpoint: str, context: Optional[zmq.asyncio.Context] = None, **kwargs
    ) -> "ZmqTransport":
        socket = cls._pair_socket(context)
        try:
            socket.bind(endpoint)
        except zmq.ZMQError as e:
            socket.close()
            if e.errno == zmq.EADDRINUSE:
                raise ConnectionError(f"Endpoint {endpoint} is already in use") from e
            raise ConnectionError(f"Failed to bind ZMQ socket: {e}") from e
        return cls(socket, **kwargs)

    @classmethod
    def connect(
        cls, endpoint: str, context: Optional[zmq.asyncio.Context] = None, **kwargs
    ) -> "ZmqTransport":
        socket = cls._pair_socket(context)
        socket.connect(endpoint)
        return cls(socket, **kwargs)

    def as_config(self) -> Dict[str, Any]:
        return {"on": self.on, "emit": self.emit, "off": self.off}

    def on(self, handler: Handler):
        """Register the message handler and start receiving."""
        self._handler = handler
        if self._recv_task is None:
            self.running = True
            self._recv_task = asyncio.get_running_loop().create_task(self._recv_loop())

    async def emit(self, raw: Union[str, bytes]):
        """Send one frame, retrying while the socket is busy."""
        frame = raw.encode("utf-8") if isinstance(raw, str) else raw
        for attempt in range(self.send_retries):
            try:
                await self.socket.send(frame, zmq.NOBLOCK)
                return
            except zmq.Again:
                # Socket not ready, wait and retry
                if attempt < self.send_retries - 1:
                    await asyncio.sleep(self.retry_wait)
                    continue
                raise ConnectionError("Failed to send frame: socket busy after retries")

    async def _recv_loop(self):
        while self.running:
            try:
                frame = await self.socket.recv()
            except zmq.ZMQError as e:
                if self.running:
                    print(f"Error in ZMQ receive loop: {e}")
                break

            if self._handler is not None:
                self._handler(frame)

    async def off(self):
        """Stop receiving and close the socket."""
        self.running = False
        self._handler = None

        if self._recv_task is not None and not self._recv_task.done():
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass
        self._recv_task = None

        if not self.socket.closed:
            self.socket.close()

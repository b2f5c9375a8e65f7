"""
Link engine: handshake, dispatch of incoming envelopes, and teardown.

A link turns one duplex message channel into a bidirectional RPC
connection. Each side exposes local functions and receives a proxy tree
mirroring the functions the peer exposed.
"""

import asyncio
import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .config import LinkConfig, validate_config
from .errors import (
    CapabilityError,
    ConfigError,
    HandshakeError,
    LinkDestroyedError,
    MessageError,
    RemoteCallError,
    SerializationError,
)
from .exposed import ExposedFunction, ExposedRegistry
from .logging import LogEvent, StructuredLogger, is_valid_logger
from .message import Codecs, Envelope, MessageType
from .metrics import Metrics
from .promise import validate_promise_lib
from .registry import PendingCallRegistry
from .remote import RemoteNamespace, RemoteProcedure, build_remote_tree
from .rpc_error import decode_error, decode_values, encode_error, encode_values


class LinkState(Enum):
    CREATED = "created"
    HANDSHAKING = "handshaking"
    READY = "ready"
    DESTROYED = "destroyed"


@dataclass
class LinkStatus:
    """Counts of what a link is currently holding on to."""

    result_callbacks: int = 0
    listener_ids: int = 0
    ready_queue: int = 0


# Message types whose envelopes must carry a uid of their own
_CORRELATED_TYPES = (
    MessageType.EXPOSE.value,
    MessageType.INVOKE.value,
    MessageType.PROMISE.value,
    MessageType.CALLBACK.value,
    MessageType.LISTEN.value,
    MessageType.IGNORE.value,
)


class Link:
    """
    One RPC connection over a duplex message channel.

    Usage:
        link = create({"on": transport.on, "emit": transport.emit}, local={
            "math": {"add": lambda a, b: a + b},
        })
        remote = await link.ready
        total = await remote.math.add.invoke(1, 2)
        await link.destroy("done")

    Must be created from inside a running event loop.
    """

    def __init__(
        self,
        config: Union[LinkConfig, Mapping],
        local: Any = None,
        descriptor: Optional[Dict[str, Any]] = None,
    ):
        if descriptor is not None and not isinstance(descriptor, Mapping):
            raise ConfigError("rpc: descriptor must be a mapping")

        self._config = validate_config(config)
        self._loop = asyncio.get_running_loop()
        self._state = LinkState.CREATED
        self._logger = self._config.logger
        self._codec = Codecs.get(self._config.codec)
        self._uid = self._config.uid
        self._promise_lib = self._config.promise_lib
        self.id = self._uid()

        if isinstance(self._logger, StructuredLogger):
            self._logger.set_context(link_id=self.id)

        self._metrics: Optional[Metrics] = (
            Metrics() if self._config.enable_metrics else None
        )
        self._registry = PendingCallRegistry(
            logger=self._logger,
            ack_delay=self._config.max_ack_delay if self._config.use_acks else None,
        )
        self._exposed = ExposedRegistry(
            default_style=self._config.default_async_type,
            style_hints=descriptor,
            logger=self._logger,
        )
        self._remote = RemoteNamespace()

        # listener id -> exposed path, for listen calls served by this side
        self._listeners: Dict[str, str] = {}
        self._expose_uids: set = set()
        self._handshake_acked = False
        self._handshake_task: Optional[asyncio.Task] = None
        self._tasks: set = set()
        self._ready_queue: List[Callable[[RemoteNamespace], Any]] = []
        self._destroy_callbacks: List[Callable[[str], Any]] = []
        self._destroy_reason: Optional[str] = None

        self.ready: asyncio.Future = self._loop.create_future()

        self._handlers = {
            MessageType.EXPOSE.value: self._handle_expose,
            MessageType.RESULTS.value: self._handle_results,
            MessageType.ERROR.value: self._handle_error,
            MessageType.IGNORE.value: self._handle_ignore,
            MessageType.INVOKE.value: self._handle_call,
            MessageType.PROMISE.value: self._handle_call,
            MessageType.CALLBACK.value: self._handle_call,
            MessageType.LISTEN.value: self._handle_call,
        }
        # How an exposed function is driven for each call style
        self._strategies = {
            MessageType.INVOKE.value: self._run_returning,
            MessageType.PROMISE.value: self._run_returning,
            MessageType.CALLBACK.value: self._run_callback,
            MessageType.LISTEN.value: self._run_listen,
        }

        if local is not None:
            self._exposed.expose(local)

        self._config.on(self._on_message)
        self._state = LinkState.HANDSHAKING
        self._logger.log(LogEvent.LINK_CREATE, f"rpc: link {self.id} created")
        self._handshake_task = self._loop.create_task(self._handshake())

    def __repr__(self) -> str:
        return f"Link({self.id!r}, state={self._state.value!r})"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.destroy("closed")

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def remote(self) -> RemoteNamespace:
        """Proxy tree mirroring the peer's exposed functions."""
        return self._remote

    @property
    def config(self) -> LinkConfig:
        return self._config

    @property
    def logger(self) -> Any:
        return self._logger

    @property
    def metrics(self) -> Optional[Metrics]:
        """Call metrics (None when enable_metrics is off)."""
        return self._metrics

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def expose(self, obj: Any = None, overwrite: bool = False):
        """
        Expose more local functions to the peer.

        Nested mappings are walked and every callable becomes a dotted path.
        Anything else is ignored. When new paths were registered on a live
        link, the full descriptor is re-announced.

        Returns:
            Read-only mapping of every exposed path to its callable
        """
        changed = self._exposed.expose(obj, overwrite=overwrite)
        if changed and self._state in (LinkState.HANDSHAKING, LinkState.READY):
            self._send_expose()
        return self._exposed.snapshot()

    def set_logger(self, logger: Any) -> bool:
        """Install a new logger; returns False (keeping the old one) if invalid."""
        if not is_valid_logger(logger):
            return False
        self._logger = logger
        self._registry.logger = logger
        self._exposed.logger = logger
        return True

    def set_promise_lib(self, lib: Any):
        """
        Swap the promise library used by proxies for calls issued from now on.

        Raises:
            ConfigError: If lib does not provide a usable defer()
        """
        self._promise_lib = validate_promise_lib(lib)

    def status(self) -> LinkStatus:
        return LinkStatus(
            result_callbacks=len(self._registry),
            listener_ids=len(self._listeners),
            ready_queue=len(self._ready_queue),
        )

    def on_ready(self, callback: Callable[[RemoteNamespace], Any]) -> Callable[[], None]:
        """
        Call callback(remote) once the handshake completes.

        Runs immediately if the link is already ready.

        Returns:
            Function that unregisters the callback
        """
        if not callable(callback):
            raise TypeError("on_ready requires a callable")

        if self._state is LinkState.READY:
            self._run_ready_callback(callback)
            return lambda: None

        self._ready_queue.append(callback)

        def unregister():
            if callback in self._ready_queue:
                self._ready_queue.remove(callback)

        return unregister

    def on_destroy(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        """
        Call callback(reason) once when the link is destroyed.

        Returns:
            Function that unregisters the callback
        """
        if not callable(callback):
            raise TypeError("on_destroy requires a callable")

        if self._state is LinkState.DESTROYED:
            self._run_destroy_callback(callback, self._destroy_reason or "")
            return lambda: None

        self._destroy_callbacks.append(callback)

        def unregister():
            if callback in self._destroy_callbacks:
                self._destroy_callbacks.remove(callback)

        return unregister

    def error(self, *values):
        """
        Report values to the peer's logger.

        Never raises: values that cannot cross the wire are replaced by
        markers and the substitution is logged locally.
        """
        encoded = encode_values(
            list(values), self._logger, self._config.enable_stack_trace
        )
        self._emit(Envelope.create_report(self._uid(), self._config.message, encoded))

    async def destroy(self, reason: str = ""):
        """
        Tear the link down.

        Pending calls are rejected with LinkDestroyedError, the transport
        is detached and on_destroy callbacks run. Calling it again is a no-op.
        """
        if self._state is LinkState.DESTROYED:
            return
        self._state = LinkState.DESTROYED
        self._destroy_reason = reason
        self._logger.info(LogEvent.LINK_DESTROY, f"rpc: link {self.id} destroyed {reason}")

        if self._handshake_task is not None and not self._handshake_task.done():
            self._handshake_task.cancel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        self._exposed.clear()
        self._remote.clear()
        self._listeners.clear()
        self._expose_uids.clear()
        self._registry.flush(LinkDestroyedError(f"rpc flush {reason}"))

        if self._config.off is not None:
            try:
                result = self._config.off()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(
                    LogEvent.TRANSPORT_ERROR, f"rpc: failed to detach transport: {e}"
                )

        self._fail_ready(LinkDestroyedError(f"rpc: link destroyed {reason}"))
        self._ready_queue.clear()

        callbacks, self._destroy_callbacks = self._destroy_callbacks, []
        for callback in callbacks:
            self._run_destroy_callback(callback, reason)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _handshake(self):
        config = self._config
        attempts = config.create_retry + 1

        for attempt in range(attempts):
            if self._handshake_acked:
                return
            if attempt == 0:
                self._logger.log(LogEvent.HANDSHAKE_SEND, f"rpc: link {self.id} announcing")
            else:
                self._logger.log(
                    LogEvent.HANDSHAKE_RETRY,
                    f"rpc: handshake attempt {attempt + 1}/{attempts}",
                )
            self._send_expose()
            if self._metrics:
                self._metrics.record_handshake_attempt()
            await asyncio.sleep(config.retry_delay(attempt))

        if self._handshake_acked or self._state is LinkState.DESTROYED:
            return

        self._logger.error(
            LogEvent.HANDSHAKE_FAILED,
            f"rpc: handshake failed, no answer after {attempts} attempts",
        )
        self._fail_ready(
            HandshakeError(f"rpc: peer did not answer after {attempts} attempts")
        )

    def _send_expose(self):
        uid = self._uid()
        self._expose_uids.add(uid)
        self._emit(Envelope.create_expose(uid, self._exposed.descriptor()))

    def _fail_ready(self, error: BaseException):
        if self.ready.done():
            return
        self.ready.set_exception(error)
        # Mark retrieved: nothing may be awaiting ready
        self.ready.exception()

    def _mark_ready(self):
        self._state = LinkState.READY
        if not self.ready.done():
            self.ready.set_result(self._remote)
        self._logger.info(LogEvent.LINK_READY, f"rpc: link {self.id} ready")

        queue, self._ready_queue = self._ready_queue, []
        for callback in queue:
            self._run_ready_callback(callback)

    def _run_ready_callback(self, callback):
        try:
            callback(self._remote)
        except Exception as e:
            self._logger.error(LogEvent.LISTENER_ERROR, f"rpc: ready callback raised: {e}")

    def _run_destroy_callback(self, callback, reason):
        try:
            callback(reason)
        except Exception as e:
            self._logger.error(
                LogEvent.DESTROY_CALLBACK_ERROR, f"rpc: destroy callback raised: {e}"
            )

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    def _defer(self):
        return self._promise_lib.defer()

    def _make_procedure(self, path: str, style: str) -> RemoteProcedure:
        return RemoteProcedure(
            path,
            self._send,
            self._registry,
            self._uid,
            self._defer,
            style=style,
            metrics=self._metrics,
        )

    def _send(self, envelope: Envelope):
        """Encode and emit an envelope; raises on any failure."""
        if self._state is LinkState.DESTROYED:
            raise LinkDestroyedError(f"rpc: link destroyed {self._destroy_reason or ''}")
        self._transmit(envelope.pack(self._codec))

    def _transmit(self, raw: Union[str, bytes]):
        result = self._config.emit(raw)
        if inspect.isawaitable(result):
            # Async transports: failures surface through _emit_done
            asyncio.ensure_future(result).add_done_callback(self._emit_done)

    def _emit_done(self, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error(LogEvent.TRANSPORT_ERROR, f"rpc: emit failed: {error}")

    def _emit(self, envelope: Envelope) -> bool:
        """Encode and emit an envelope; failures are logged, never raised."""
        if self._state is LinkState.DESTROYED:
            return False
        try:
            self._send(envelope)
        except SerializationError as e:
            self._logger.error(LogEvent.SERIALIZATION_FAILED, f"rpc: {e}")
            return False
        except Exception as e:
            self._logger.error(
                LogEvent.TRANSPORT_ERROR, f"rpc: failed to emit {envelope.type}: {e}"
            )
            return False
        return True

    def _reply_results(self, uid: str, value: Any):
        envelope = Envelope.create_results(uid, value)
        try:
            raw = envelope.pack(self._codec)
        except SerializationError as e:
            self._logger.error(
                LogEvent.SERIALIZATION_FAILED, f"rpc: result for {uid} not sent: {e}"
            )
            self._reply_error(uid, e)
            return
        if self._state is LinkState.DESTROYED:
            return
        try:
            self._transmit(raw)
        except Exception as e:
            self._logger.error(LogEvent.TRANSPORT_ERROR, f"rpc: failed to emit results: {e}")

    def _reply_error(self, uid: str, error: Any):
        encoded = encode_error(error, self._logger, self._config.enable_stack_trace)
        self._emit(Envelope.create_error(uid, encoded))

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _on_message(self, raw: Any):
        """Transport callback. Never raises."""
        if self._state is LinkState.DESTROYED:
            return

        try:
            envelope = Envelope.unpack(raw, self._codec)
        except MessageError as e:
            self._logger.error(LogEvent.MESSAGE_MALFORMED, f"rpc: dropping message: {e}")
            return

        if envelope.type in _CORRELATED_TYPES and not isinstance(envelope.uid, str):
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED,
                f"rpc: dropping {envelope.type} message without uid",
            )
            return

        try:
            self._handlers[envelope.type](envelope)
        except Exception as e:
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, f"rpc: failed to handle {envelope.type}: {e}"
            )

    def _handle_expose(self, envelope: Envelope):
        descriptor = envelope.payload
        if not isinstance(descriptor, dict):
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, "rpc: expose payload must be an object"
            )
            return

        build_remote_tree(
            descriptor,
            self._make_procedure,
            tree=self._remote,
            logger=self._logger,
            default_style=self._config.default_async_type,
        )

        if envelope.uid in self._expose_uids:
            self._expose_uids.discard(envelope.uid)
        else:
            # The peer's announcement: answer with ours under its uid
            self._emit(Envelope.create_expose(envelope.uid, self._exposed.descriptor()))
        self._handshake_acked = True

        if self._state is LinkState.HANDSHAKING:
            self._mark_ready()

    def _handle_results(self, envelope: Envelope):
        payload = envelope.payload
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list) or not results:
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, "rpc: results message without results"
            )
            return

        for item in results:
            uid = item.get("uid") if isinstance(item, dict) else None
            if uid is None:
                self._logger.error(LogEvent.MESSAGE_MALFORMED, "rpc: result without uid")
                continue
            if not isinstance(uid, str) or uid not in self._registry:
                self._logger.error(
                    LogEvent.RESULT_UNMATCHED, f"rpc: no pending call for result {uid!r}"
                )
                continue
            try:
                self._registry.resolve(uid, item.get("result"))
            except Exception as e:
                self._logger.error(
                    LogEvent.LISTENER_ERROR, f"rpc: result handler for {uid} raised: {e}"
                )

    def _handle_error(self, envelope: Envelope):
        payload = envelope.payload
        if not isinstance(payload, dict) or not payload:
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, "rpc: error message without payload"
            )
            return

        if MessageType.ERROR.value not in payload:
            for values in payload.values():
                self._logger.error(*decode_values(values))
            return

        errors = payload[MessageType.ERROR.value]
        if not isinstance(errors, list) or not errors:
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, "rpc: error message without errors"
            )
            return

        for item in errors:
            uid = item.get("uid") if isinstance(item, dict) else None
            if not isinstance(uid, str) or uid not in self._registry:
                self._logger.error(
                    LogEvent.RESULT_UNMATCHED, f"rpc: no pending call for error {uid!r}"
                )
                continue
            try:
                self._registry.reject(uid, decode_error(item.get("error")))
            except Exception as e:
                self._logger.error(
                    LogEvent.LISTENER_ERROR, f"rpc: error handler for {uid} raised: {e}"
                )

    def _handle_ignore(self, envelope: Envelope):
        calls = envelope.payload
        if not isinstance(calls, list):
            self._logger.error(LogEvent.MESSAGE_MALFORMED, "rpc: ignore payload must be a list")
            return

        for call in calls:
            args = call.get("args") if isinstance(call, dict) else None
            listener_id = args[0] if isinstance(args, list) and args else None
            removed = (
                isinstance(listener_id, str)
                and self._listeners.pop(listener_id, None) is not None
            )
            self._reply_results(envelope.uid, removed)

    def _handle_call(self, envelope: Envelope):
        calls = envelope.payload
        if not isinstance(calls, list):
            self._logger.error(
                LogEvent.MESSAGE_MALFORMED, f"rpc: {envelope.type} payload must be a list"
            )
            return

        strategy = self._strategies[envelope.type]
        for call in calls:
            if not isinstance(call, dict):
                self._logger.error(LogEvent.MESSAGE_MALFORMED, "rpc: malformed call entry")
                continue

            args = call.get("args")
            if args is None:
                args = []
            elif not isinstance(args, list):
                self._logger.error(
                    LogEvent.MESSAGE_MALFORMED, "rpc: call args must be a list"
                )
                continue

            entry = self._exposed.lookup(call.get("fn"))
            if entry is None:
                error = CapabilityError(str(call.get("fn")))
                self._logger.error(LogEvent.CAPABILITY_MISSING, f"rpc: {error}")
                self._reply_error(envelope.uid, error)
                continue

            strategy(envelope.uid, entry, args)

    # ------------------------------------------------------------------
    # Call strategies
    # ------------------------------------------------------------------

    def _run_returning(self, uid: str, entry: ExposedFunction, args: list):
        try:
            result = entry.fn(*args)
        except Exception as e:
            self._reply_error(uid, e)
            return

        if inspect.isawaitable(result):
            self._track(result, lambda task: self._settle(uid, task))
        else:
            self._reply_results(uid, result)

    def _run_callback(self, uid: str, entry: ExposedFunction, args: list):
        settled = False

        def done(err=None, *values):
            nonlocal settled
            if settled:
                self._logger.warn(
                    LogEvent.CALLBACK_REPEATED,
                    f"rpc: callback for {entry.path} called more than once",
                )
                return
            settled = True
            if err is not None:
                self._reply_error(uid, err)
            else:
                self._reply_results(uid, list(values))

        def failed(error: BaseException):
            nonlocal settled
            if settled:
                self._logger.error(
                    LogEvent.CALL_ERROR, f"rpc: {entry.path} raised after replying: {error}"
                )
                return
            settled = True
            self._reply_error(uid, error)

        def finished(task: asyncio.Future):
            if task.cancelled():
                failed(RemoteCallError("call cancelled", name="CancelledError"))
            elif task.exception() is not None:
                failed(task.exception())

        try:
            result = entry.fn(*args, done)
        except Exception as e:
            failed(e)
            return

        if inspect.isawaitable(result):
            self._track(result, finished)

    def _run_listen(self, uid: str, entry: ExposedFunction, args: list):
        self._listeners[uid] = entry.path

        def notify(*data) -> bool:
            if uid not in self._listeners:
                return False
            self._reply_results(uid, list(data))
            return True

        try:
            result = entry.fn(*args, notify)
        except Exception as e:
            self._listeners.pop(uid, None)
            self._reply_error(uid, e)
            return

        if inspect.isawaitable(result):
            self._track(result, lambda task: self._listen_finished(uid, task))

    def _track(self, awaitable, on_done: Callable[[asyncio.Future], None]):
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def finished(task):
            self._tasks.discard(task)
            if self._state is not LinkState.DESTROYED:
                on_done(task)

        task.add_done_callback(finished)

    def _settle(self, uid: str, task: asyncio.Future):
        if task.cancelled():
            self._reply_error(uid, RemoteCallError("call cancelled", name="CancelledError"))
            return
        error = task.exception()
        if error is not None:
            self._reply_error(uid, error)
        else:
            self._reply_results(uid, task.result())

    def _listen_finished(self, uid: str, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self._listeners.pop(uid, None) is not None:
            self._reply_error(uid, error)


def create(
    config: Union[LinkConfig, Mapping],
    local: Any = None,
    descriptor: Optional[Dict[str, Any]] = None,
) -> Link:
    """
    Create a link over a transport.

    Args:
        config: LinkConfig or mapping with at least "on" and "emit"
        local: Nested mapping of functions to expose to the peer
        descriptor: Optional style hints, e.g. {"events": {"tick": "listen"}}

    Returns:
        Link; await link.ready for the peer's proxy tree

    Raises:
        ConfigError: If the configuration is invalid
    """
    return Link(config, local=local, descriptor=descriptor)

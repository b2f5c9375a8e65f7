"""
Remote procedure proxies and the tree that mirrors the peer's capabilities.
"""

from typing import Any, Callable, Dict, Iterator, Optional

from .logging import LogEvent
from .message import CALL_STYLES, Envelope, MessageType
from .metrics import Metrics
from .promise import Deferred
from .registry import PendingCallRegistry


class RemoteProcedure:
    """
    Callable stand-in for one function exposed by the peer.

    Usage:
        value = await link.remote.math.add.invoke(1, 2)
        value = await link.remote.math.add.promise(1, 2)
        values = await link.remote.fs.read.callback("a.txt")   # list of values
        listener_id = link.remote.events.on.listen("tick", on_tick)
        await link.remote.events.on.ignore(listener_id)

        # Or with the style the peer advertised for this leaf:
        value = await link.remote.math.add(1, 2)
    """

    def __init__(
        self,
        path: str,
        send: Callable[[Envelope], None],
        registry: PendingCallRegistry,
        uid: Callable[[], str],
        defer: Callable[[], Deferred],
        style: str = MessageType.PROMISE.value,
        metrics: Optional[Metrics] = None,
    ):
        """
        Initialize a proxy.

        Args:
            path: Dotted path of the peer function
            send: Encodes and emits an envelope; raises on failure
            registry: The link's pending-call registry
            uid: Id generator for correlation ids
            defer: Factory for deferreds (the promise-library adapter)
            style: Style used when the proxy itself is called
            metrics: Optional metrics collector
        """
        self.path = path
        self.style = style if style in CALL_STYLES else MessageType.PROMISE.value
        self.uid = uid
        self._send = send
        self._registry = registry
        self._defer = defer
        self._metrics = metrics

    def __repr__(self) -> str:
        return f"RemoteProcedure({self.path!r}, style={self.style!r})"

    def __call__(self, *args):
        return getattr(self, self.style)(*args)

    def invoke(self, *args):
        """Call the peer function and resolve with its return value."""
        return self._call(MessageType.INVOKE.value, args)

    def promise(self, *args):
        """Call a peer function returning an awaitable; resolve with its outcome."""
        return self._call(MessageType.PROMISE.value, args)

    def callback(self, *args):
        """Call a peer function taking a trailing (err, *values) continuation."""
        return self._call(MessageType.CALLBACK.value, args)

    def _call(self, style: str, args: tuple):
        call_id = self.uid()
        deferred = self._defer()
        on_result, on_error = deferred.resolve, deferred.reject

        if self._metrics is not None:
            start = self._metrics.start_request(self.path, style)
            on_result, on_error = self._tracked(start, on_result, on_error)

        self._registry.register(call_id, style, on_result, on_error)

        try:
            self._send(Envelope.create_call(style, call_id, self.path, args))
        except Exception as e:
            self._registry.reject(call_id, e)

        return deferred.promise

    def _tracked(self, start: float, on_result, on_error):
        metrics = self._metrics

        def result(value):
            metrics.end_request(start, success=True)
            on_result(value)

        def error(reason):
            metrics.end_request(start, success=False)
            on_error(reason)

        return result, error

    def listen(self, *args, on_error: Optional[Callable[[BaseException], Any]] = None) -> str:
        """
        Subscribe to a peer function that pushes notifications.

        The last argument is the handler, called as handler(*data) for every
        notification until ignore() is called with the returned id.

        Args:
            *args: Arguments for the peer function, then the handler
            on_error: Called if the subscription fails or the link is
                destroyed (default: report through the link's logger)

        Raises:
            TypeError: If the last argument is not callable
        """
        if not args or not callable(args[-1]):
            raise TypeError("listen requires a callable as its last argument")

        *params, on_event = args
        call_id = self.uid()
        registry = self._registry

        def deliver(values):
            if not isinstance(values, list):
                values = [values]
            on_event(*values)

        def failed(reason):
            if on_error is not None:
                on_error(reason)
            elif registry.logger is not None:
                registry.logger.warn(
                    LogEvent.LISTENER_ERROR,
                    f"rpc: listener {call_id} on {self.path} ended: {reason}",
                )

        registry.register(call_id, MessageType.LISTEN.value, deliver, failed)

        try:
            self._send(
                Envelope.create_call(MessageType.LISTEN.value, call_id, self.path, params)
            )
        except Exception:
            self._registry.remove(call_id)
            raise

        return call_id

    def ignore(self, listener_id: str):
        """
        Unsubscribe a listener registered by listen().

        Returns:
            Awaitable resolving to True once the peer dropped the listener
            (False if the peer did not know it)
        """
        self._registry.remove(listener_id)
        return self._call_ignore(listener_id)

    def _call_ignore(self, listener_id: str):
        call_id = self.uid()
        deferred = self._defer()
        # Acknowledgements are plain one-shot replies
        self._registry.register(
            call_id, MessageType.INVOKE.value, deferred.resolve, deferred.reject
        )
        try:
            self._send(
                Envelope.create_call(
                    MessageType.IGNORE.value, call_id, self.path, [listener_id]
                )
            )
        except Exception as e:
            self._registry.reject(call_id, e)
        return deferred.promise


class RemoteNamespace:
    """
    Namespace node of the remote tree.

    Children are reachable as attributes or items:
        link.remote.math.add
        link.remote["math"]["add"]
    """

    def __init__(self, path: str = ""):
        self._path = path
        self._children: Dict[str, Any] = {}

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._children[name]
        except KeyError:
            where = self._path or "remote"
            raise AttributeError(f"{where} has no capability {name!r}") from None

    def __getitem__(self, name: str) -> Any:
        return self._children[name]

    def __contains__(self, name: object) -> bool:
        return name in self._children

    def __iter__(self) -> Iterator[str]:
        return iter(self._children)

    def __len__(self) -> int:
        return len(self._children)

    def __dir__(self):
        return list(self._children)

    def __repr__(self) -> str:
        return f"RemoteNamespace({self._path or '<root>'!r}, {sorted(self._children)})"

    def clear(self):
        self._children.clear()

    def paths(self) -> Iterator[str]:
        """Yield the dotted path of every procedure below this node."""
        for child in self._children.values():
            if isinstance(child, RemoteNamespace):
                yield from child.paths()
            else:
                yield child.path


ProcedureFactory = Callable[[str, str], RemoteProcedure]


def build_remote_tree(
    descriptor: Dict[str, Any],
    factory: ProcedureFactory,
    tree: Optional[RemoteNamespace] = None,
    logger: Any = None,
    default_style: str = MessageType.PROMISE.value,
) -> RemoteNamespace:
    """
    Merge a capability descriptor into a remote tree.

    Existing nodes are never replaced: a proxy a consumer already holds stays
    valid as more expose messages arrive.

    Args:
        descriptor: Nested dict of name -> sub-descriptor or leaf style string
        factory: Builds the proxy for (path, style)
        tree: Tree to merge into (default: a new root)
        logger: Logger for conflicts and cycles
        default_style: Style for leaves that do not name a known one

    Returns:
        The (possibly new) root namespace
    """
    if tree is None:
        tree = RemoteNamespace()
    _merge(tree, descriptor, factory, logger, default_style, set())
    return tree


def _merge(node, descriptor, factory, logger, default_style, visited):
    if id(descriptor) in visited:
        _warn(logger, LogEvent.TREE_CONFLICT, f"rpc: cyclic descriptor at {node._path or '<root>'}")
        return
    visited = visited | {id(descriptor)}

    for name, value in descriptor.items():
        name = str(name)
        path = f"{node._path}.{name}" if node._path else name
        existing = node._children.get(name)

        if isinstance(value, dict):
            if existing is None:
                existing = node._children[name] = RemoteNamespace(path)
            elif not isinstance(existing, RemoteNamespace):
                _warn(logger, LogEvent.TREE_CONFLICT, f"rpc: {path} is a procedure, ignoring namespace")
                continue
            _merge(existing, value, factory, logger, default_style, visited)
            continue

        if existing is None:
            style = value if value in CALL_STYLES else default_style
            node._children[name] = factory(path, style)
        elif isinstance(existing, RemoteNamespace):
            _warn(logger, LogEvent.TREE_CONFLICT, f"rpc: {path} is a namespace, ignoring procedure")


def _warn(logger, event, message):
    if logger is not None:
        logger.warn(event, message)

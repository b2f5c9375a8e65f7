"""
Promise-library adapter: how proxies hand out awaitables to callers.
"""

import asyncio
import inspect
from typing import Any, Callable, NamedTuple

from .errors import ConfigError, RemoteCallError


class Deferred(NamedTuple):
    """A pending value plus the functions that settle it."""

    resolve: Callable[..., None]
    reject: Callable[[Any], None]
    promise: Any


class AsyncioPromiseLib:
    """Default adapter: deferreds backed by futures on the running loop."""

    def defer(self) -> Deferred:
        future = asyncio.get_running_loop().create_future()

        def resolve(value: Any = None):
            if not future.done():
                future.set_result(value)

        def reject(reason: Any):
            if future.done():
                return
            if not isinstance(reason, BaseException):
                reason = RemoteCallError(str(reason))
            future.set_exception(reason)

        return Deferred(resolve, reject, future)


def validate_promise_lib(lib: Any) -> Any:
    """
    Check that a promise library exposes defer() -> {resolve, reject, promise}.

    The deferred returned by a probe call must have callable resolve/reject
    and an awaitable promise.

    Raises:
        ConfigError: If any member is missing
    """
    if isinstance(lib, AsyncioPromiseLib):
        return lib

    defer = getattr(lib, "defer", None)
    if not callable(defer):
        raise ConfigError("promise lib requires a defer function")

    deferred = defer()
    for name in ("resolve", "reject"):
        if not callable(getattr(deferred, name, None)):
            raise ConfigError(f"promise lib deferreds require a {name} function")
    if not inspect.isawaitable(getattr(deferred, "promise", None)):
        raise ConfigError("promise lib deferreds require an awaitable promise")

    return lib

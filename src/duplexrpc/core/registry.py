"""
Pending-call registry: correlates replies with the callers waiting on them.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from .errors import AckTimeoutError
from .logging import LogEvent
from .message import MessageType


ResultHandler = Callable[[Any], None]
ErrorHandler = Callable[[BaseException], None]
FlushHandler = Callable[["PendingCall", BaseException], None]


@dataclass
class PendingCall:
    """A caller waiting on the peer, keyed by its correlation id."""

    id: str
    type: str
    on_result: ResultHandler
    on_error: ErrorHandler
    timer: Any = None

    @property
    def persistent(self) -> bool:
        """Listen entries survive deliveries until explicitly removed."""
        return self.type == MessageType.LISTEN.value

    def cancel_timer(self):
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


def _reject_entry(entry: PendingCall, error: BaseException):
    entry.on_error(error)


class PendingCallRegistry:
    """
    Per-link table of outstanding calls.

    Entries are consumed exactly once by resolve/reject, except listen
    entries which stay registered across resolves until removed.

    With ack_delay set, every non-listen entry is rejected with
    AckTimeoutError if nothing settles it within ack_delay seconds.
    """

    def __init__(self, logger: Any = None, ack_delay: Optional[float] = None):
        self.logger = logger
        self.ack_delay = ack_delay
        self._entries: Dict[str, PendingCall] = {}
        self._error_handlers: Dict[str, FlushHandler] = {
            MessageType.INVOKE.value: _reject_entry,
            MessageType.PROMISE.value: _reject_entry,
            MessageType.CALLBACK.value: _reject_entry,
            MessageType.LISTEN.value: _reject_entry,
        }

    def set_error_handler(self, call_type: str, handler: Optional[FlushHandler]):
        """Set (or with None, remove) the flush handler for one invocation style."""
        if handler is None:
            self._error_handlers.pop(call_type, None)
        else:
            self._error_handlers[call_type] = handler

    def register(
        self,
        call_id: str,
        call_type: str,
        on_result: ResultHandler,
        on_error: ErrorHandler,
    ) -> PendingCall:
        entry = PendingCall(call_id, call_type, on_result, on_error)
        self._entries[call_id] = entry
        if self.ack_delay is not None and not entry.persistent:
            entry.timer = asyncio.get_running_loop().call_later(
                self.ack_delay, self._expire, call_id
            )
        return entry

    def _expire(self, call_id: str):
        entry = self._entries.get(call_id)
        if entry is None:
            return
        entry.timer = None
        if self.logger is not None:
            self.logger.warn(
                LogEvent.ACK_TIMEOUT,
                f"rpc: no reply for {entry.type} call {call_id} after {self.ack_delay}s",
            )
        self.reject(
            call_id,
            AckTimeoutError(f"rpc: call {call_id} timed out after {self.ack_delay}s"),
        )

    def resolve(self, call_id: str, value: Any = None) -> bool:
        """
        Deliver a result to the entry for call_id.

        Returns:
            False if no entry was registered under call_id
        """
        entry = self._entries.get(call_id)
        if entry is None:
            return False
        if not entry.persistent:
            self._remove(call_id)
        entry.on_result(value)
        return True

    def reject(self, call_id: str, reason: BaseException) -> bool:
        """
        Deliver a failure to the entry for call_id and remove it.

        Returns:
            False if no entry was registered under call_id
        """
        entry = self._remove(call_id)
        if entry is None:
            return False
        entry.on_error(reason)
        return True

    def remove(self, call_id: str) -> bool:
        """Drop an entry without notifying it (used by ignore)."""
        return self._remove(call_id) is not None

    def _remove(self, call_id: str) -> Optional[PendingCall]:
        entry = self._entries.pop(call_id, None)
        if entry is not None:
            entry.cancel_timer()
        return entry

    def flush(self, reason: BaseException):
        """Fail every outstanding entry through its type's error handler."""
        pending = list(self._entries.values())
        self._entries.clear()

        for entry in pending:
            entry.cancel_timer()
            handler = self._error_handlers.get(entry.type)
            if handler is None:
                if self.logger is not None:
                    self.logger.warn(
                        LogEvent.FLUSH_UNHANDLED,
                        f"rpc: flush: no error handler registered for {entry.type}",
                    )
                continue
            try:
                handler(entry, reason)
            except Exception as e:
                if self.logger is not None:
                    self.logger.error(
                        LogEvent.LISTENER_ERROR,
                        f"rpc: flush: error handler for {entry.id} raised: {e}",
                    )

    def count(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

"""
Local capabilities: the exposed-function registry and its descriptor.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Optional

from .logging import LogEvent
from .message import CALL_STYLES, MessageType


@dataclass(frozen=True)
class ExposedFunction:
    """One locally exposed callable and the style advertised for it."""

    path: str
    fn: Callable[..., Any]
    style: str = MessageType.PROMISE.value


def flatten_descriptor(descriptor: Any, prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested descriptor into {dotted path: leaf marker}."""
    flat: Dict[str, Any] = {}
    if not isinstance(descriptor, Mapping):
        return flat
    for name, value in descriptor.items():
        path = f"{prefix}.{name}" if prefix else str(name)
        if isinstance(value, Mapping):
            flat.update(flatten_descriptor(value, path))
        else:
            flat[path] = value
    return flat


class ExposedRegistry:
    """
    Dotted path -> callable table for one side of a link.

    Usage:
        registry = ExposedRegistry()
        registry.expose({"math": {"add": add}})
        registry.lookup("math.add").fn(1, 2)
        registry.descriptor()    # {"math": {"add": "promise"}}
    """

    def __init__(
        self,
        default_style: str = MessageType.PROMISE.value,
        style_hints: Optional[Dict[str, Any]] = None,
        logger: Any = None,
    ):
        self.default_style = default_style
        self.logger = logger
        self._style_hints = flatten_descriptor(style_hints or {})
        self._functions: Dict[str, ExposedFunction] = {}

    def expose(self, obj: Any, overwrite: bool = False) -> List[str]:
        """
        Register every callable reachable through nested mappings of obj.

        Without overwrite the first registration of a path wins; a path that
        would turn an existing leaf into a namespace (or the reverse) counts
        as a collision.

        Returns:
            Paths that were added or replaced
        """
        if not isinstance(obj, Mapping):
            return []

        changed: List[str] = []
        for path, fn in self._walk(obj, "", set()):
            conflicts = self._conflicts(path)
            if conflicts and not overwrite:
                continue
            for conflict in conflicts:
                del self._functions[conflict]
            self._functions[path] = ExposedFunction(path, fn, self._style_for(path))
            changed.append(path)
        return changed

    def _walk(self, obj: Mapping, prefix: str, visited: set):
        if id(obj) in visited:
            if self.logger is not None:
                self.logger.warn(
                    LogEvent.EXPOSE_CYCLE,
                    f"rpc: expose: skipping cyclic reference at {prefix or '<root>'}",
                )
            return
        visited = visited | {id(obj)}

        for name, value in obj.items():
            path = f"{prefix}.{name}" if prefix else str(name)
            if isinstance(value, Mapping):
                yield from self._walk(value, path, visited)
            elif callable(value):
                yield path, value

    def _conflicts(self, path: str) -> List[str]:
        found = []
        for existing in self._functions:
            if (
                existing == path
                or existing.startswith(path + ".")
                or path.startswith(existing + ".")
            ):
                found.append(existing)
        return found

    def _style_for(self, path: str) -> str:
        hint = self._style_hints.get(path)
        return hint if hint in CALL_STYLES else self.default_style

    def lookup(self, path: Any) -> Optional[ExposedFunction]:
        if not isinstance(path, str):
            return None
        return self._functions.get(path)

    def snapshot(self) -> MappingProxyType:
        """Read-only copy of path -> callable."""
        return MappingProxyType(
            {path: entry.fn for path, entry in self._functions.items()}
        )

    def descriptor(self) -> Dict[str, Any]:
        """
        Build the capability descriptor for the handshake.

        Style hints that have no local function are advertised too, so a
        side can describe capabilities it will expose later.
        """
        desc: Dict[str, Any] = {}
        leaves = {path: hint for path, hint in self._style_hints.items()}
        leaves.update({path: entry.style for path, entry in self._functions.items()})

        for path, style in leaves.items():
            node = desc
            parts = path.split(".")
            for part in parts[:-1]:
                child = node.setdefault(part, {})
                if not isinstance(child, dict):
                    break
                node = child
            else:
                node.setdefault(parts[-1], style)
        return desc

    def clear(self):
        self._functions.clear()

    def __contains__(self, path: object) -> bool:
        return path in self._functions

    def __len__(self) -> int:
        return len(self._functions)

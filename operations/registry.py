"""
MethodRegistry — maps operation paths to callables.

Entries are either callables or namespaces (plain dicts of further
entries).  Namespaces are copied into the registry at registration time,
so resolution only ever walks dicts the registry owns and never touches
attributes of live objects.  Paths containing a denylisted segment, or
longer than ``MAX_PATH_DEPTH``, resolve to nothing.
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from utils.errors import ConfigurationError, OperationNotFoundError

logger = logging.getLogger(__name__)

ENDPOINT = "__endpoint"
CONFIG_QUERY = "__configQuery"
DEFAULT = "__default"
RESERVED = frozenset({ENDPOINT, CONFIG_QUERY, DEFAULT})

DENYLIST = frozenset({"constructor", "__proto__", "toString", "toSource", "prototype"})
MAX_PATH_DEPTH = 20


class OperationKind(str, Enum):
    SYSTEM = "system"
    CONNECTOR = "connector"


def normalize_path(query: Any) -> List[Any]:
    """Turn a bare name or a sequence of segments into a list, dropping blanks."""
    if isinstance(query, str):
        segments: List[Any] = [query]
    elif isinstance(query, (list, tuple)):
        segments = list(query)
    else:
        segments = []
    return [s for s in segments if not (s is None or (isinstance(s, str) and not s.strip()))]


def path_name(path: Sequence[Any]) -> str:
    return ".".join(str(s) for s in path)


async def invoke(fn: Callable, *args: Any) -> Any:
    """Call *fn* and await the result if it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class MethodRegistry:
    """Operation table for one connector; frozen once the connector is built."""

    def __init__(self) -> None:
        self._entries: Dict[str, Any] = {}
        self._frozen = False

    # ── registration ────────────────────────────────────────────────────

    def register(self, name: str, fn: Callable | Mapping[str, Any]) -> None:
        """
        Add or replace an entry.  A dotted *name* registers into nested
        namespaces, creating them as needed.
        """
        if self._frozen:
            raise ConfigurationError(f"cannot register '{name}' after build()")
        path = name.split(".") if "." in name else [name]
        self._check_segments(path)
        entry = self._copy_entry(name, fn)

        node = self._entries
        for segment in path[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[path[-1]] = entry

    def register_many(self, entries: Mapping[str, Any]) -> None:
        for name, fn in entries.items():
            self.register(name, fn)

    def register_module(self, module: Any) -> int:
        """Register every ``@operation``-decorated function found on *module*."""
        count = 0
        for _, obj in inspect.getmembers(module, callable):
            if getattr(obj, "is_operation", False):
                self.register(obj.operation_name, obj)
                count += 1
        logger.info("Registered %d operations from %s", count, getattr(module, "__name__", module))
        return count

    def freeze(self) -> None:
        self._frozen = True

    def _check_segments(self, path: Sequence[str]) -> None:
        if len(path) > MAX_PATH_DEPTH:
            raise ConfigurationError(f"operation path too deep: {path_name(path)}")
        for segment in path:
            if not segment or segment in DENYLIST:
                raise ConfigurationError(f"invalid operation name segment: '{segment}'")

    def _copy_entry(self, name: str, entry: Any) -> Any:
        if isinstance(entry, Mapping):
            copied: Dict[str, Any] = {}
            for key, value in entry.items():
                self._check_segments([key])
                copied[key] = self._copy_entry(f"{name}.{key}", value)
            return copied
        if not callable(entry):
            raise ConfigurationError(f"operation '{name}' is not callable")
        return entry

    # ── lookup ──────────────────────────────────────────────────────────

    def has(self, name: str) -> bool:
        return name in self._entries

    def kind_of(self, name: str) -> OperationKind:
        return OperationKind.SYSTEM if name in RESERVED else OperationKind.CONNECTOR

    def resolve(self, path: Sequence[Any]) -> Optional[Callable]:
        """Return the callable at *path*, or ``None`` for no operation."""
        if not path or len(path) > MAX_PATH_DEPTH:
            return None

        node: Any = self._entries
        for segment in path:
            if not isinstance(segment, str) or segment in DENYLIST:
                return None
            if not isinstance(node, dict):
                return None
            node = node.get(segment)
            if node is None:
                return None

        return node if callable(node) else None

    async def execute(self, query: Any, variables: Optional[Dict[str, Any]] = None) -> Any:
        """
        Resolve *query* and invoke it with *variables*.

        Falls back to ``__default`` (with ``__method`` set to the path)
        when nothing resolves.

        Raises
        ------
        OperationNotFoundError – neither the operation nor ``__default`` exists
        """
        path = normalize_path(query)
        handler = self.resolve(path)
        if handler is not None:
            return await invoke(handler, variables)

        default = self._entries.get(DEFAULT)
        if not callable(default):
            raise OperationNotFoundError(f"{path_name(path)} not found")

        logger.debug("No operation '%s' — delegating to %s", path_name(path), DEFAULT)
        return await invoke(default, {**(variables or {}), "__method": path})

    def catalogue(self) -> List[str]:
        """Dotted names of all connector (non-reserved) operations."""
        names: List[str] = []

        def _walk(node: Dict[str, Any], prefix: List[str]) -> None:
            for key, value in node.items():
                if not prefix and key in RESERVED:
                    continue
                if isinstance(value, dict):
                    _walk(value, prefix + [key])
                else:
                    names.append(path_name(prefix + [key]))

        _walk(self._entries, [])
        return sorted(names)

"""Dispatch table: the explicit set of host operations scripts may call.

Entries are keyed ``"<namespace>.<method>"``. Anything not registered is
unreachable from a script; the bridge answers it with ``INVALID_INPUT``.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

DispatchFn = Callable[..., Awaitable[Any]]

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class DispatchEntry:
    """One host operation exposed to scripts."""

    namespace: str
    method: str
    fn: DispatchFn
    summary: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}.{self.method}"

    def signature(self) -> str:
        """Call signature as shown to script authors, e.g. ``(gid, opts=None)``."""
        try:
            return str(inspect.signature(self.fn))
        except (TypeError, ValueError):
            return "(...)"


def _check_name(kind: str, name: str) -> str:
    name = str(name).strip()
    if not _NAME_PATTERN.match(name) or name.startswith("__"):
        raise ValueError(f"Invalid {kind} name '{name}': use a Python identifier without leading '__'")
    return name


class DispatchTable:
    """
    Registry of host operations.

    Built once from the domain-operations collaborator and shared read-only by
    every call within an invocation.
    """

    def __init__(self) -> None:
        self._entries: dict[str, DispatchEntry] = {}

    @classmethod
    def from_mapping(cls, namespaces: Mapping[str, Mapping[str, DispatchFn]]) -> "DispatchTable":
        """Build from ``{"tasks": {"list": fn, ...}, ...}``."""
        table = cls()
        for namespace, methods in namespaces.items():
            for method, fn in methods.items():
                table.bind(namespace, method, fn)
        return table

    def bind(self, namespace: str, method: str, fn: DispatchFn, *, summary: str | None = None) -> None:
        """Register ``fn`` as ``namespace.method``. Re-binding a key replaces it."""
        if not callable(fn):
            raise TypeError(f"Dispatch target for {namespace}.{method} is not callable")
        namespace = _check_name("namespace", namespace)
        method = _check_name("method", method)
        if summary is None:
            doc = inspect.getdoc(fn) or ""
            summary = doc.strip().splitlines()[0] if doc.strip() else ""
        entry = DispatchEntry(namespace=namespace, method=method, fn=fn, summary=summary)
        self._entries[entry.key] = entry

    def bind_object(self, namespace: str, obj: Any, methods: Iterable[str] | None = None) -> None:
        """
        Register methods of a client object under one namespace.

        Args:
            namespace: Namespace scripts use, e.g. ``"tasks"``.
            obj: Object whose bound methods are exposed.
            methods: Explicit method names. When omitted, every public
                coroutine method of ``obj`` is registered.
        """
        if methods is None:
            methods = [
                name
                for name, member in inspect.getmembers(obj)
                if not name.startswith("_") and inspect.iscoroutinefunction(member)
            ]
        for name in methods:
            fn = getattr(obj, name, None)
            if fn is None:
                raise AttributeError(f"{type(obj).__name__} has no method '{name}'")
            self.bind(namespace, name, fn)

    def unbind(self, namespace: str, method: str) -> None:
        self._entries.pop(f"{namespace}.{method}", None)

    def get(self, namespace: str, method: str) -> DispatchEntry | None:
        return self._entries.get(f"{namespace}.{method}")

    def keys(self) -> list[str]:
        """Registered keys in registration order."""
        return list(self._entries)

    def entries(self) -> list[DispatchEntry]:
        return list(self._entries.values())

    def frozen(self) -> Mapping[str, DispatchEntry]:
        """Read-only copy used for the lifetime of one invocation."""
        return MappingProxyType(dict(self._entries))

    def namespaces(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for entry in self._entries.values():
            grouped.setdefault(entry.namespace, []).append(entry.method)
        return grouped

    def describe(self, prefix: str = "host") -> str:
        """Render the callable surface grouped by namespace, for tool descriptions and help output."""
        lines: list[str] = []
        for namespace, methods in self.namespaces().items():
            lines.append(f"{namespace}:")
            for method in methods:
                entry = self._entries[f"{namespace}.{method}"]
                line = f"  {prefix}.{entry.key}{entry.signature()}"
                if entry.summary:
                    line += f" - {entry.summary}"
                lines.append(line)
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

"""Connection-scoped session state shared across script invocations.

Scripts see the state as ``context``. Only a deep copy (the snapshot) crosses
into the isolated context at invocation start, and only ``session-update``
messages cross back.
"""

from __future__ import annotations

import json
from typing import Any, Iterator

from loguru import logger

from scriptbridge.utils.exceptions import ValidationError


def _json_copy(value: Any) -> Any:
    return json.loads(json.dumps(value, allow_nan=False))


class SessionStore:
    """In-memory JSON-safe key/value state for one connection."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self.apply_update(key, value)

    def snapshot(self) -> dict[str, Any]:
        """Return a plain, independent copy of the session."""
        return _json_copy(self._data)

    def apply_update(self, key: str, value: Any) -> None:
        """Set ``key`` to ``value``. Values must be JSON-serializable."""
        if not isinstance(key, str) or not key:
            raise ValidationError("Session keys must be non-empty strings", field="key")
        try:
            stored = _json_copy(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Session value for '{key}' is not JSON-serializable: {e}",
                field=key,
                fix="Store plain JSON data (dict, list, str, int, float, bool, None).",
            ) from e
        self._data[key] = stored
        logger.debug("Session key '{}' updated", key)

    def clear(self) -> None:
        """Drop all state (connection teardown or explicit reset)."""
        self._data.clear()

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return _json_copy(self._data[key])

    def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

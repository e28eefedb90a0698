"""
In-memory workspace settings with change notification.

Holds the user selections the driver reads but does not own: the active
build configuration, the active target and the selected kit. Listeners
registered with `on()` are called when a value actually changes.
"""

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class WorkspaceSettings:
    """Named settings store. Every setting must be registered before use."""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}

    def register(self, name: str, default: Any = None) -> Any:
        """Register a setting, returns its current value."""
        if name not in self._values:
            self._values[name] = default
            self._listeners[name] = []
        return self._values[name]

    def _check(self, name: str) -> None:
        if name not in self._values:
            raise KeyError(f"unknown setting '{name}'")

    def get(self, name: str) -> Any:
        self._check(name)
        return self._values[name]

    def set(self, name: str, value: Any) -> bool:
        """
        Set a value. Listeners are only notified when the value differs from
        the current one. Returns True when the value changed.
        """
        self._check(name)
        if self._values[name] == value:
            return False
        self._values[name] = value
        logger.debug(f"setting {name} changed to {value!r}")
        for listener in list(self._listeners[name]):
            listener(value)
        return True

    def on(self, name: str, callback: Callable[[Any], None], immediate: bool = False) -> None:
        """Register a change listener, optionally calling it once right away."""
        self._check(name)
        self._listeners[name].append(callback)
        if immediate:
            callback(self._values[name])

"""Dispatch tables for remote methods and desired-property patches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

_LOGGER = logging.getLogger(__name__)

STATUS_OK = 200
STATUS_BAD_REQUEST = 400
STATUS_NOT_FOUND = 404
STATUS_CONFLICT = 409
STATUS_ERROR = 500


@dataclass(frozen=True)
class CommandResult:
    """Status code plus JSON payload returned to the caller of a method."""

    status: int
    payload: Dict[str, Any] = field(default_factory=dict)


CommandHandler = Callable[[Any], CommandResult]
PropertyHandler = Callable[[Any], None]


class CommandTable:
    """Named remote methods, each bound to a handler returning a CommandResult."""

    __slots__ = ("_device_id", "_handlers")

    def __init__(self, device_id: str) -> None:
        self._device_id = device_id
        self._handlers: Dict[str, CommandHandler] = {}

    def register(self, name: str, handler: CommandHandler) -> None:
        self._handlers[name] = handler

    def dispatch(self, name: str, payload: Any) -> CommandResult:
        """Run the handler for ``name``.

        Unknown names and failing handlers produce an error result; this
        never raises.
        """
        handler = self._handlers.get(name)
        if handler is None:
            _LOGGER.warning(f"[{self._device_id}] Unknown method '{name}'")
            return CommandResult(STATUS_NOT_FOUND, {"error": f"Method '{name}' not handled"})

        _LOGGER.info(f"[{self._device_id}] Method '{name}' invoked")
        try:
            return handler(payload)
        except Exception as exc:
            _LOGGER.exception(f"[{self._device_id}] Method '{name}' failed: {exc}")
            return CommandResult(STATUS_ERROR, {"error": str(exc)})


class DesiredPropertyTable:
    """Desired-property keys bound to handlers receiving the key's value."""

    __slots__ = ("_device_id", "_handlers")

    def __init__(self, device_id: str) -> None:
        self._device_id = device_id
        self._handlers: Dict[str, PropertyHandler] = {}

    def register(self, key: str, handler: PropertyHandler) -> None:
        self._handlers[key] = handler

    def dispatch(self, patch: Dict[str, Any]) -> List[str]:
        """Apply a desired patch; returns the keys that had a handler."""
        handled = []
        for key, value in patch.items():
            if key.startswith("$"):
                continue
            handler = self._handlers.get(key)
            if handler is None:
                if _LOGGER.isEnabledFor(logging.DEBUG):
                    _LOGGER.debug("[%s] Ignoring desired property '%s'", self._device_id, key)
                continue
            try:
                handler(value)
            except Exception as exc:
                _LOGGER.exception(f"[{self._device_id}] Desired property '{key}' failed: {exc}")
                continue
            handled.append(key)
        return handled

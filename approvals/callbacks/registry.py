"""
Callback dispatch registry.

Maps ``"<event>:<entityType>"`` (e.g. ``onApprove:SOLUTION_CONFIGURATION``)
to a handler.  One registry is built in ``create_app`` and kept in
``app.extensions["callback_registry"]``; nothing reads it as a module global.

Usage:
    registry = CallbackRegistry()
    registry.register("onApprove:SOLUTION_CONFIGURATION", SolutionActivationHandler(...))
    handler = registry.get_handler("onApprove", "SOLUTION_CONFIGURATION")
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


def handler_key(event: str, entity_type: str) -> str:
    return f"{event}:{entity_type}"


class CallbackRegistry:
    def __init__(self):
        self._handlers: dict[str, object] = {}
        self._lock = threading.Lock()

    def register(self, key: str, handler) -> None:
        if ":" not in key:
            raise ValueError(f"handler key must look like '<event>:<entityType>', got {key!r}")
        with self._lock:
            if key in self._handlers:
                logger.warning("Replacing workflow handler %s", key)
            self._handlers[key] = handler
        logger.info("Registered workflow handler %s → %s", key, type(handler).__name__)

    def unregister(self, key: str) -> None:
        with self._lock:
            self._handlers.pop(key, None)
        logger.info("Unregistered workflow handler %s", key)

    def get_handler(self, event: str, entity_type: str):
        """Handler for the pair, or None."""
        return self._handlers.get(handler_key(event, entity_type))

    def get_by_key(self, key: str):
        return self._handlers.get(key)

    def has_handler(self, event: str, entity_type: str) -> bool:
        return handler_key(event, entity_type) in self._handlers

    def registered_handlers(self) -> list[str]:
        return sorted(self._handlers)

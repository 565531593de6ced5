"""Utility methods."""

import logging
import re
from collections.abc import Callable
from typing import List

_LOGGER = logging.getLogger(__name__)

def slugify_device_id(name: str) -> str:
    """Lowercase identifier safe for MQTT topics (e.g. "Living Room" -> "living_room")."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")
    return slug or "chromecast"


class ListenerSet:
    """Callbacks that can be removed individually or all at once."""

    def __init__(self) -> None:
        self._listeners: List[Callable[[], None]] = []

    def add(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def clear(self) -> None:
        self._listeners.clear()

    def fire(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                _LOGGER.exception("Error in close listener")

    def __len__(self) -> int:
        return len(self._listeners)

"""
MPRIS player facade over the connection state machine.

Desktop method calls arrive here (already on the asyncio loop), pass a
capability check against the joined player and are forwarded to the state
machine. Absent capabilities are not errors: the call is logged and dropped.

Status events from the state machine go through the translator; the
resulting snapshot replaces the current one and only the changed
properties are broadcast.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from .event_bus import BridgeEvent, EventBus, EventHandler, subscribe
from .models import (
    TRACK_ID,
    Capability,
    DesktopProperties,
    SessionDescriptor,
    StatusSnapshot,
)
from .state_machine import ConnectionStateMachine
from .translator import Translation, diff, translate

_LOGGER = logging.getLogger(__name__)

PLAYER_INTERFACE = "org.mpris.MediaPlayer2.Player"


class DesktopTransport(ABC):
    """Desktop side of the bridge (the session bus in production)."""

    @abstractmethod
    def request_name(self) -> None:
        pass

    @abstractmethod
    def release_name(self) -> None:
        pass

    @abstractmethod
    def emit_properties_changed(self, interface: str, changed: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def emit_seeked(self, position: int) -> None:
        pass


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class BridgeAdapter(EventHandler):
    def __init__(
        self,
        event_bus: EventBus,
        machine: ConnectionStateMachine,
        transport: DesktopTransport,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.machine = machine
        self.transport = transport
        self._clock = clock

        self.properties = DesktopProperties()
        self.last_sync_ms: float = 0

        super().__init__(event_bus)

    # -------------------------------------------------------------------------
    # State machine events
    # -------------------------------------------------------------------------

    @subscribe(BridgeEvent.CONNECTED)
    def on_connected(self, session: Optional[SessionDescriptor]) -> None:
        if session is not None:
            _LOGGER.info("Exporting player for %s", session.display_name or session.app_id)
        self.transport.request_name()

        capabilities = self.machine.capabilities
        self._replace(
            dataclasses.replace(
                self.properties,
                can_go_next=Capability.NEXT in capabilities,
                can_go_previous=Capability.PREVIOUS in capabilities,
            )
        )

    @subscribe(BridgeEvent.DISCONNECTED)
    def on_disconnected(self, _payload: Any = None) -> None:
        result = translate(self.properties, StatusSnapshot(), self._clock(), self.last_sync_ms)
        self._replace(
            dataclasses.replace(result.properties, can_go_next=False, can_go_previous=False)
        )
        self.transport.release_name()

    @subscribe(BridgeEvent.STATUS)
    def on_status(self, snapshot: StatusSnapshot) -> None:
        self.apply(translate(self.properties, snapshot, self._clock(), self.last_sync_ms))

    def apply(self, result: Translation) -> None:
        self._publish(result.properties, result.changed)
        if result.seeked is not None:
            self.last_sync_ms = result.seeked.baseline_ms
            self._emit("Seeked", result.seeked.position)
            self.transport.emit_seeked(result.seeked.position)

    def _replace(self, properties: DesktopProperties) -> None:
        self._publish(properties, diff(self.properties, properties))

    def _publish(self, properties: DesktopProperties, changed) -> None:
        self.properties = properties
        if not changed:
            return
        values = {name: properties.get(name) for name in changed}
        self._emit("PropertiesChanged", values)
        self.transport.emit_properties_changed(PLAYER_INTERFACE, values)
        self.event_bus.publish(BridgeEvent.PROPERTIES_CHANGED, values)

    # -------------------------------------------------------------------------
    # org.mpris.MediaPlayer2.Player methods
    # -------------------------------------------------------------------------

    def next(self) -> None:
        self._received("Next")
        if self._supports(Capability.NEXT):
            self.machine.next()

    def previous(self) -> None:
        self._received("Previous")
        if self._supports(Capability.PREVIOUS):
            self.machine.previous()

    def pause(self) -> None:
        self._received("Pause")
        if self._supports(Capability.PAUSE):
            self.machine.pause()

    def play_pause(self) -> None:
        self._received("PlayPause")
        if not (self._supports(Capability.PLAY) and self._supports(Capability.PAUSE)):
            return
        if self.properties.can_play:
            self.machine.play()
        else:
            self.machine.pause()

    def stop(self) -> None:
        self._received("Stop")
        if self._supports(Capability.STOP):
            self.machine.stop()

    def play(self) -> None:
        self._received("Play")
        if self._supports(Capability.PLAY):
            self.machine.play()

    def seek(self, offset: int) -> None:
        """Relative seek, offset in microseconds."""
        self._received("Seek", offset)
        if self._supports(Capability.SEEK):
            self.machine.seek(max(0, self.properties.position + int(offset)))

    def set_position(self, track_id: str, position: int) -> None:
        self._received("SetPosition", track_id, position)
        if not self._supports(Capability.SEEK):
            return
        if str(track_id) != TRACK_ID:
            _LOGGER.debug("SetPosition for stale track %s ignored", track_id)
            return
        if position < 0:
            _LOGGER.debug("SetPosition to negative position ignored")
            return
        self.machine.seek(int(position))

    def open_uri(self, uri: str) -> None:
        self._received("OpenUri", uri)
        if self._supports(Capability.OPEN):
            self.machine.open_uri(uri)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _supports(self, capability: Capability) -> bool:
        if capability in self.machine.capabilities:
            return True
        _LOGGER.warning("`%s` is not supported by player", capability.value)
        return False

    @staticmethod
    def _received(method: str, *params: Any) -> None:
        _LOGGER.info(
            "received dbus call: interface=`%s` method=`%s` parameters=[%s]",
            PLAYER_INTERFACE,
            method,
            ", ".join(str(p) for p in params),
        )

    @staticmethod
    def _emit(signal: str, *params: Any) -> None:
        _LOGGER.debug(
            "emit dbus signal: interface=`%s` signal=`%s` parameters=[%s]",
            PLAYER_INTERFACE,
            signal,
            ", ".join(str(p) for p in params),
        )

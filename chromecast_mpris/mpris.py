"""
MPRIS export on the D-Bus session bus.

dbus-python dispatches on a GLib main loop, which runs in a daemon thread:
- incoming method calls are handed to the BridgeAdapter on the asyncio loop
- outgoing signals and name requests are queued onto the GLib thread
- property reads use the adapter's current (immutable) snapshot directly
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import dbus
import dbus.bus
import dbus.mainloop.glib
import dbus.service
from gi.repository import GLib

from .bridge import PLAYER_INTERFACE, DesktopTransport
from .models import PROPERTY_SIGNATURES

if TYPE_CHECKING:
    from .bridge import BridgeAdapter

_LOGGER = logging.getLogger(__name__)

OBJECT_PATH = "/org/mpris/MediaPlayer2"
ROOT_INTERFACE = "org.mpris.MediaPlayer2"
BUS_NAME_PREFIX = "org.mpris.MediaPlayer2."


# -----------------------------------------------------------------------------
# Type conversion
# -----------------------------------------------------------------------------

def _metadata_to_dbus(metadata: Dict[str, Any]) -> dbus.Dictionary:
    out: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key == "mpris:trackid":
            out[key] = dbus.ObjectPath(value)
        elif key == "mpris:length":
            out[key] = dbus.Int64(value)
        else:
            out[key] = value
    return dbus.Dictionary(out, signature="sv")


def to_dbus(signature: str, value: Any) -> Any:
    """Converts a property value to the D-Bus type of its signature."""
    if signature == "s":
        return dbus.String(value)
    if signature == "d":
        return dbus.Double(value)
    if signature == "b":
        return dbus.Boolean(value)
    if signature == "x":
        return dbus.Int64(value)
    if signature == "a{sv}":
        return _metadata_to_dbus(value)
    if signature == "as":
        return dbus.Array(value, signature="s")
    raise ValueError(f"Unsupported signature {signature!r}")


def player_properties_to_dbus(values: Dict[str, Any]) -> dbus.Dictionary:
    return dbus.Dictionary(
        {name: to_dbus(PROPERTY_SIGNATURES[name], value) for name, value in values.items()},
        signature="sv",
    )


# -----------------------------------------------------------------------------
# Exported object
# -----------------------------------------------------------------------------

class MprisObject(dbus.service.Object):
    """org.mpris.MediaPlayer2 + org.mpris.MediaPlayer2.Player at /org/mpris/MediaPlayer2."""

    def __init__(self, bus: dbus.Bus, transport: "MprisTransport") -> None:
        super().__init__(bus, OBJECT_PATH)
        self._transport = transport

    # --- org.mpris.MediaPlayer2 ---

    @dbus.service.method(ROOT_INTERFACE)
    def Raise(self):
        pass

    @dbus.service.method(ROOT_INTERFACE)
    def Quit(self):
        pass

    # --- org.mpris.MediaPlayer2.Player ---

    @dbus.service.method(PLAYER_INTERFACE)
    def Next(self):
        self._transport.dispatch("next")

    @dbus.service.method(PLAYER_INTERFACE)
    def Previous(self):
        self._transport.dispatch("previous")

    @dbus.service.method(PLAYER_INTERFACE)
    def Pause(self):
        self._transport.dispatch("pause")

    @dbus.service.method(PLAYER_INTERFACE)
    def PlayPause(self):
        self._transport.dispatch("play_pause")

    @dbus.service.method(PLAYER_INTERFACE)
    def Stop(self):
        self._transport.dispatch("stop")

    @dbus.service.method(PLAYER_INTERFACE)
    def Play(self):
        self._transport.dispatch("play")

    @dbus.service.method(PLAYER_INTERFACE, in_signature="x")
    def Seek(self, offset):
        self._transport.dispatch("seek", int(offset))

    @dbus.service.method(PLAYER_INTERFACE, in_signature="ox")
    def SetPosition(self, track_id, position):
        self._transport.dispatch("set_position", str(track_id), int(position))

    @dbus.service.method(PLAYER_INTERFACE, in_signature="s")
    def OpenUri(self, uri):
        self._transport.dispatch("open_uri", str(uri))

    @dbus.service.signal(PLAYER_INTERFACE, signature="x")
    def Seeked(self, position):
        pass

    # --- org.freedesktop.DBus.Properties ---

    @dbus.service.method(dbus.PROPERTIES_IFACE, in_signature="ss", out_signature="v")
    def Get(self, interface, prop):
        return self.GetAll(interface)[prop]

    @dbus.service.method(dbus.PROPERTIES_IFACE, in_signature="s", out_signature="a{sv}")
    def GetAll(self, interface):
        if interface == PLAYER_INTERFACE:
            return player_properties_to_dbus(self._transport.player_properties())
        if interface == ROOT_INTERFACE:
            return self._transport.root_properties()
        raise dbus.exceptions.DBusException(
            f"No such interface {interface}",
            name="org.freedesktop.DBus.Error.UnknownInterface",
        )

    @dbus.service.method(dbus.PROPERTIES_IFACE, in_signature="ssv")
    def Set(self, interface, prop, value):
        _LOGGER.warning("Ignoring write of read-only property %s.%s", interface, prop)

    @dbus.service.signal(dbus.PROPERTIES_IFACE, signature="sa{sv}as")
    def PropertiesChanged(self, interface, changed, invalidated):
        pass


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------

class MprisTransport(DesktopTransport):
    def __init__(self, loop: asyncio.AbstractEventLoop, name: str, identity: str) -> None:
        self.loop = loop
        self.bus_name = BUS_NAME_PREFIX + name
        self.identity = identity

        self._adapter: Optional["BridgeAdapter"] = None
        self._bus: Optional[dbus.Bus] = None
        self._object: Optional[MprisObject] = None
        self._glib_loop: Optional[GLib.MainLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._owns_name = False

    def start(self, adapter: "BridgeAdapter") -> None:
        """Exports the object and starts the GLib loop thread."""
        self._adapter = adapter
        dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
        self._bus = dbus.SessionBus()
        self._object = MprisObject(self._bus, self)

        self._glib_loop = GLib.MainLoop()
        self._thread = threading.Thread(target=self._glib_loop.run, name="mpris-glib", daemon=True)
        self._thread.start()
        _LOGGER.info("Exported MPRIS object at %s", OBJECT_PATH)

    def stop(self) -> None:
        if self._glib_loop is None:
            return
        self._on_glib(self._release_name)
        self._on_glib(self._glib_loop.quit)
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._glib_loop = None
        self._thread = None

    # -------------------------------------------------------------------------
    # DesktopTransport
    # -------------------------------------------------------------------------

    def request_name(self) -> None:
        self._on_glib(self._request_name)

    def release_name(self) -> None:
        self._on_glib(self._release_name)

    def emit_properties_changed(self, interface: str, changed: Dict[str, Any]) -> None:
        payload = player_properties_to_dbus(changed)
        self._on_glib(
            lambda: self._object.PropertiesChanged(interface, payload, dbus.Array([], signature="s"))
        )

    def emit_seeked(self, position: int) -> None:
        self._on_glib(lambda: self._object.Seeked(dbus.Int64(position)))

    # -------------------------------------------------------------------------
    # Called on the GLib thread
    # -------------------------------------------------------------------------

    def dispatch(self, method: str, *args: Any) -> None:
        """Hands a method call to the adapter on the asyncio loop."""
        if self._adapter is None:
            return
        self.loop.call_soon_threadsafe(getattr(self._adapter, method), *args)

    def player_properties(self) -> Dict[str, Any]:
        return self._adapter.properties.to_dict()

    def root_properties(self) -> dbus.Dictionary:
        return dbus.Dictionary(
            {
                "CanQuit": dbus.Boolean(False),
                "CanRaise": dbus.Boolean(False),
                "HasTrackList": dbus.Boolean(False),
                "Identity": dbus.String(self.identity),
                "SupportedUriSchemes": dbus.Array([], signature="s"),
                "SupportedMimeTypes": dbus.Array([], signature="s"),
            },
            signature="sv",
        )

    def _request_name(self) -> None:
        if self._owns_name or self._bus is None:
            return
        result = self._bus.request_name(self.bus_name, dbus.bus.NAME_FLAG_DO_NOT_QUEUE)
        if result in (dbus.bus.REQUEST_NAME_REPLY_PRIMARY_OWNER, dbus.bus.REQUEST_NAME_REPLY_ALREADY_OWNER):
            self._owns_name = True
            _LOGGER.info("Acquired bus name %s", self.bus_name)
        else:
            _LOGGER.warning("Bus name %s is owned by another process", self.bus_name)

    def _release_name(self) -> None:
        if not self._owns_name or self._bus is None:
            return
        self._owns_name = False
        self._bus.release_name(self.bus_name)
        _LOGGER.info("Released bus name %s", self.bus_name)

    def _on_glib(self, func: Callable[[], None]) -> None:
        def _once() -> bool:
            try:
                func()
            except dbus.exceptions.DBusException:
                _LOGGER.exception("D-Bus call failed")
            return False

        GLib.idle_add(_once)

"""
Receiver wire client backed by pychromecast.

pychromecast runs its socket client in its own thread; every callback it
makes (request responses, connection and receiver status updates) is
marshalled onto the asyncio loop before anything else happens.

- connect: build a Chromecast for the resolved host and wait until ready
- list_sessions: refresh receiver status, report the running app
- join: refresh media status of the running app, return a CastPlayerHandle
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, FrozenSet, List, Optional

import pychromecast
from pychromecast.controllers.media import MediaStatus, MediaStatusListener
from pychromecast.controllers.receiver import CastStatus, CastStatusListener
from pychromecast.error import PyChromecastError
from pychromecast.socket_client import (
    CONNECTION_STATUS_DISCONNECTED,
    CONNECTION_STATUS_FAILED,
    CONNECTION_STATUS_LOST,
    ConnectionStatus,
    ConnectionStatusListener,
)

from .base_receiver import CloseListener, PlayerHandle, ReceiverClient, RemoveListener
from .errors import OperationError
from .models import (
    Capability,
    DeviceAddress,
    MediaInfo,
    SessionDescriptor,
    StatusSnapshot,
    VolumeInfo,
)
from .util import ListenerSet

_LOGGER = logging.getLogger(__name__)

_CLOSED_CONNECTION_STATES = frozenset(
    {CONNECTION_STATUS_DISCONNECTED, CONNECTION_STATUS_FAILED, CONNECTION_STATUS_LOST}
)

# Every joined media session can do these.
_BASE_CAPABILITIES = frozenset(
    {Capability.PLAY, Capability.PAUSE, Capability.STOP, Capability.SEEK}
)


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def session_from_cast_status(status: Optional[CastStatus]) -> Optional[SessionDescriptor]:
    if status is None or not status.app_id:
        return None
    return SessionDescriptor(
        app_id=status.app_id,
        display_name=status.display_name or "",
        session_id=status.session_id or "",
    )


def snapshot_from_media_status(status: Optional[MediaStatus]) -> StatusSnapshot:
    if status is None:
        return StatusSnapshot()

    media = None
    if status.content_id is not None or status.duration is not None:
        media = MediaInfo(duration_seconds=status.duration)

    volume = None
    if status.volume_level is not None:
        volume = VolumeInfo(level=status.volume_level)

    return StatusSnapshot(
        player_state=status.player_state,
        current_time_seconds=status.current_time,
        media=media,
        volume=volume,
        playback_rate=status.playback_rate,
    )


def capabilities_from_media_status(status: Optional[MediaStatus]) -> FrozenSet[Capability]:
    capabilities = set(_BASE_CAPABILITIES)
    if status is not None:
        if status.supports_queue_next:
            capabilities.add(Capability.NEXT)
        if status.supports_queue_prev:
            capabilities.add(Capability.PREVIOUS)
    return frozenset(capabilities)


# ---------------------------------------------------------------------------
# Listeners (called on the pychromecast socket thread)
# ---------------------------------------------------------------------------

class _ConnectionListener(ConnectionStatusListener):
    def __init__(self, client: "CastReceiverClient") -> None:
        self._client = client

    def new_connection_status(self, status: ConnectionStatus) -> None:
        self._client._threadsafe(self._client._on_connection_status, status.status)


class _ReceiverListener(CastStatusListener):
    def __init__(self, client: "CastReceiverClient") -> None:
        self._client = client

    def new_cast_status(self, status: CastStatus) -> None:
        self._client._threadsafe(self._client._on_cast_status, status)


class _MediaListener(MediaStatusListener):
    def new_media_status(self, status: MediaStatus) -> None:
        # Status is pulled by polling; pushes are only logged.
        _LOGGER.debug("Media status pushed: player_state=%s", status.player_state)

    def load_media_failed(self, queue_item_id: int, error_code: int) -> None:
        _LOGGER.warning("Receiver failed to load media: item=%s error=%s", queue_item_id, error_code)


# ---------------------------------------------------------------------------
# Player handle
# ---------------------------------------------------------------------------

class CastPlayerHandle(PlayerHandle):
    """Media channel of one joined receiver session."""

    def __init__(
        self,
        client: "CastReceiverClient",
        cast: pychromecast.Chromecast,
        session: SessionDescriptor,
        capabilities: FrozenSet[Capability],
    ) -> None:
        super().__init__(session, capabilities)
        self._client = client
        self._media = cast.media_controller
        self._close_listeners = ListenerSet()
        self.closed = False

    async def get_status(self) -> StatusSnapshot:
        await self._client.request(self._media.update_status)
        return snapshot_from_media_status(self._media.status)

    # pychromecast blocks until the receiver acknowledges each command.

    async def play(self) -> None:
        await asyncio.to_thread(self._media.play)

    async def pause(self) -> None:
        await asyncio.to_thread(self._media.pause)

    async def stop(self) -> None:
        await asyncio.to_thread(self._media.stop)

    async def seek(self, seconds: float) -> None:
        await asyncio.to_thread(self._media.seek, seconds)

    async def next(self) -> None:
        await asyncio.to_thread(self._media.queue_next)

    async def previous(self) -> None:
        await asyncio.to_thread(self._media.queue_prev)

    async def open_uri(self, uri: str) -> None:
        raise OperationError("loading media into a joined session is not supported")

    def add_close_listener(self, listener: CloseListener) -> RemoveListener:
        return self._close_listeners.add(listener)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._close_listeners.clear()
        self._client._forget_player(self)

    def _session_ended(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._client._forget_player(self)
        self._close_listeners.fire()
        self._close_listeners.clear()


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class CastReceiverClient(ReceiverClient):
    """
    Receiver connection over pychromecast.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, timeout: float) -> None:
        self._loop = loop
        self._timeout = timeout

        self._cast: Optional[pychromecast.Chromecast] = None
        self._player: Optional[CastPlayerHandle] = None
        self._close_listeners = ListenerSet()
        self._closed = False

    # -----------------------------------------------------------------------
    # ReceiverClient
    # -----------------------------------------------------------------------

    async def connect(self, address: DeviceAddress) -> None:
        host = (address.host, address.port, address.uuid, address.model_name, address.friendly_name)
        cast = await asyncio.to_thread(
            pychromecast.get_chromecast_from_host, host, tries=1, timeout=self._timeout
        )
        if self._closed:
            cast.disconnect(timeout=0)
            raise OperationError("client closed while connecting")

        self._cast = cast
        cast.register_connection_listener(_ConnectionListener(self))
        cast.register_status_listener(_ReceiverListener(self))
        cast.media_controller.register_status_listener(_MediaListener())

        await asyncio.to_thread(cast.wait, self._timeout)
        if self._closed:
            raise OperationError("client closed while connecting")
        if cast.status is None:
            raise OperationError(f"receiver at {address} did not report status")
        _LOGGER.debug("Receiver ready: %s (%s)", cast.cast_info.friendly_name, address)

    async def list_sessions(self) -> List[SessionDescriptor]:
        cast = self._require_cast()
        await self.request(cast.socket_client.receiver_controller.update_status)
        session = session_from_cast_status(cast.status)
        return [session] if session is not None else []

    async def join(self, session: SessionDescriptor) -> CastPlayerHandle:
        cast = self._require_cast()
        running = session_from_cast_status(cast.status)
        if running is None or running.session_id != session.session_id:
            raise OperationError(f"session {session.session_id or session.app_id} is not running")

        media = cast.media_controller
        await self.request(media.update_status)

        player = CastPlayerHandle(self, cast, session, capabilities_from_media_status(media.status))
        if self._player is not None:
            self._player.close()
        self._player = player
        return player

    def add_close_listener(self, listener: CloseListener) -> RemoveListener:
        return self._close_listeners.add(listener)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_listeners.clear()

        player, self._player = self._player, None
        if player is not None:
            player.close()

        cast, self._cast = self._cast, None
        if cast is not None:
            try:
                cast.disconnect(timeout=0)
            except Exception:
                _LOGGER.debug("Receiver disconnect failed", exc_info=True)

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    async def request(self, send: Callable[..., Any]) -> Any:
        """Send a request that reports back through pychromecast's callback_function."""
        future = self._loop.create_future()

        def _resolve(sent: bool, response: Optional[dict]) -> None:
            if future.done():
                return
            if sent:
                future.set_result(response)
            else:
                future.set_exception(OperationError(f"receiver rejected request: {response!r}"))

        def _on_response(sent: bool, response: Optional[dict]) -> None:
            self._threadsafe(_resolve, sent, response)

        try:
            send(callback_function=_on_response)
        except PyChromecastError as e:
            raise OperationError(str(e) or type(e).__name__) from e
        return await future

    # -----------------------------------------------------------------------
    # Callbacks (on the loop)
    # -----------------------------------------------------------------------

    def _threadsafe(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown.
            pass

    def _on_connection_status(self, status: str) -> None:
        if self._closed:
            return
        _LOGGER.debug("Receiver connection status: %s", status)
        if status in _CLOSED_CONNECTION_STATES:
            self._close_listeners.fire()

    def _on_cast_status(self, status: CastStatus) -> None:
        player = self._player
        if self._closed or player is None:
            return
        running = session_from_cast_status(status)
        if running is None or running.is_backdrop or running.session_id != player.session.session_id:
            _LOGGER.debug("Joined session %s ended", player.session.session_id)
            self._player = None
            player._session_ended()

    def _forget_player(self, player: CastPlayerHandle) -> None:
        if self._player is player:
            self._player = None

    def _require_cast(self) -> pychromecast.Chromecast:
        if self._cast is None or self._closed:
            raise OperationError("not connected")
        return self._cast

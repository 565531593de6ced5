"""
Receiver connection lifecycle.

    IDLE -> DISCOVERING -> CONNECTING -> FINDING_SESSION -> JOINING_SESSION -> POLLING

Failure edges:
- CONNECTING      -> DISCOVERING
- FINDING_SESSION -> IDLE
- JOINING_SESSION -> FINDING_SESSION
- POLLING         -> IDLE (status request failed); FINDING_SESSION when the
                     receiver ends the session on its own
- any connected phase -> IDLE when the receiver connection drops
- IDLE            -> DISCOVERING after retry_interval while the machine runs

Each phase owns a _PhaseScope: at most one pending timer plus the teardown
for every listener it registered on entry. Leaving a phase closes its scope
before the next phase is entered, so a late response to a superseded request
is dropped instead of being handled by the new phase. In-flight requests are
not aborted.

Every request to a collaborator is bounded by connect_timeout; expiry is
handled exactly like an error response.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set

from .base_receiver import PlayerHandle, ReceiverClient, ReceiverDiscovery
from .config import CastConfig
from .errors import BridgeError, OperationError, RequestTimeout, UnsolicitedClose
from .event_bus import BridgeEvent, EventBus
from .models import (
    US_PER_SECOND,
    Capability,
    ConnectionPhase,
    DeviceAddress,
    SessionDescriptor,
    StatusSnapshot,
)

_LOGGER = logging.getLogger(__name__)


def select_session(sessions: Iterable[SessionDescriptor]) -> Optional[SessionDescriptor]:
    """First session that is not the backdrop app, in the order given."""
    for session in sessions:
        if session.app_id and not session.is_backdrop:
            return session
    return None


# ---------------------------------------------------------------------------
# Phase scope
# ---------------------------------------------------------------------------

class _PhaseScope:
    """Resources owned by the active phase."""

    def __init__(self, loop: asyncio.AbstractEventLoop, phase: ConnectionPhase) -> None:
        self.loop = loop
        self.phase = phase
        self.active = True
        self.request: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cleanups: List[Callable[[], None]] = []

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    def start_timer(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel_timer()
        self._timer = self.loop.call_later(delay, self._fire, callback)

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def on_exit(self, cleanup: Callable[[], None]) -> None:
        self._cleanups.append(cleanup)

    def bind(self, callback: Callable[..., None]) -> Callable[..., None]:
        """Wrap a collaborator callback: deferred to the loop, dropped once the phase is left."""

        def _dispatch(*args: Any) -> None:
            self.loop.call_soon(self._run, callback, args)

        return _dispatch

    def close(self) -> None:
        self.active = False
        self.request = None
        self.cancel_timer()
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in reversed(cleanups):
            try:
                cleanup()
            except Exception:
                _LOGGER.exception("Error while leaving phase %s", self.phase.value)

    def _fire(self, callback: Callable[[], None]) -> None:
        self._timer = None
        if self.active:
            callback()

    def _run(self, callback: Callable[..., None], args: tuple) -> None:
        if self.active:
            callback(*args)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class ConnectionStateMachine:
    """Discovers a receiver, joins its media session and polls its status.

    Publishes CONNECTED when a session has been joined, DISCONNECTED when it
    is left (for any reason), STATUS for every successful poll and
    PHASE_CHANGED after every transition.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        discovery: ReceiverDiscovery,
        client_factory: Callable[[], ReceiverClient],
        config: CastConfig,
    ) -> None:
        self._loop = loop
        self.event_bus = event_bus
        self._discovery = discovery
        self._client_factory = client_factory
        self._config = config

        self._phase = ConnectionPhase.IDLE
        self._scope = _PhaseScope(loop, ConnectionPhase.IDLE)
        self._running = False

        self._address: Optional[DeviceAddress] = None
        self._client: Optional[ReceiverClient] = None
        self._session: Optional[SessionDescriptor] = None
        self._player: Optional[PlayerHandle] = None

        # Transitions requested while one is in progress run after it.
        self._transitioning = False
        self._pending: Deque[ConnectionPhase] = deque()

        self._tasks: Set[asyncio.Task] = set()

        self._entries: Dict[ConnectionPhase, Callable[[_PhaseScope], None]] = {
            ConnectionPhase.IDLE: self._enter_idle,
            ConnectionPhase.DISCOVERING: self._enter_discovering,
            ConnectionPhase.CONNECTING: self._enter_connecting,
            ConnectionPhase.FINDING_SESSION: self._enter_finding_session,
            ConnectionPhase.JOINING_SESSION: self._enter_joining_session,
            ConnectionPhase.POLLING: self._enter_polling,
        }

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Optional[DeviceAddress]:
        return self._address

    @property
    def client(self) -> Optional[ReceiverClient]:
        return self._client

    @property
    def session(self) -> Optional[SessionDescriptor]:
        return self._session

    @property
    def player(self) -> Optional[PlayerHandle]:
        return self._player

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        if self._player is None:
            return frozenset()
        return self._player.capabilities

    # -----------------------------------------------------------------------
    # Public control
    # -----------------------------------------------------------------------

    def connect(self) -> None:
        self._running = True
        if self._phase is ConnectionPhase.IDLE:
            self._transition(ConnectionPhase.DISCOVERING)
        else:
            _LOGGER.debug("connect() ignored in phase %s", self._phase.value)

    def disconnect(self) -> None:
        self._running = False
        self._transition(ConnectionPhase.IDLE)

    async def shutdown(self) -> None:
        """Disconnect and cancel every request still in flight."""
        self.disconnect()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def play(self) -> None:
        self._command(Capability.PLAY, "play", lambda player: player.play())

    def pause(self) -> None:
        self._command(Capability.PAUSE, "pause", lambda player: player.pause())

    def stop(self) -> None:
        self._command(Capability.STOP, "stop", lambda player: player.stop())

    def seek(self, position: int) -> None:
        """Seek to an absolute position in microseconds."""
        seconds = max(0, position) / US_PER_SECOND
        self._command(Capability.SEEK, "seek", lambda player: player.seek(seconds))

    def next(self) -> None:
        self._command(Capability.NEXT, "next", lambda player: player.next())

    def previous(self) -> None:
        self._command(Capability.PREVIOUS, "previous", lambda player: player.previous())

    def open_uri(self, uri: str) -> None:
        self._command(Capability.OPEN, "open", lambda player: player.open_uri(uri))

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    def _transition(self, phase: ConnectionPhase) -> None:
        if self._transitioning:
            self._pending.append(phase)
            return

        self._transitioning = True
        try:
            self._pending.append(phase)
            while self._pending:
                self._switch(self._pending.popleft())
        finally:
            self._transitioning = False

    def _switch(self, phase: ConnectionPhase) -> None:
        old = self._scope
        _LOGGER.debug("transition from `%s` to `%s`", old.phase.value, phase.value)

        # Exit action of the old phase completes before the new one is entered.
        old.close()

        self._phase = phase
        self._scope = scope = _PhaseScope(self._loop, phase)
        self._entries[phase](scope)

        if scope.active:
            self.event_bus.publish(BridgeEvent.PHASE_CHANGED, phase)

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    def _request(
        self,
        scope: _PhaseScope,
        description: str,
        awaitable: Awaitable[Any],
        on_result: Callable[[Any], None],
        on_failure: Callable[[BridgeError], None],
        on_stale: Optional[Callable[[Any], None]] = None,
    ) -> None:
        """Run one collaborator request owned by scope, bounded by connect_timeout."""
        task = self._track(self._loop.create_task(awaitable))
        scope.request = task

        def _on_timeout() -> None:
            scope.request = None
            on_failure(
                RequestTimeout(f"{description} timed out after {self._config.connect_timeout_ms}ms")
            )

        scope.start_timer(self._config.connect_timeout, _on_timeout)

        def _on_done(done: asyncio.Task) -> None:
            if done.cancelled():
                return
            error = done.exception()

            if not scope.active or scope.request is not done:
                _LOGGER.debug("Dropping late response to %s", description)
                if error is None and on_stale is not None:
                    on_stale(done.result())
                return

            scope.request = None
            scope.cancel_timer()
            if error is None:
                on_result(done.result())
            elif isinstance(error, BridgeError):
                on_failure(error)
            else:
                on_failure(OperationError(f"{description} failed: {error!r}"))

        task.add_done_callback(_on_done)

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -----------------------------------------------------------------------
    # Phases
    # -----------------------------------------------------------------------

    def _enter_idle(self, scope: _PhaseScope) -> None:
        self._release_player()
        self._release_client()
        self._address = None
        self._session = None

        if self._running:
            _LOGGER.info("Restarting discovery in %dms", self._config.retry_interval_ms)
            scope.start_timer(
                self._config.retry_interval,
                lambda: self._transition(ConnectionPhase.DISCOVERING),
            )

    def _enter_discovering(self, scope: _PhaseScope) -> None:
        _LOGGER.info("Looking for a receiver")
        try:
            self._discovery.start(scope.bind(self._on_found))
        except Exception:
            _LOGGER.exception("Cannot start receiver discovery")
            scope.start_timer(
                self._config.retry_interval,
                lambda: self._transition(ConnectionPhase.DISCOVERING),
            )
            return
        scope.on_exit(self._discovery.stop)

    def _on_found(self, address: DeviceAddress) -> None:
        _LOGGER.info("Found receiver: address=`%s` name=`%s`", address, address.friendly_name)
        self._address = address
        self._transition(ConnectionPhase.CONNECTING)

    def _enter_connecting(self, scope: _PhaseScope) -> None:
        _LOGGER.info("Connecting to receiver: address=`%s`", self._address)
        self._client = client = self._client_factory()
        self._request(
            scope,
            "connect",
            client.connect(self._address),
            on_result=lambda _: self._on_client_connected(),
            on_failure=self._on_connect_failed,
        )

    def _on_client_connected(self) -> None:
        _LOGGER.info("Connected to receiver")
        self._transition(ConnectionPhase.FINDING_SESSION)

    def _on_connect_failed(self, error: BridgeError) -> None:
        _LOGGER.warning("Cannot connect to receiver: %s", error)
        self._release_client()
        self._transition(ConnectionPhase.DISCOVERING)

    def _enter_finding_session(self, scope: _PhaseScope) -> None:
        self._session = None
        self._watch_client(scope)
        self._find_session(scope)

    def _find_session(self, scope: _PhaseScope) -> None:
        _LOGGER.debug("Requesting session list")
        self._request(
            scope,
            "list sessions",
            self._client.list_sessions(),
            on_result=lambda sessions: self._on_sessions(scope, sessions),
            on_failure=self._on_find_session_failed,
        )

    def _on_sessions(self, scope: _PhaseScope, sessions: List[SessionDescriptor]) -> None:
        session = select_session(sessions or [])
        if session is None:
            _LOGGER.debug(
                "No eligible session; retrying in %dms", self._config.retry_interval_ms
            )
            scope.start_timer(self._config.retry_interval, lambda: self._find_session(scope))
            return

        _LOGGER.info(
            "Found session: appId=`%s` displayName=`%s`", session.app_id, session.display_name
        )
        self._session = session
        self._transition(ConnectionPhase.JOINING_SESSION)

    def _on_find_session_failed(self, error: BridgeError) -> None:
        _LOGGER.warning("Cannot find sessions: %s", error)
        self._transition(ConnectionPhase.IDLE)

    def _enter_joining_session(self, scope: _PhaseScope) -> None:
        self._watch_client(scope)
        _LOGGER.info(
            "Joining session: appId=`%s` displayName=`%s`",
            self._session.app_id,
            self._session.display_name,
        )
        self._request(
            scope,
            "join session",
            self._client.join(self._session),
            on_result=self._on_joined,
            on_failure=self._on_join_failed,
            on_stale=self._close_stale_player,
        )

    def _on_joined(self, player: PlayerHandle) -> None:
        _LOGGER.info(
            "Joined session: capabilities=%s",
            sorted(capability.value for capability in player.capabilities),
        )
        self._player = player
        self._transition(ConnectionPhase.POLLING)

    def _on_join_failed(self, error: BridgeError) -> None:
        _LOGGER.warning("Cannot join session: %s", error)
        self._transition(ConnectionPhase.FINDING_SESSION)

    def _enter_polling(self, scope: _PhaseScope) -> None:
        # Registered first so it runs last on exit.
        scope.on_exit(self._leave_session)
        self._watch_client(scope)
        scope.on_exit(self._player.add_close_listener(scope.bind(self._on_player_closed)))

        _LOGGER.info("Begin status polling: interval=`%dms`", self._config.poll_interval_ms)
        self._poll(scope)
        self.event_bus.publish(BridgeEvent.CONNECTED, self._session)

    def _poll(self, scope: _PhaseScope) -> None:
        self._request(
            scope,
            "get status",
            self._player.get_status(),
            on_result=lambda status: self._on_status(scope, status),
            on_failure=self._on_poll_failed,
        )

    def _on_status(self, scope: _PhaseScope, status: Optional[StatusSnapshot]) -> None:
        scope.start_timer(self._config.poll_interval, lambda: self._poll(scope))
        self.event_bus.publish(BridgeEvent.STATUS, status or StatusSnapshot())

    def _on_poll_failed(self, error: BridgeError) -> None:
        _LOGGER.warning("Cannot update status: %s", error)
        self._transition(ConnectionPhase.IDLE)

    def _on_player_closed(self) -> None:
        _LOGGER.warning("Leaving session: %s", UnsolicitedClose("session closed by receiver"))
        self._transition(ConnectionPhase.FINDING_SESSION)

    def _leave_session(self) -> None:
        self._release_player()
        self.event_bus.publish(BridgeEvent.DISCONNECTED)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _watch_client(self, scope: _PhaseScope) -> None:
        scope.on_exit(self._client.add_close_listener(scope.bind(self._on_client_closed)))

    def _on_client_closed(self) -> None:
        error = UnsolicitedClose(f"receiver connection closed in phase {self._phase.value}")
        _LOGGER.warning("Dropping receiver: %s", error)
        self._transition(ConnectionPhase.IDLE)

    def _release_player(self) -> None:
        player, self._player = self._player, None
        if player is not None:
            try:
                player.close()
            except Exception:
                _LOGGER.exception("Error closing player")

    def _release_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                client.close()
            except Exception:
                _LOGGER.exception("Error closing receiver connection")

    @staticmethod
    def _close_stale_player(player: PlayerHandle) -> None:
        try:
            player.close()
        except Exception:
            _LOGGER.exception("Error closing late player")

    def _command(
        self,
        capability: Capability,
        name: str,
        call: Callable[[PlayerHandle], Awaitable[None]],
    ) -> None:
        player = self._player
        if player is None:
            _LOGGER.debug("Ignoring `%s`: no joined session", name)
            return
        if not player.supports(capability):
            _LOGGER.warning("`%s` is not supported by player", name)
            return
        self._track(self._loop.create_task(self._run_command(name, call(player))))

    async def _run_command(self, name: str, awaitable: Awaitable[None]) -> None:
        try:
            await asyncio.wait_for(awaitable, self._config.connect_timeout)
        except asyncio.TimeoutError:
            _LOGGER.warning("`%s` timed out after %dms", name, self._config.connect_timeout_ms)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _LOGGER.warning("`%s` failed: %s", name, e)

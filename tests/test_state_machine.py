"""Tests for the receiver connection state machine."""

import asyncio

import pytest

from chromecast_mpris.errors import OperationError
from chromecast_mpris.event_bus import BridgeEvent
from chromecast_mpris.models import BACKDROP_APP_ID, Capability, ConnectionPhase, SessionDescriptor
from chromecast_mpris.state_machine import select_session

from fakes import ADDRESS, BACKDROP, FAST_TIMING, HANG, YOUTUBE, FakePlayer, Harness, settle

P = ConnectionPhase


def test_select_session_skips_backdrop() -> None:
    other = SessionDescriptor(app_id="CC1AD845", display_name="Default Media Receiver")

    assert select_session([BACKDROP, YOUTUBE]) == YOUTUBE
    assert select_session([YOUTUBE, BACKDROP]) == YOUTUBE
    assert select_session([YOUTUBE, other]) == YOUTUBE
    assert select_session([BACKDROP]) is None
    assert select_session([]) is None
    assert select_session([SessionDescriptor(app_id="")]) is None


# -----------------------------------------------------------------------------
# Happy path
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_reaches_polling() -> None:
    h = Harness()
    await h.polling()

    assert h.phases == [P.DISCOVERING, P.CONNECTING, P.FINDING_SESSION, P.JOINING_SESSION, P.POLLING]
    assert h.machine.address == ADDRESS
    assert h.machine.session == YOUTUBE
    assert h.machine.player is h.client.player
    assert h.machine.capabilities == h.client.player.capabilities
    assert h.published(BridgeEvent.CONNECTED) == [YOUTUBE]
    assert h.discovery.stops == 1

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_status_is_polled_repeatedly() -> None:
    h = Harness()
    await h.polling()
    await h.wait_until(lambda: len(h.published(BridgeEvent.STATUS)) >= 3)

    snapshot = h.published(BridgeEvent.STATUS)[0]
    assert snapshot.player_state == "PLAYING"
    assert h.machine.phase is P.POLLING

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_connect_is_ignored_unless_idle() -> None:
    h = Harness()
    h.machine.connect()
    h.machine.connect()

    assert h.discovery.starts == 1
    assert h.phases == [P.DISCOVERING]

    await h.machine.shutdown()


@pytest.mark.parametrize("sessions", [[BACKDROP, YOUTUBE], [YOUTUBE, BACKDROP]])
@pytest.mark.asyncio
async def test_eligible_session_regardless_of_order(sessions) -> None:
    h = Harness()
    h.next_client.responses["list_sessions"] = sessions
    await h.polling()

    assert h.machine.session == YOUTUBE
    assert ("join", YOUTUBE) in h.client.calls

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_no_eligible_session_relists_without_leaving_phase() -> None:
    h = Harness()
    client = h.next_client
    client.responses["list_sessions"] = [BACKDROP]
    h.machine.connect()
    h.discovery.find()

    await h.wait_until(lambda: client.count("list_sessions") >= 3)
    assert h.machine.phase is P.FINDING_SESSION
    assert h.machine.session is None
    assert h.phases.count(P.FINDING_SESSION) == 1

    client.responses["list_sessions"] = [BACKDROP, YOUTUBE]
    await h.wait_for_phase(P.POLLING)
    assert h.machine.session == YOUTUBE

    await h.machine.shutdown()


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------

# request -> (phase it is made in, phase entered on failure)
FAILURES = {
    "connect": (P.CONNECTING, P.DISCOVERING),
    "list_sessions": (P.FINDING_SESSION, P.IDLE),
    "join": (P.JOINING_SESSION, P.FINDING_SESSION),
    "get_status": (P.POLLING, P.IDLE),
}


@pytest.mark.parametrize("request_name", list(FAILURES))
@pytest.mark.parametrize("response", [HANG, OperationError("boom")], ids=["timeout", "error"])
@pytest.mark.asyncio
async def test_timeout_is_handled_like_error(request_name, response) -> None:
    h = Harness()
    if request_name == "get_status":
        h.next_client.player.responses["get_status"] = response
    else:
        h.next_client.responses[request_name] = response
    stage, expected = FAILURES[request_name]

    def phase_after_stage():
        phases = h.phases
        if stage not in phases:
            return None
        index = phases.index(stage)
        return phases[index + 1] if len(phases) > index + 1 else None

    h.machine.connect()
    h.discovery.find()
    await h.wait_until(lambda: phase_after_stage() is not None)

    assert phase_after_stage() is expected

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_connect_failure_closes_client_and_rediscovers() -> None:
    h = Harness()
    h.next_client.responses["connect"] = OperationError("refused")
    h.machine.connect()
    h.discovery.find()

    await h.wait_until(lambda: h.phases.count(P.DISCOVERING) == 2)
    assert h.clients[0].closed
    assert h.machine.client is None
    assert h.discovery.starts == 2

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_idle_retries_discovery_while_running() -> None:
    h = Harness()
    h.next_client.responses["list_sessions"] = OperationError("gone")
    h.machine.connect()
    h.discovery.find()

    await h.wait_until(lambda: P.IDLE in h.phases)
    assert h.clients[0].closed
    assert h.machine.address is None

    await h.wait_until(lambda: h.phases.count(P.DISCOVERING) == 2)
    assert h.machine.is_running

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_discovery_start_failure_is_retried() -> None:
    h = Harness()
    h.discovery.start_error = RuntimeError("no network")
    h.machine.connect()

    await h.wait_until(lambda: h.discovery.starts >= 2)
    assert h.machine.phase is P.DISCOVERING

    h.discovery.start_error = None
    await h.wait_until(lambda: h.discovery.on_found is not None)
    h.discovery.find()
    await h.wait_for_phase(P.POLLING)

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_poll_failure_disconnects_and_goes_idle() -> None:
    h = Harness()
    await h.polling()
    player = h.client.player
    player.responses["get_status"] = OperationError("channel closed")

    await h.wait_until(lambda: P.IDLE in h.phases)
    assert h.published(BridgeEvent.DISCONNECTED) == [None]
    assert player.closed
    assert h.clients[0].closed
    assert h.machine.player is None
    assert h.machine.session is None

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_session_closed_by_receiver_returns_to_finding_session() -> None:
    h = Harness()
    await h.polling()
    player = h.client.player
    player.end_session()

    await h.wait_until(lambda: h.phases.count(P.POLLING) == 2)
    assert h.phases[4:] == [P.POLLING, P.FINDING_SESSION, P.JOINING_SESSION, P.POLLING]

    kinds = [kind for kind, _ in h.events]
    disconnected = kinds.index(BridgeEvent.DISCONNECTED)
    assert h.events[disconnected + 1] == (BridgeEvent.PHASE_CHANGED, P.FINDING_SESSION)
    assert len(h.published(BridgeEvent.CONNECTED)) == 2

    # The receiver connection is kept.
    assert len(h.clients) == 1
    assert not h.client.closed

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_connection_loss_while_polling_goes_idle() -> None:
    h = Harness()
    await h.polling()
    client = h.client
    player = client.player
    client.drop()

    await h.wait_until(lambda: P.IDLE in h.phases)
    assert h.published(BridgeEvent.DISCONNECTED) == [None]
    assert client.closed
    assert player.closed

    await h.wait_until(lambda: h.phases.count(P.DISCOVERING) == 2)
    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_connection_loss_while_finding_session_goes_idle() -> None:
    h = Harness()
    h.next_client.responses["list_sessions"] = HANG
    h.machine.connect()
    h.discovery.find()
    await h.wait_for_phase(P.FINDING_SESSION)

    h.client.drop()
    await h.wait_until(lambda: P.IDLE in h.phases)
    assert h.published(BridgeEvent.DISCONNECTED) == []

    await h.machine.shutdown()


# -----------------------------------------------------------------------------
# Stale responses
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_late_connect_response_is_dropped() -> None:
    h = Harness()
    h.next_client.responses["connect"] = HANG
    h.machine.connect()
    h.discovery.find()
    await h.wait_for_phase(P.CONNECTING)
    client = h.client

    h.machine.disconnect()
    client.hanging["connect"].set_result(None)
    await settle()

    assert h.machine.phase is P.IDLE
    assert P.FINDING_SESSION not in h.phases
    assert client.closed

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_late_join_result_is_closed() -> None:
    h = Harness()
    h.next_client.responses["join"] = HANG
    h.machine.connect()
    h.discovery.find()
    await h.wait_for_phase(P.JOINING_SESSION)
    client = h.client

    h.machine.disconnect()
    late = FakePlayer()
    client.hanging["join"].set_result(late)
    await settle()

    assert late.closed
    assert h.machine.player is None
    assert h.published(BridgeEvent.CONNECTED) == []

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_timed_out_request_answer_is_ignored() -> None:
    h = Harness()
    h.next_client.responses["list_sessions"] = HANG
    h.machine.connect()
    h.discovery.find()
    await h.wait_until(lambda: P.IDLE in h.phases)
    client = h.clients[0]

    client.hanging["list_sessions"].set_result([YOUTUBE])
    await settle()

    assert P.JOINING_SESSION not in h.phases

    await h.machine.shutdown()


# -----------------------------------------------------------------------------
# Disconnect
# -----------------------------------------------------------------------------


async def _hold_in(h: Harness, phase: ConnectionPhase) -> None:
    if phase is P.IDLE:
        return
    hold = {
        P.CONNECTING: "connect",
        P.FINDING_SESSION: "list_sessions",
        P.JOINING_SESSION: "join",
    }
    if phase in hold:
        h.next_client.responses[hold[phase]] = HANG
    h.machine.connect()
    if phase is not P.DISCOVERING:
        h.discovery.find()
    await h.wait_for_phase(phase)


@pytest.mark.parametrize("phase", list(ConnectionPhase))
@pytest.mark.asyncio
async def test_disconnect_from_any_phase(phase) -> None:
    h = Harness()
    await _hold_in(h, phase)
    starts = h.discovery.starts

    h.machine.disconnect()
    h.machine.disconnect()

    assert h.machine.phase is P.IDLE
    assert not h.machine.is_running
    assert h.machine.player is None
    assert h.machine.client is None
    assert h.machine.address is None
    assert h.machine.session is None
    assert all(client.closed for client in h.clients)

    # Nothing is armed.
    await asyncio.sleep(FAST_TIMING.retry_interval * 3)
    assert h.machine.phase is P.IDLE
    assert h.discovery.starts == starts

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_disconnect_from_polling_pairs_connected_and_disconnected() -> None:
    h = Harness()
    await h.polling()
    player = h.client.player

    h.machine.disconnect()

    assert h.published(BridgeEvent.CONNECTED) == [YOUTUBE]
    assert h.published(BridgeEvent.DISCONNECTED) == [None]
    assert player.closed
    assert player.listener_count == 0
    assert h.clients[0].listener_count == 0

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_disconnect_from_listener_during_transition() -> None:
    h = Harness()
    h.event_bus.subscribe(BridgeEvent.CONNECTED, lambda _session: h.machine.disconnect())

    h.machine.connect()
    h.discovery.find()
    await h.wait_until(lambda: P.IDLE in h.phases)

    assert h.phases[-2:] == [P.POLLING, P.IDLE]
    assert h.published(BridgeEvent.DISCONNECTED) == [None]

    await h.machine.shutdown()


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_commands_reach_player() -> None:
    h = Harness()
    await h.polling()
    player = h.client.player

    h.machine.play()
    h.machine.pause()
    h.machine.stop()
    h.machine.seek(2_500_000)
    await h.wait_until(lambda: player.count("seek") == 1)

    assert player.count("play") == 1
    assert player.count("pause") == 1
    assert player.count("stop") == 1
    assert ("seek", 2.5) in player.calls

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_commands_without_player_are_ignored() -> None:
    h = Harness()
    h.machine.play()
    h.machine.seek(1_000_000)
    h.machine.next()
    await settle()

    assert h.machine.phase is P.IDLE


@pytest.mark.asyncio
async def test_unsupported_command_is_not_sent() -> None:
    h = Harness()
    await h.polling()
    player = h.client.player
    assert Capability.NEXT not in player.capabilities

    h.machine.next()
    h.machine.previous()
    h.machine.open_uri("https://example.com/video.mp4")
    await settle()

    assert player.count("next") == 0
    assert player.count("previous") == 0
    assert player.count("open_uri") == 0

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_next_and_previous_when_supported() -> None:
    h = Harness()
    h.next_client.player = FakePlayer(
        capabilities={Capability.PLAY, Capability.PAUSE, Capability.NEXT, Capability.PREVIOUS}
    )
    await h.polling()
    player = h.client.player

    h.machine.next()
    h.machine.previous()
    await h.wait_until(lambda: player.count("previous") == 1)
    assert player.count("next") == 1

    await h.machine.shutdown()


@pytest.mark.asyncio
async def test_command_failure_is_logged_not_raised(caplog) -> None:
    h = Harness()
    await h.polling()
    player = h.client.player
    player.responses["play"] = OperationError("rejected")

    h.machine.play()
    await h.wait_until(lambda: "`play` failed" in caplog.text)
    assert h.machine.phase is P.POLLING

    await h.machine.shutdown()


def test_backdrop_constant() -> None:
    assert BACKDROP.app_id == BACKDROP_APP_ID
    assert BACKDROP.is_backdrop
    assert not YOUTUBE.is_backdrop


@pytest.mark.asyncio
async def test_open_uri_when_supported() -> None:
    h = Harness()
    h.next_client.player = FakePlayer(capabilities={Capability.PLAY, Capability.OPEN})
    await h.polling()
    player = h.client.player

    h.machine.open_uri("https://example.com/video.mp4")
    await h.wait_until(lambda: player.count("open_uri") == 1)

    assert ("open_uri", "https://example.com/video.mp4") in player.calls

    await h.machine.shutdown()

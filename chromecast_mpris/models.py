"""Data model shared by the state machine, translator and bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

# The receiver's built-in backdrop application.
BACKDROP_APP_ID = "E8C28D3C"

CAST_PORT = 8009

# Receivers expose a single media session, so one synthetic track id is enough.
TRACK_ID = "/com/google/chromecast/tracks/0"

US_PER_SECOND = 1_000_000

# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class ConnectionPhase(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    FINDING_SESSION = "finding_session"
    JOINING_SESSION = "joining_session"
    POLLING = "polling"


class Capability(str, Enum):
    """Operations a joined player may support."""

    PLAY = "play"
    PAUSE = "pause"
    STOP = "stop"
    SEEK = "seek"
    NEXT = "next"
    PREVIOUS = "previous"
    OPEN = "open"


# -----------------------------------------------------------------------------
# Receiver side
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceAddress:
    """Network address of a discovered receiver."""

    host: str
    port: int = CAST_PORT
    uuid: Optional[UUID] = None
    friendly_name: Optional[str] = None
    model_name: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class SessionDescriptor:
    """A running application session on the receiver."""

    app_id: str
    display_name: str = ""
    session_id: str = ""

    @property
    def is_backdrop(self) -> bool:
        return self.app_id == BACKDROP_APP_ID


@dataclass(frozen=True)
class MediaInfo:
    duration_seconds: Optional[float] = None


@dataclass(frozen=True)
class VolumeInfo:
    level: Optional[float] = None


@dataclass(frozen=True)
class StatusSnapshot:
    """One media status report from the receiver."""

    player_state: Optional[str] = None
    current_time_seconds: Optional[float] = None
    media: Optional[MediaInfo] = None
    volume: Optional[VolumeInfo] = None
    playback_rate: Optional[float] = None


# -----------------------------------------------------------------------------
# Desktop side
# -----------------------------------------------------------------------------

# (D-Bus name, attribute, D-Bus signature) for org.mpris.MediaPlayer2.Player
PLAYER_PROPERTIES = (
    ("PlaybackStatus", "playback_status", "s"),
    ("LoopStatus", "loop_status", "s"),
    ("Rate", "rate", "d"),
    ("Shuffle", "shuffle", "b"),
    ("Metadata", "metadata", "a{sv}"),
    ("Volume", "volume", "d"),
    ("Position", "position", "x"),
    ("MinimumRate", "minimum_rate", "d"),
    ("MaximumRate", "maximum_rate", "d"),
    ("CanGoNext", "can_go_next", "b"),
    ("CanGoPrevious", "can_go_previous", "b"),
    ("CanPlay", "can_play", "b"),
    ("CanPause", "can_pause", "b"),
    ("CanSeek", "can_seek", "b"),
    ("CanControl", "can_control", "b"),
)

PROPERTY_SIGNATURES: Dict[str, str] = {name: sig for name, _, sig in PLAYER_PROPERTIES}
_ATTRIBUTES: Dict[str, str] = {name: attr for name, attr, _ in PLAYER_PROPERTIES}


@dataclass(frozen=True)
class DesktopProperties:
    """Snapshot of the exported player properties.

    Never mutated: every update produces a new instance, and change
    notification is computed by comparing two snapshots.
    """

    playback_status: str = "Idle"
    loop_status: str = "None"
    rate: float = 1.0
    shuffle: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    volume: float = 1.0
    position: int = 0
    minimum_rate: float = 0.25
    maximum_rate: float = 2.0
    can_go_next: bool = False
    can_go_previous: bool = False
    can_play: bool = False
    can_pause: bool = False
    can_seek: bool = False
    can_control: bool = True

    def get(self, name: str) -> Any:
        """Returns a property by its D-Bus name."""
        try:
            return getattr(self, _ATTRIBUTES[name])
        except KeyError:
            raise KeyError(f"{name} is not a property") from None

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, attr) for name, attr, _ in PLAYER_PROPERTIES}

"""
Receiver status -> MPRIS player properties.

Pure functions only: the caller owns the current property snapshot and the
sync baseline, and decides what to do with the returned diff.

Position is rewritten on every translation but never reported as changed;
desktop clients extrapolate it themselves from PlaybackStatus and Rate. A
`Seeked` result is produced when the reported position disagrees with that
extrapolation by more than DRIFT_THRESHOLD_MS.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .models import (
    PLAYER_PROPERTIES,
    TRACK_ID,
    US_PER_SECOND,
    DesktopProperties,
    StatusSnapshot,
)

DRIFT_THRESHOLD_MS = 500

# receiver playerState -> (PlaybackStatus, CanPlay, CanPause)
_PLAYER_STATES: Dict[str, Tuple[str, bool, bool]] = {
    "PLAYING": ("Playing", True, False),
    "PAUSED": ("Paused", False, True),
    "BUFFERING": ("Buffering", True, False),
}
_IDLE_STATE = ("Idle", False, False)

# Properties excluded from change notification.
_SILENT_PROPERTIES = frozenset({"Position"})


@dataclass(frozen=True)
class Seeked:
    position: int  # microseconds
    baseline_ms: float


@dataclass(frozen=True)
class Translation:
    properties: DesktopProperties
    changed: FrozenSet[str]
    seeked: Optional[Seeked] = None

    def changed_values(self) -> Dict[str, Any]:
        return {name: self.properties.get(name) for name in self.changed}


def diff(previous: DesktopProperties, current: DesktopProperties) -> FrozenSet[str]:
    """D-Bus names of the notifiable properties that differ."""
    return frozenset(
        name
        for name, attr, _ in PLAYER_PROPERTIES
        if name not in _SILENT_PROPERTIES
        and getattr(previous, attr) != getattr(current, attr)
    )


def translate(
    previous: DesktopProperties,
    snapshot: StatusSnapshot,
    now_ms: float,
    last_sync_ms: float,
) -> Translation:
    updates: Dict[str, Any] = {"rate": snapshot.playback_rate or 1.0}

    if snapshot.volume is not None and snapshot.volume.level is not None:
        updates["volume"] = float(snapshot.volume.level)

    if snapshot.media is not None:
        duration = snapshot.media.duration_seconds or 0
        updates["metadata"] = {
            "mpris:trackid": TRACK_ID,
            "mpris:length": int(round(duration * US_PER_SECOND)),
        }
        updates["can_seek"] = True
    else:
        updates["metadata"] = {}
        updates["can_seek"] = False

    status, can_play, can_pause = _PLAYER_STATES.get(snapshot.player_state or "", _IDLE_STATE)
    updates["playback_status"] = status
    updates["can_play"] = can_play
    updates["can_pause"] = can_pause

    current_ms = (snapshot.current_time_seconds or 0) * 1000
    updates["position"] = int(round(current_ms * 1000))

    current = dataclasses.replace(previous, **updates)

    seeked = None
    drift = abs(now_ms - last_sync_ms - current_ms)
    if drift > DRIFT_THRESHOLD_MS and current.can_play:
        seeked = Seeked(position=current.position, baseline_ms=now_ms - current_ms)

    return Translation(properties=current, changed=diff(previous, current), seeked=seeked)

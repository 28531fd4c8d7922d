"""Playback clocks read by the analysis engine.

The engine never drives playback. It only reads ``position`` on each sampler
tick and listens for play/pause/seek/ended notifications.
"""

import math
import time
from typing import Callable, Optional, Protocol

from loguru import logger

PlaybackListener = Callable[[str], None]


class PlaybackClock(Protocol):
    """Read-only view of an operator-controlled media clock."""

    @property
    def position(self) -> float: ...

    @property
    def duration(self) -> float: ...

    @property
    def playing(self) -> bool: ...

    @property
    def ended(self) -> bool: ...


class ReportedPlaybackClock:
    """Server-side mirror of a client's media element.

    Clients report play/pause/seek/ended with the media position they observed.
    While playing, ``position`` is extrapolated from the last report using a
    monotonic clock and the playback rate, clamped to the known duration.

    Listeners receive one of ``"play"``, ``"pause"``, ``"seek"`` or ``"ended"``
    after the clock state has been updated.
    """

    def __init__(
        self,
        duration: float = 0.0,
        rate: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._duration = max(0.0, duration)
        self._rate = rate
        self._monotonic = monotonic
        self._anchor_position = 0.0
        self._anchor_time = monotonic()
        self._playing = False
        self._ended = False
        self._listeners: list[PlaybackListener] = []

    @property
    def position(self) -> float:
        if not self._playing:
            return self._anchor_position
        elapsed = self._monotonic() - self._anchor_time
        position = self._anchor_position + elapsed * self._rate
        if self._duration > 0:
            position = min(position, self._duration)
        return position

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def rate(self) -> float:
        return self._rate

    def add_listener(self, listener: PlaybackListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PlaybackListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_duration(self, duration: float) -> None:
        self._duration = max(0.0, duration)

    def set_rate(self, rate: float) -> None:
        self._reanchor(self.position)
        self._rate = rate

    def play(self, at: Optional[float] = None) -> None:
        self._reanchor(self.position if at is None else at)
        self._playing = True
        self._ended = False
        self._notify("play")

    def pause(self, at: Optional[float] = None) -> None:
        self._reanchor(self.position if at is None else at)
        self._playing = False
        self._notify("pause")

    def seek(self, to: float) -> None:
        self._reanchor(to)
        self._ended = False
        self._notify("seek")

    def end(self) -> None:
        self._reanchor(self._duration if self._duration > 0 else self.position)
        self._playing = False
        self._ended = True
        self._notify("ended")

    def _reanchor(self, position: float) -> None:
        if not math.isfinite(position):
            logger.warning(f"Ignoring non-finite playback position {position!r}")
            position = self._anchor_position
        position = max(0.0, position)
        if self._duration > 0:
            position = min(position, self._duration)
        self._anchor_position = position
        self._anchor_time = self._monotonic()

    def _notify(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Playback listener failed on '{event}': {e}")

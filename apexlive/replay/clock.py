"""
Virtual replay clock.

The clock is a single mutable instant advanced by the scheduler tick at a rate
multiplier. It only follows wall-clock time in LIVE_HEAD mode, where the rate is
pinned to 1x.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from apexlive.data.session import SessionWindow

logger = logging.getLogger(__name__)

PLAYBACK_SPEEDS = (1.0, 5.0, 10.0, 30.0)


class PlaybackState(Enum):
    PAUSED = "paused"
    PLAYING = "playing"


class ClockMode(Enum):
    REPLAY = "replay"
    LIVE_HEAD = "live_head"


@dataclass(frozen=True)
class ClockState:
    """Snapshot handed to rendering consumers."""
    virtual_time: Optional[int]
    rate: float
    is_playing: bool
    is_live_head: bool
    reached_end: bool = False


class ReplayClock:
    def __init__(self, window: Optional[SessionWindow] = None,
                 playback_speeds: Sequence[float] = PLAYBACK_SPEEDS, live_lag_s=30.0):
        self.playback_speeds = tuple(float(s) for s in playback_speeds)
        self.live_lag_ms = live_lag_s * 1000.0
        self.window = window
        # float so sub-millisecond advances accumulate
        self._virtual_ms: Optional[float] = float(window.start_ms) if window else None
        self.rate = 1.0
        self.state = PlaybackState.PAUSED
        self.mode = ClockMode.REPLAY
        # set only when playback ran into the window end, not when a seek lands there
        self.reached_end = False

    @property
    def virtual_time(self) -> Optional[int]:
        return int(self._virtual_ms) if self._virtual_ms is not None else None

    @property
    def is_playing(self):
        return self.state is PlaybackState.PLAYING

    @property
    def is_live_head(self):
        return self.mode is ClockMode.LIVE_HEAD

    def reset(self, window: Optional[SessionWindow]):
        """New session: back to PAUSED/REPLAY at the window start."""
        self.window = window
        self._virtual_ms = float(window.start_ms) if window else None
        self.rate = 1.0
        self.state = PlaybackState.PAUSED
        self.mode = ClockMode.REPLAY
        self.reached_end = False

    def advance(self, wall_delta_seconds):
        """Move virtual time forward by wall_delta * rate; no-op while paused."""
        if not self.is_playing or self._virtual_ms is None or wall_delta_seconds <= 0:
            return
        self._virtual_ms += wall_delta_seconds * 1000.0 * self.rate
        if self.window and self._virtual_ms >= self.window.end_ms:
            self._virtual_ms = float(self.window.end_ms)
            self.state = PlaybackState.PAUSED
            self.reached_end = True
            logger.info("Reached end of session window, pausing")

    def seek(self, absolute_ms):
        """Jump to absolute_ms and pause so a pending tick cannot overwrite the scrub."""
        target = float(absolute_ms)
        if self.window:
            target = float(self.window.clamp(target))
        self._virtual_ms = target
        self.state = PlaybackState.PAUSED
        self.reached_end = False

    def play(self):
        if self._virtual_ms is None:
            return
        self.state = PlaybackState.PLAYING
        self.reached_end = False

    def pause(self):
        self.state = PlaybackState.PAUSED

    def set_rate(self, multiplier) -> bool:
        """
        Change the playback rate.

        Returns False (and changes nothing) for rates other than 1x while at the live head.

        Raises:
            ValueError: multiplier is not one of the configured playback speeds
        """
        multiplier = float(multiplier)
        if multiplier not in self.playback_speeds:
            raise ValueError(f"Playback rate {multiplier} not in {self.playback_speeds}")
        if self.is_live_head and multiplier != 1.0:
            logger.debug("Rejected rate %sx while at live head", multiplier)
            return False
        self.rate = multiplier
        return True

    def enter_live_head(self, now_ms):
        target = float(now_ms) - self.live_lag_ms
        if self.window:
            target = float(self.window.clamp(target))
        self._virtual_ms = target
        self.rate = 1.0
        self.mode = ClockMode.LIVE_HEAD
        self.state = PlaybackState.PLAYING
        self.reached_end = False

    def pin_live_head(self):
        """Enter LIVE_HEAD without moving the clock (already within the lag window)."""
        self.rate = 1.0
        self.mode = ClockMode.LIVE_HEAD

    def exit_live_head(self):
        self.mode = ClockMode.REPLAY

    def snapshot(self) -> ClockState:
        return ClockState(
            virtual_time=self.virtual_time,
            rate=self.rate,
            is_playing=self.is_playing,
            is_live_head=self.is_live_head,
            reached_end=self.reached_end,
        )

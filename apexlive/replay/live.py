"""
Live/replay mode controller.

Re-evaluated on every clock tick: the "at live head" flag is derived from the
gap between wall-clock and virtual time, never latched.
"""
import logging
import time

from apexlive.replay.clock import ClockMode, ReplayClock

logger = logging.getLogger(__name__)


def wall_clock_ms():
    return int(time.time() * 1000)


class LiveModeController:
    def __init__(self, clock: ReplayClock, session=None, threshold_s=60.0,
                 session_grace_s=7200.0, now_fn=wall_clock_ms):
        self.clock = clock
        self.session = session
        self.threshold_ms = threshold_s * 1000.0
        self.session_grace_ms = session_grace_s * 1000.0
        self.now_fn = now_fn

    def is_session_live(self, now_ms=None):
        """Scheduled start has passed and scheduled end + grace has not."""
        if self.session is None:
            return False
        now_ms = self.now_fn() if now_ms is None else now_ms
        return self.session.start_ms <= now_ms <= self.session.end_ms + self.session_grace_ms

    def lag_ms(self, now_ms=None):
        if self.clock.virtual_time is None:
            return None
        now_ms = self.now_fn() if now_ms is None else now_ms
        return abs(now_ms - self.clock.virtual_time)

    def is_at_live_head(self, now_ms=None):
        now_ms = self.now_fn() if now_ms is None else now_ms
        if not self.is_session_live(now_ms):
            return False
        lag = self.lag_ms(now_ms)
        return lag is not None and lag <= self.threshold_ms

    def update(self, now_ms=None) -> bool:
        """Recompute the mode from the current gap. Returns the at-live-head flag."""
        now_ms = self.now_fn() if now_ms is None else now_ms
        at_head = self.is_at_live_head(now_ms)
        if at_head and self.clock.mode is ClockMode.REPLAY:
            self.clock.pin_live_head()
            logger.info("Caught up with the live head, playback pinned to 1x")
        elif not at_head and self.clock.mode is ClockMode.LIVE_HEAD:
            self.clock.exit_live_head()
            logger.info("Fell %.0fs behind live, switching to replay mode",
                        (self.lag_ms(now_ms) or 0) / 1000.0)
        return at_head

    def can_go_live(self, now_ms=None):
        now_ms = self.now_fn() if now_ms is None else now_ms
        return self.is_session_live(now_ms) and not self.is_at_live_head(now_ms)

    def go_live(self, now_ms=None) -> bool:
        now_ms = self.now_fn() if now_ms is None else now_ms
        if not self.is_session_live(now_ms):
            logger.info("Session is not live, ignoring go-live")
            return False
        self.clock.enter_live_head(now_ms)
        logger.info("Jumped to live head")
        return True

# Replay core: virtual clock, live head tracking, fetch scheduling and interpolation

from .clock import ClockMode, ClockState, PlaybackState, ReplayClock
from .engine import Frame, ReplayEngine
from .interpolation import InterpolatedSample, interpolate
from .live import LiveModeController

__all__ = [
    'ClockMode',
    'ClockState',
    'PlaybackState',
    'ReplayClock',
    'Frame',
    'ReplayEngine',
    'InterpolatedSample',
    'interpolate',
    'LiveModeController',
]

"""
Interpolation of buffered samples at an arbitrary virtual time.

Continuous fields (position, speed, throttle, ...) are linearly interpolated
between the bracketing samples so motion looks smooth at display frame rates.
Discrete fields (gear, DRS, race position) hold the left sample's value; a gear
of 6.7 is not a state the car can be in.

Outside the buffered range the nearest sample is returned as-is. There is no
extrapolation: while waiting for the next fetch the car simply holds its last
known state.
"""
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from apexlive.data.buffer import BracketStatus, TimeSeriesBuffer
from apexlive.data.channels import ChannelSpec, Sample


@dataclass(frozen=True)
class InterpolatedSample:
    """
    Best estimate of a channel at ``timestamp`` (always the requested time).

    ``prev``/``next`` are the raw samples the values came from; ``next`` is None
    whenever a single sample was returned verbatim.
    """
    entity_id: str
    timestamp: int
    values: Dict[str, float]
    status: BracketStatus
    factor: float = 0.0
    prev: Optional[Sample] = None
    next: Optional[Sample] = None

    def __getitem__(self, name):
        return self.values[name]

    def get(self, name, default=None):
        return self.values.get(name, default)

    @property
    def is_interpolated(self):
        return self.status is BracketStatus.BRACKETED


def lerp(start, end, factor):
    return start + (end - start) * factor


def interpolation_factor(prev_ts, next_ts, target_ts):
    """Position of target between prev and next, clamped to [0, 1]; 0 for a zero-width bracket."""
    span = next_ts - prev_ts
    if span <= 0:
        return 0.0
    return float(np.clip((target_ts - prev_ts) / span, 0.0, 1.0))


def interpolate_values(prev: Sample, next_: Sample, factor, channel: Optional[ChannelSpec] = None):
    if channel is None:
        continuous = tuple(prev.values)
        discrete = ()
    else:
        continuous, discrete = channel.continuous, channel.discrete

    values = {}
    for name in continuous:
        a = prev.values.get(name)
        b = next_.values.get(name)
        if a is None:
            continue
        values[name] = a if b is None else lerp(a, b, factor)
    for name in discrete:
        if name in prev.values:
            values[name] = prev.values[name]
    return values


def interpolate(buffer: TimeSeriesBuffer, target_ms, channel: Optional[ChannelSpec] = None
                ) -> Optional[InterpolatedSample]:
    """
    Interpolated sample of ``buffer`` at ``target_ms``, or None if there is nothing to show.

    Args:
        buffer: Buffer for one entity and channel
        target_ms: Virtual time in epoch milliseconds
        channel: Field layout; without it every field is treated as continuous
    """
    if buffer is None:
        return None
    bracket = buffer.query_bracket(target_ms)
    status = bracket.status

    if status is BracketStatus.INSUFFICIENT:
        only = bracket.prev
        if only is None or only.timestamp > target_ms:
            return None
        return _verbatim(only, target_ms, status)

    if status is BracketStatus.BEFORE_FIRST:
        return _verbatim(bracket.next, target_ms, status)

    if status is BracketStatus.AFTER_LAST:
        return _verbatim(bracket.prev, target_ms, status)

    prev, next_ = bracket.prev, bracket.next
    factor = interpolation_factor(prev.timestamp, next_.timestamp, target_ms)
    return InterpolatedSample(
        entity_id=prev.entity_id,
        timestamp=int(target_ms),
        values=interpolate_values(prev, next_, factor, channel),
        status=status,
        factor=factor,
        prev=prev,
        next=next_,
    )


def _verbatim(sample: Sample, target_ms, status):
    return InterpolatedSample(
        entity_id=sample.entity_id,
        timestamp=int(target_ms),
        values=dict(sample.values),
        status=status,
        prev=sample,
    )

"""
Per-entity, per-channel time-series buffer.

Samples arrive out of order and with duplicates from overlapping fetch windows.
Readers only ever see the normalized state: strictly increasing timestamps with
the first-seen sample kept for each timestamp.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import numpy as np

from apexlive.data.channels import Sample


class BracketStatus(Enum):
    BRACKETED = "bracketed"
    BEFORE_FIRST = "before_first"
    AFTER_LAST = "after_last"
    INSUFFICIENT = "insufficient"


@dataclass(frozen=True)
class Bracket:
    """
    Result of a bracket query.

    ``prev``/``next`` are set for BRACKETED. BEFORE_FIRST carries the first sample
    in ``next``, AFTER_LAST the last sample in ``prev``. INSUFFICIENT carries the
    only sample (if any) in ``prev``.
    """
    status: BracketStatus
    prev: Optional[Sample] = None
    next: Optional[Sample] = None


class TimeSeriesBuffer:
    """Ordered samples for one (entity, channel) pair."""

    def __init__(self, entity_id: str, channel: str, retention_seconds: float):
        self.entity_id = entity_id
        self.channel = channel
        self.retention_ms = int(retention_seconds * 1000)
        self._samples: List[Sample] = []
        self._times = np.empty(0, dtype=np.int64)
        self._dirty = False

    def __len__(self):
        self._ensure_normalized()
        return len(self._samples)

    def insert(self, sample: Sample):
        self._samples.append(sample)
        self._dirty = True

    def insert_many(self, samples: Iterable[Sample]):
        for sample in samples:
            self.insert(sample)
        self.normalize()

    def normalize(self):
        """Sort by timestamp and drop exact-timestamp duplicates, keeping the first seen."""
        if not self._samples:
            self._times = np.empty(0, dtype=np.int64)
            self._dirty = False
            return
        times = np.fromiter((s.timestamp for s in self._samples), dtype=np.int64,
                            count=len(self._samples))
        # stable sort keeps insertion order among equal timestamps
        order = np.argsort(times, kind="stable")
        sorted_times = times[order]
        keep = np.ones(len(order), dtype=bool)
        keep[1:] = sorted_times[1:] != sorted_times[:-1]
        self._samples = [self._samples[i] for i in order[keep]]
        self._times = sorted_times[keep]
        self._dirty = False

    def evict_before(self, cutoff_ms):
        """Drop every sample older than cutoff_ms; samples at or after it are kept."""
        self._ensure_normalized()
        first_kept = int(np.searchsorted(self._times, cutoff_ms, side="left"))
        if first_kept:
            self._samples = self._samples[first_kept:]
            self._times = self._times[first_kept:]

    def evict_for_clock(self, clock_ms):
        self.evict_before(clock_ms - self.retention_ms)

    def clear(self):
        self._samples = []
        self._times = np.empty(0, dtype=np.int64)
        self._dirty = False

    def query_bracket(self, target_ms) -> Bracket:
        self._ensure_normalized()
        n = len(self._samples)
        if n < 2:
            return Bracket(BracketStatus.INSUFFICIENT, prev=self._samples[0] if n else None)

        idx = int(np.searchsorted(self._times, target_ms, side="right")) - 1
        if idx < 0:
            return Bracket(BracketStatus.BEFORE_FIRST, next=self._samples[0])
        if idx >= n - 1:
            return Bracket(BracketStatus.AFTER_LAST, prev=self._samples[-1])
        return Bracket(BracketStatus.BRACKETED, prev=self._samples[idx], next=self._samples[idx + 1])

    def snapshot(self) -> Tuple[Sample, ...]:
        """Immutable copy for readers that outlive the current tick."""
        self._ensure_normalized()
        return tuple(self._samples)

    @property
    def first_timestamp(self):
        self._ensure_normalized()
        return int(self._times[0]) if len(self._times) else None

    @property
    def last_timestamp(self):
        self._ensure_normalized()
        return int(self._times[-1]) if len(self._times) else None

    def _ensure_normalized(self):
        if self._dirty:
            self.normalize()


class BufferStore:
    """All buffers owned by one replay engine, keyed by (entity_id, channel)."""

    def __init__(self, retention_by_channel):
        self.retention_by_channel = dict(retention_by_channel)
        self._buffers = {}

    def get(self, entity_id, channel) -> Optional[TimeSeriesBuffer]:
        return self._buffers.get((str(entity_id), channel))

    def get_or_create(self, entity_id, channel) -> TimeSeriesBuffer:
        key = (str(entity_id), channel)
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = TimeSeriesBuffer(key[0], channel, self.retention_by_channel.get(channel, 10.0))
            self._buffers[key] = buffer
        return buffer

    def ingest(self, samples: Iterable[Sample], channel, clock_ms):
        """Insert a fetched batch, normalize, then evict relative to the clock."""
        grouped = {}
        for sample in samples:
            grouped.setdefault(sample.entity_id, []).append(sample)
        for entity_id, batch in grouped.items():
            self.get_or_create(entity_id, channel).insert_many(batch)
        for (_, buffer_channel), buffer in self._buffers.items():
            if buffer_channel == channel:
                buffer.evict_for_clock(clock_ms)
        return sum(len(batch) for batch in grouped.values())

    def buffers_for_channel(self, channel):
        return [b for (_, c), b in self._buffers.items() if c == channel]

    def drop_entity(self, entity_id):
        for key in [k for k in self._buffers if k[0] == str(entity_id)]:
            del self._buffers[key]

    def clear(self):
        self._buffers.clear()

    def __len__(self):
        return len(self._buffers)

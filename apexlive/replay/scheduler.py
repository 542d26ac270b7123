"""
Fetch scheduler.

Runs on a fixed wall-clock tick while the clock is playing and asks the source
for the virtual-time window around the clock for each configured job. Requests
go through one throttle so the source sees a minimum spacing between calls
whatever the number of jobs. Rate-limit and transport errors are retried with
exponential backoff plus jitter, then abandoned as "no data this tick".

Every request carries the scheduler epoch it was issued in. A seek, entity
switch or teardown bumps the epoch and cancels the in-flight tasks, and any
response that still arrives for an older epoch is dropped instead of being
written into buffers that have moved on.
"""
import asyncio
import functools
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from apexlive.config import FetchJob
from apexlive.data.channels import get_channel
from apexlive.errors import RETRYABLE_ERRORS, SourceError

logger = logging.getLogger(__name__)


class RequestThrottle:
    """Reserves send slots at least ``min_spacing`` seconds apart. Single event loop only."""

    def __init__(self, min_spacing, monotonic=time.monotonic):
        self.min_spacing = float(min_spacing)
        self.monotonic = monotonic
        self._next_slot = 0.0
        self._last_sent: Optional[float] = None
        self._generation = 0

    def reserve(self):
        """Claim the next slot and return how long to wait for it."""
        now = self.monotonic()
        return self._claim(now) - now

    def reset(self):
        """Drop every slot still reserved; spacing from the last real send still holds."""
        floor = self._last_sent + self.min_spacing if self._last_sent is not None else 0.0
        self._next_slot = min(self._next_slot, floor)
        self._generation += 1

    async def wait(self):
        now = self.monotonic()
        slot = self._claim(now)
        generation = self._generation
        if slot > now:
            try:
                await asyncio.sleep(slot - now)
            except asyncio.CancelledError:
                # give the slot back unless someone already queued behind it
                if generation == self._generation and self._next_slot == slot + self.min_spacing:
                    self._next_slot = slot
                raise
        self._last_sent = slot

    def _claim(self, now):
        slot = max(now, self._next_slot)
        self._next_slot = slot + self.min_spacing
        return slot


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0
    jitter: float = 0.5

    def delay(self, attempt, rng=random.random):
        return min(self.backoff_max, self.backoff_base * (2 ** attempt)) + rng() * self.jitter

    @classmethod
    def from_config(cls, config):
        return cls(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_max=config.backoff_max,
            jitter=config.jitter,
        )


async def fetch_with_retry(call: Callable, throttle: RequestThrottle, policy: RetryPolicy,
                           description="request", sleep=asyncio.sleep):
    """
    Run a blocking source call off the event loop, retrying transient failures.

    Returns the call's result, or None when the request was abandoned. Cancellation
    propagates to the caller untouched.
    """
    attempt = 0
    while True:
        await throttle.wait()
        try:
            return await asyncio.to_thread(call)
        except RETRYABLE_ERRORS as e:
            if attempt >= policy.max_retries:
                logger.warning("Giving up on %s after %d retries: %s", description, attempt, e)
                return None
            delay = policy.delay(attempt)
            attempt += 1
            logger.warning("%s failed (%s), retry %d/%d in %.1fs",
                           description, e, attempt, policy.max_retries, delay)
            await sleep(delay)
        except SourceError as e:
            logger.warning("%s failed: %s", description, e)
            return None


@dataclass
class PeriodicTask:
    """Non-channel refresh (race control, laps) that rides on the fetch tick."""
    name: str
    every_n_ticks: int
    factory: Callable
    enabled: Callable = lambda: True


class FetchScheduler:
    """
    Periodic fetching for one engine.

    ``context`` is the owning engine. It is read on every tick (``session``,
    ``clock``, ``tracked_entity``, ``buffers``) so the scheduler always sees the
    current selection rather than the one at construction.
    """

    def __init__(self, context, client, jobs, throttle: RequestThrottle, policy: RetryPolicy,
                 tick_interval=1.0):
        self.context = context
        self.client = client
        self.jobs = list(jobs)
        self.throttle = throttle
        self.policy = policy
        self.tick_interval = float(tick_interval)
        self.periodic: Dict[str, PeriodicTask] = {}
        self.epoch = 0
        self.tick_count = 0
        self._in_flight: Dict[str, asyncio.Task] = {}

    def add_periodic(self, name, every_n_ticks, factory, enabled=None):
        self.periodic[name] = PeriodicTask(name, max(1, int(every_n_ticks)), factory,
                                           enabled or (lambda: True))

    def is_in_flight(self, key):
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    def invalidate(self):
        """Start a new epoch and cancel everything issued in the old one."""
        self.epoch += 1
        self.throttle.reset()
        for task in self._in_flight.values():
            if not task.done():
                task.cancel()
        self._in_flight.clear()

    def window_for(self, job: FetchJob, clock_ms, rate):
        """Virtual-time window for a job; the look-ahead grows with the playback rate."""
        before_ms = job.window_before * 1000.0
        after_s = job.window_after
        if after_s > 0:
            after_s += max(0.0, rate - 1.0) * self.tick_interval
        return int(clock_ms - before_ms), int(clock_ms + after_s * 1000.0)

    def tick(self):
        """One scheduler tick. Returns the tasks started."""
        self.tick_count += 1
        started = []
        for job in self.jobs:
            if self.tick_count % job.every_n_ticks == 0:
                task = self._launch_job(job)
                if task:
                    started.append(task)
        for periodic in self.periodic.values():
            if self.tick_count % periodic.every_n_ticks == 0 and periodic.enabled():
                task = self._launch(periodic.name, periodic.factory())
                if task:
                    started.append(task)
        return started

    def fetch_now(self, lookback=None):
        """
        Launch every channel job immediately, regardless of cadence.

        ``lookback`` maps a channel to seconds of history before the clock. That
        channel's window is widened to cover it but it is still one fetch under the
        channel's in-flight key, so a tick never races it for the same window.
        """
        lookback = lookback or {}
        tasks = (self._launch_job(job, lookback.get(job.channel)) for job in self.jobs)
        return [task for task in tasks if task]

    async def run(self):
        while True:
            if self.context.clock.is_playing:
                self.tick()
            await asyncio.sleep(self.tick_interval)

    def _launch_job(self, job: FetchJob, lookback_s=None) -> Optional[asyncio.Task]:
        ctx = self.context
        if ctx.session is None or ctx.clock.virtual_time is None:
            return None
        entity_id = None
        if job.scope == "tracked":
            entity_id = ctx.tracked_entity
            if entity_id is None:
                return None
        start_ms, end_ms = self.window_for(job, ctx.clock.virtual_time, ctx.clock.rate)
        if lookback_s:
            start_ms = min(start_ms, int(ctx.clock.virtual_time - lookback_s * 1000.0))
        return self._launch(job.channel, self.fetch_range(job.channel, entity_id, start_ms, end_ms))

    def _launch(self, key, coro) -> Optional[asyncio.Task]:
        if self.is_in_flight(key):
            coro.close()
            logger.debug("Skipping %s, previous fetch still pending", key)
            return None
        task = asyncio.ensure_future(coro)
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key, task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Fetch task %s crashed", key, exc_info=task.exception())

    async def call(self, fn, *args, description="request", **kwargs):
        """
        Throttled, retried source call tied to the current epoch.

        Returns None when the call was abandoned or its epoch went stale while it
        was in flight.
        """
        epoch = self.epoch
        try:
            result = await fetch_with_retry(functools.partial(fn, *args, **kwargs),
                                            self.throttle, self.policy, description=description)
        except asyncio.CancelledError:
            logger.debug("%s cancelled", description)
            raise
        if epoch != self.epoch:
            logger.debug("Discarding stale %s response from epoch %d", description, epoch)
            return None
        return result

    async def fetch_range(self, channel_name, entity_id, start_ms, end_ms):
        """Fetch one channel window into the buffers. Returns the number of samples ingested."""
        ctx = self.context
        channel = get_channel(channel_name)
        samples = await self.call(self.client.query_channel, ctx.session.session_key, channel,
                                  int(start_ms), int(end_ms), entity_id=entity_id,
                                  description=f"{channel_name} fetch")
        if not samples:
            return 0
        return ctx.buffers.ingest(samples, channel_name, ctx.clock.virtual_time)

"""
Unit tests for apexlive/replay/scheduler.py

Async code is driven with asyncio.run inside ordinary tests.
"""
import asyncio
import threading
from types import SimpleNamespace

import pytest

from apexlive.config import FetchJob
from apexlive.data.buffer import BufferStore
from apexlive.data.channels import CAR_DATA, LOCATION, POSITION, WEATHER
from apexlive.data.session import SessionWindow
from apexlive.errors import RateLimitedError, SourceResponseError, SourceUnavailableError
from apexlive.replay.clock import ReplayClock
from apexlive.replay.scheduler import FetchScheduler, RequestThrottle, RetryPolicy, fetch_with_retry
from conftest import LAP1, SESSION_END

NO_BACKOFF = RetryPolicy(max_retries=3, backoff_base=0.0, backoff_max=0.0, jitter=0.0)


class FlakyCall:
    """Raises the given errors in order, then returns result."""

    def __init__(self, errors, result=None):
        self.errors = list(errors)
        self.result = result if result is not None else ["ok"]
        self.count = 0

    def __call__(self):
        self.count += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def make_context(session_info, retention=None, tracked="1"):
    clock = ReplayClock(SessionWindow(LAP1, SESSION_END))
    clock.seek(LAP1 + 30_000)
    return SimpleNamespace(
        session=session_info,
        clock=clock,
        tracked_entity=tracked,
        buffers=BufferStore(retention or {LOCATION: 2.0, CAR_DATA: 60.0, POSITION: 600.0}),
    )


JOBS = [
    FetchJob(LOCATION, "all", 1.0, 3.0, 2.0, 1),
    FetchJob(CAR_DATA, "tracked", 1.0, 2.0, 60.0, 1),
    FetchJob(POSITION, "all", 1.1, 0.0, 600.0, 1),
    FetchJob(WEATHER, "session", 60.0, 60.0, 600.0, 30),
]


class TestRequestThrottle:
    """Tests for the minimum spacing between outbound requests."""

    def test_reserves_spaced_slots(self):
        throttle = RequestThrottle(0.2, monotonic=lambda: 10.0)
        delays = [throttle.reserve() for _ in range(3)]
        assert delays == pytest.approx([0.0, 0.2, 0.4])

    def test_no_wait_after_idle_period(self):
        now = {"value": 10.0}
        throttle = RequestThrottle(0.2, monotonic=lambda: now["value"])
        throttle.reserve()
        now["value"] = 11.0
        assert throttle.reserve() == 0.0

    def test_cancelled_waiter_gives_its_slot_back(self):
        throttle = RequestThrottle(10.0, monotonic=lambda: 100.0)

        async def scenario():
            await throttle.wait()
            waiter = asyncio.ensure_future(throttle.wait())
            await asyncio.sleep(0)
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            return throttle.reserve()

        assert asyncio.run(scenario()) == pytest.approx(10.0)

    def test_reset_drops_reserved_slots_but_keeps_spacing(self):
        throttle = RequestThrottle(10.0, monotonic=lambda: 100.0)
        asyncio.run(throttle.wait())
        for _ in range(3):
            throttle.reserve()
        throttle.reset()
        assert throttle.reserve() == pytest.approx(10.0)

    def test_reset_before_any_send(self):
        throttle = RequestThrottle(10.0, monotonic=lambda: 100.0)
        throttle.reserve()
        throttle.reserve()
        throttle.reset()
        assert throttle.reserve() == 0.0


class TestRetryPolicy:
    """Tests for exponential backoff with jitter."""

    def test_delays_double_up_to_max(self):
        policy = RetryPolicy(max_retries=5, backoff_base=1.0, backoff_max=8.0, jitter=0.5)
        delays = [policy.delay(attempt, rng=lambda: 0.0) for attempt in range(5)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]

    def test_jitter_is_added(self):
        policy = RetryPolicy(backoff_base=1.0, jitter=0.5)
        assert policy.delay(0, rng=lambda: 1.0) == pytest.approx(1.5)


class TestFetchWithRetry:
    """Tests for retrying transient source failures."""

    def run(self, call, policy=NO_BACKOFF):
        return asyncio.run(fetch_with_retry(call, RequestThrottle(0.0), policy, description="test"))

    def test_success_first_try(self):
        call = FlakyCall([])
        assert self.run(call) == ["ok"]
        assert call.count == 1

    def test_retries_rate_limit_and_transport_errors(self):
        call = FlakyCall([RateLimitedError("429"), SourceUnavailableError("timeout")])
        assert self.run(call) == ["ok"]
        assert call.count == 3

    def test_gives_up_after_max_retries(self):
        call = FlakyCall([RateLimitedError("429")] * 10)
        assert self.run(call) is None
        assert call.count == NO_BACKOFF.max_retries + 1

    def test_bad_response_is_not_retried(self):
        call = FlakyCall([SourceResponseError("400")])
        assert self.run(call) is None
        assert call.count == 1

    def test_unexpected_errors_propagate(self):
        call = FlakyCall([KeyError("boom")])
        with pytest.raises(KeyError):
            self.run(call)

    def test_waits_between_attempts(self):
        waits = []

        async def fake_sleep(delay):
            waits.append(delay)

        policy = RetryPolicy(max_retries=2, backoff_base=1.0, backoff_max=8.0, jitter=0.0)
        call = FlakyCall([RateLimitedError("429")] * 2)
        result = asyncio.run(fetch_with_retry(call, RequestThrottle(0.0), policy, sleep=fake_sleep))
        assert result == ["ok"]
        assert waits == [1.0, 2.0]


class TestFetchScheduler:
    """Tests for job cadence, windows, epochs and in-flight handling."""

    def make_scheduler(self, context, client, jobs=JOBS):
        return FetchScheduler(context, client, jobs, RequestThrottle(0.0), NO_BACKOFF, tick_interval=1.0)

    def test_window_scales_look_ahead_with_rate(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client)
        location = JOBS[0]
        assert scheduler.window_for(location, 100_000, 1.0) == (99_000, 103_000)
        assert scheduler.window_for(location, 100_000, 10.0) == (99_000, 112_000)

    def test_window_without_look_ahead_is_not_scaled(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client)
        assert scheduler.window_for(JOBS[2], 100_000, 30.0) == (98_900, 100_000)

    def test_tick_fetches_jobs_due_this_tick(self, session_info, fake_client):
        context = make_context(session_info)
        scheduler = self.make_scheduler(context, fake_client)

        async def scenario():
            await asyncio.gather(*scheduler.tick())

        asyncio.run(scenario())
        fetched = {call[0] for call in fake_client.calls}
        assert fetched == {LOCATION, CAR_DATA, POSITION}
        assert fake_client.channel_calls(CAR_DATA)[0][3] == "1"
        assert fake_client.channel_calls(LOCATION)[0][3] is None

    def test_fetched_samples_land_in_buffers(self, session_info, fake_client):
        context = make_context(session_info)
        scheduler = self.make_scheduler(context, fake_client)

        async def scenario():
            return await asyncio.gather(*scheduler.fetch_now())

        counts = asyncio.run(scenario())
        assert sum(counts) > 0
        buffer = context.buffers.get("16", LOCATION)
        assert buffer.first_timestamp >= LAP1 + 30_000 - 2000
        assert buffer.last_timestamp < LAP1 + 33_000

    def test_every_n_ticks(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client,
                                        jobs=[FetchJob(WEATHER, "session", 60, 60, 600, 3)])

        async def scenario():
            started = []
            for _ in range(6):
                tasks = scheduler.tick()
                started.append(len(tasks))
                await asyncio.gather(*tasks)
            return started

        assert asyncio.run(scenario()) == [0, 0, 1, 0, 0, 1]

    def test_tracked_job_skipped_without_tracked_entity(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info, tracked=None), fake_client,
                                        jobs=[JOBS[1]])

        async def scenario():
            return scheduler.tick()

        assert asyncio.run(scenario()) == []

    def test_overlapping_tick_skips_in_flight_job(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client, jobs=[JOBS[0]])

        async def scenario():
            first = scheduler.tick()
            second = scheduler.tick()
            await asyncio.gather(*first)
            return first, second

        first, second = asyncio.run(scenario())
        assert len(first) == 1
        assert second == []
        assert len(fake_client.channel_calls(LOCATION)) == 1

    def test_stale_epoch_response_is_discarded(self, session_info, fake_client):
        context = make_context(session_info)
        scheduler = self.make_scheduler(context, fake_client, jobs=[JOBS[0]])
        original = fake_client.query_channel

        def query_then_seek(*args, **kwargs):
            result = original(*args, **kwargs)
            scheduler.epoch += 1  # a seek happened while the request was out
            return result

        fake_client.query_channel = query_then_seek

        async def scenario():
            return await asyncio.gather(*scheduler.fetch_now())

        assert asyncio.run(scenario()) == [0]
        assert context.buffers.get("1", LOCATION) is None

    def test_invalidate_cancels_in_flight(self, session_info, fake_client):
        context = make_context(session_info)
        scheduler = self.make_scheduler(context, fake_client, jobs=[JOBS[0]])
        release = threading.Event()
        original = fake_client.query_channel

        def slow_query(*args, **kwargs):
            release.wait(5)
            return original(*args, **kwargs)

        fake_client.query_channel = slow_query

        async def scenario():
            tasks = scheduler.fetch_now()
            await asyncio.sleep(0.05)
            scheduler.invalidate()
            release.set()
            return await asyncio.gather(*tasks, return_exceptions=True)

        results = asyncio.run(scenario())
        assert isinstance(results[0], asyncio.CancelledError)
        assert scheduler.epoch == 1
        assert not scheduler.is_in_flight(LOCATION)
        assert context.buffers.get("1", LOCATION) is None

    def test_invalidate_releases_throttle_slots(self, session_info, fake_client):
        context = make_context(session_info)
        throttle = RequestThrottle(5.0, monotonic=lambda: 50.0)
        scheduler = FetchScheduler(context, fake_client, JOBS[:3], throttle, NO_BACKOFF, tick_interval=1.0)

        async def scenario():
            tasks = scheduler.fetch_now()
            await asyncio.sleep(0.05)
            scheduler.invalidate()
            await asyncio.gather(*tasks, return_exceptions=True)
            return throttle.reserve()

        # only the first job was sent; the two queued behind it must not delay the next epoch
        assert asyncio.run(scenario()) == pytest.approx(5.0)
        assert len(fake_client.calls) == 1

    def test_fetch_now_lookback_widens_the_job_window(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client, jobs=JOBS[:3])

        async def scenario():
            return await asyncio.gather(*scheduler.fetch_now({POSITION: 300.0, CAR_DATA: 60.0}))

        asyncio.run(scenario())
        assert fake_client.channel_calls(POSITION) == [(POSITION, LAP1 - 270_000, LAP1 + 30_000, None)]
        assert fake_client.channel_calls(CAR_DATA) == [(CAR_DATA, LAP1 - 30_000, LAP1 + 32_000, "1")]
        assert fake_client.channel_calls(LOCATION) == [(LOCATION, LAP1 + 29_000, LAP1 + 33_000, None)]

    def test_fetch_now_skips_channel_already_in_flight(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client, jobs=[JOBS[2]])

        async def scenario():
            first = scheduler.fetch_now({POSITION: 300.0})
            second = scheduler.fetch_now({POSITION: 300.0})
            await asyncio.gather(*first)
            return first, second

        first, second = asyncio.run(scenario())
        assert len(first) == 1
        assert second == []
        assert len(fake_client.channel_calls(POSITION)) == 1

    def test_periodic_tasks_respect_cadence_and_enabled(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client, jobs=[])
        runs = []

        async def refresh():
            runs.append(scheduler.tick_count)

        live = {"value": True}
        scheduler.add_periodic("race_control", 2, refresh, enabled=lambda: live["value"])

        async def scenario():
            for tick in range(6):
                if tick == 4:
                    live["value"] = False
                await asyncio.gather(*scheduler.tick())

        asyncio.run(scenario())
        assert runs == [2, 4]

    def test_call_returns_none_for_stale_epoch(self, session_info, fake_client):
        scheduler = self.make_scheduler(make_context(session_info), fake_client, jobs=[])

        def bump():
            scheduler.epoch += 1
            return ["data"]

        assert asyncio.run(scheduler.call(bump, description="bump")) is None

"""
Replay engine.

Wires buffers, clock, live controller and fetch scheduler together for one
session and exposes the read and command API used by renderers. Everything runs
on one asyncio loop: a clock tick advances virtual time, a fetch tick refills
the buffers, and an optional render tick hands immutable frames to a callback.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from apexlive.config import ReplayConfig
from apexlive.data.buffer import BufferStore
from apexlive.data.channels import CAR_DATA, INTERVALS, LOCATION, POSITION, Sample, get_channel
from apexlive.data.openf1 import OpenF1Client
from apexlive.data.session import (Entity, SessionInfo, derive_session_window, pick_reference_lap,
                                   reference_lap_window)
from apexlive.derived import SectorLookup, longitudinal_g
from apexlive.errors import SessionLoadError
from apexlive.race_control import RaceControlAnalyzer, RaceStatus
from apexlive.replay.clock import ClockState, ReplayClock
from apexlive.replay.interpolation import InterpolatedSample, interpolate
from apexlive.replay.live import LiveModeController, wall_clock_ms
from apexlive.replay.scheduler import FetchScheduler, RequestThrottle, RetryPolicy
from apexlive.standings import Standings, StandingsBuilder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """What a renderer needs for one frame, detached from the live buffers."""
    clock: ClockState
    locations: Dict[str, InterpolatedSample] = field(default_factory=dict)
    tracked_entity: Optional[str] = None
    telemetry: Optional[Dict[str, float]] = None


class ReplayEngine:
    def __init__(self, config: ReplayConfig = None, client=None, now_fn=wall_clock_ms):
        self.config = config or ReplayConfig()
        self.client = client or OpenF1Client(self.config.base_url, timeout=self.config.request_timeout)
        self.now_fn = now_fn

        self.session: Optional[SessionInfo] = None
        self.entities: Dict[str, Entity] = {}
        self.tracked_entity: Optional[str] = None

        self.buffers = BufferStore(self.config.retention_by_channel)
        self.clock = ReplayClock(playback_speeds=self.config.playback_speeds,
                                 live_lag_s=self.config.live_lag)
        self.live = LiveModeController(self.clock,
                                       threshold_s=self.config.live_threshold,
                                       session_grace_s=self.config.live_session_grace,
                                       now_fn=now_fn)
        self.scheduler = FetchScheduler(
            self, self.client, self.config.fetch_jobs,
            throttle=RequestThrottle(self.config.min_request_spacing),
            policy=RetryPolicy.from_config(self.config),
            tick_interval=self.config.fetch_tick_interval,
        )
        self.scheduler.add_periodic("race_control", self.config.race_control_every_n_ticks,
                                    self.refresh_race_control, enabled=self.live.is_session_live)
        self.scheduler.add_periodic("laps", self.config.laps_every_n_ticks,
                                    self.refresh_laps, enabled=self.live.is_session_live)

        self.sectors = SectorLookup([])
        self.race_control = RaceControlAnalyzer()
        self.standings = StandingsBuilder([])

        self._tasks = []
        self._background = set()

    # --- Session lifecycle ---

    async def load_session(self, session: SessionInfo, tracked_entity=None):
        """
        Prepare the engine for a session: metadata, events, clock window, track
        reference and an initial fill of the buffers. Leaves the clock paused at
        the window start.

        Nothing is replaced until the session has been fetched and checked, so a
        failed load leaves the previous session playable.

        Raises:
            SessionLoadError: the source returned no entities for the session
            ValueError: tracked_entity is not a driver of the session
        """
        logger.info("Loading session %s (%s, %s)", session.session_key, session.session_name,
                    session.meeting_name)
        key = session.session_key
        entities = await self.scheduler.call(self.client.list_entities, key, description="drivers fetch")
        if not entities:
            raise SessionLoadError(f"No drivers found for session {key}")
        by_id = {e.entity_id: e for e in entities}
        if tracked_entity is not None and str(tracked_entity) not in by_id:
            raise ValueError(f"Unknown driver {tracked_entity} for session {key}")

        laps = await self.scheduler.call(self.client.get_laps, key, description="laps fetch") or []
        stints = await self.scheduler.call(self.client.get_stints, key, description="stints fetch") or []
        messages = await self.scheduler.call(self.client.get_race_control, key,
                                             description="race control fetch") or []
        window = derive_session_window(session, laps,
                                       start_offset_s=self.config.session_start_offset,
                                       end_grace_s=self.config.session_end_grace)
        sectors = await self._build_sector_lookup(key, laps)

        self.scheduler.invalidate()
        self.buffers.clear()
        self.session = session
        self.live.session = session
        self.entities = by_id
        self.tracked_entity = str(tracked_entity) if tracked_entity is not None else entities[0].entity_id
        self.clock.reset(window)
        self.standings = StandingsBuilder(entities, laps, stints)
        self.race_control = RaceControlAnalyzer(messages, known_entities=by_id)
        self.sectors = sectors

        await self.backfill()
        logger.info("Session loaded: %d drivers, %d laps, window %s..%s", len(entities), len(laps),
                    window.start_ms, window.end_ms)

    async def _build_sector_lookup(self, session_key, laps):
        lap = pick_reference_lap(laps, self.config.reference_entities,
                                 lap_number=self.config.reference_lap_number)
        if lap is None:
            logger.warning("No reference lap available, sector lookup disabled")
            return SectorLookup([])
        start_ms, end_ms = reference_lap_window(lap)
        locations = await self.scheduler.call(
            self.client.query_channel, session_key, get_channel(LOCATION),
            start_ms, end_ms, entity_id=lap.entity_id, description="reference lap fetch",
        )
        lookup = SectorLookup.from_reference_lap(locations or [], lap, stride=self.config.sector_stride)
        logger.info("Track reference from driver %s lap %d: %d points", lap.entity_id,
                    lap.lap_number, len(lookup))
        return lookup

    async def backfill(self):
        """
        Fill buffers around the current virtual time with one fetch per channel.
        The slow channels (positions only change on overtakes) reach further back.
        """
        await self._wait_for(self._launch_backfill())

    def _launch_backfill(self):
        if self.session is None or self.clock.virtual_time is None:
            return []
        lookback = {
            POSITION: self.config.seek_position_lookback,
            INTERVALS: self.config.seek_interval_lookback,
            CAR_DATA: self.config.chart_lookback,
        }
        return self.scheduler.fetch_now(lookback)

    @staticmethod
    async def _wait_for(tasks):
        await asyncio.gather(*tasks)

    async def refresh_race_control(self):
        messages = await self.scheduler.call(self.client.get_race_control, self.session.session_key,
                                             description="race control fetch")
        if messages is not None:
            self.race_control.update_messages(messages)

    async def refresh_laps(self):
        key = self.session.session_key
        laps = await self.scheduler.call(self.client.get_laps, key, description="laps fetch")
        stints = await self.scheduler.call(self.client.get_stints, key, description="stints fetch")
        self.standings.update_events(laps=laps, stints=stints)

    # --- Periodic tasks ---

    def tick(self, wall_delta_seconds):
        """One clock tick: advance virtual time, then re-evaluate the live head."""
        self.clock.advance(wall_delta_seconds)
        self.live.update()

    async def _clock_loop(self):
        interval = self.config.clock_tick_interval
        last = time.monotonic()
        while True:
            await asyncio.sleep(interval)
            now = time.monotonic()
            self.tick(now - last)
            last = now

    async def _render_loop(self, callback: Callable[[Frame], None]):
        interval = 1.0 / self.config.render_fps
        while True:
            callback(self.frame())
            await asyncio.sleep(interval)

    async def run(self, render_callback: Callable[[Frame], None] = None):
        """Run clock, fetch and (optionally) render ticks until cancelled."""
        self._tasks = [
            asyncio.create_task(self._clock_loop(), name="clock"),
            asyncio.create_task(self.scheduler.run(), name="fetch"),
        ]
        if render_callback is not None:
            self._tasks.append(asyncio.create_task(self._render_loop(render_callback), name="render"))
        try:
            await asyncio.gather(*self._tasks)
        finally:
            self.stop()

    def stop(self):
        for task in self._tasks + list(self._background):
            if not task.done():
                task.cancel()
        self._tasks = []
        self.scheduler.invalidate()

    def close(self):
        self.stop()
        self.client.close()

    def _spawn(self, start, name):
        """Run the coroutine returned by start() in the background. start is only called inside a loop."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, %s left to the next fetch tick", name)
            return None
        task = asyncio.ensure_future(start())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _refill(self):
        """Drop everything buffered and refetch around the new virtual time."""
        self.scheduler.invalidate()
        self.buffers.clear()
        # the fetches start here, before the next fetch tick can claim the same channels
        return self._spawn(lambda: self._wait_for(self._launch_backfill()), "backfill")

    # --- Commands ---

    def play(self):
        self.clock.play()

    def pause(self):
        self.clock.pause()

    def set_rate(self, multiplier) -> bool:
        return self.clock.set_rate(multiplier)

    def seek(self, absolute_ms):
        self.clock.seek(absolute_ms)
        self.live.update()
        logger.info("Seek to %s", self.clock.virtual_time)
        return self._refill()

    def go_live(self) -> bool:
        if not self.live.go_live():
            return False
        self._refill()
        return True

    def select_tracked_entity(self, entity_id):
        """
        Switch the driver whose car data is fetched.

        Raises:
            ValueError: entity_id is not a driver of the loaded session
        """
        entity_id = str(entity_id)
        if entity_id not in self.entities:
            raise ValueError(f"Unknown driver {entity_id}")
        if entity_id == self.tracked_entity:
            return None
        previous = self.buffers.get(self.tracked_entity, CAR_DATA) if self.tracked_entity else None
        if previous is not None:
            previous.clear()
        self.tracked_entity = entity_id
        logger.info("Tracking driver %s", entity_id)
        return self._refill()

    # --- Reads ---

    def get_clock_state(self) -> ClockState:
        return self.clock.snapshot()

    def get_interpolated_state(self, entity_id, channel) -> Optional[InterpolatedSample]:
        try:
            spec = get_channel(channel)
        except ValueError:
            return None
        now = self.clock.virtual_time
        if now is None:
            return None
        return interpolate(self.buffers.get(entity_id, channel), now, spec)

    def get_car_telemetry(self, entity_id) -> Optional[Dict[str, float]]:
        """Interpolated car data plus longitudinal g from the raw bracketing samples."""
        state = self.get_interpolated_state(entity_id, CAR_DATA)
        if state is None:
            return None
        telemetry = dict(state.values)
        telemetry["g_force"] = longitudinal_g(state.prev, state.next)
        return telemetry

    def get_sector(self, entity_id) -> Optional[int]:
        state = self.get_interpolated_state(entity_id, LOCATION)
        if state is None:
            return None
        return self.sectors.sector_at(state.values.get("x"), state.values.get("y"))

    def get_race_status(self) -> RaceStatus:
        now = self.clock.virtual_time
        if now is None:
            return RaceStatus()
        return self.race_control.status_at(now)

    def get_standings(self) -> Standings:
        now = self.clock.virtual_time
        return self.standings.build(now if now is not None else 0, self.get_interpolated_state,
                                    self.get_race_status())

    def get_chart_history(self, entity_id, channel=CAR_DATA) -> Tuple[Sample, ...]:
        """Raw samples from chart_lookback seconds ago up to the current virtual time."""
        buffer = self.buffers.get(entity_id, channel)
        now = self.clock.virtual_time
        if buffer is None or now is None:
            return ()
        since = now - self.config.chart_lookback * 1000
        return tuple(s for s in buffer.snapshot() if since <= s.timestamp <= now)

    def frame(self) -> Frame:
        locations = {}
        for entity_id in self.entities:
            state = self.get_interpolated_state(entity_id, LOCATION)
            if state is not None:
                locations[entity_id] = state
        telemetry = self.get_car_telemetry(self.tracked_entity) if self.tracked_entity else None
        return Frame(clock=self.get_clock_state(), locations=locations,
                     tracked_entity=self.tracked_entity, telemetry=telemetry)

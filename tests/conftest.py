"""
Pytest configuration and shared fixtures for apexlive tests.

This module provides common fixtures and a small in-memory stand-in for the
OpenF1 client so the scheduler and engine can be exercised without a network.
"""
import pytest

from apexlive.config import ReplayConfig
from apexlive.data.buffer import TimeSeriesBuffer
from apexlive.data.channels import CAR_DATA, INTERVALS, LOCATION, POSITION, Sample
from apexlive.data.events import Lap, RaceControlMessage, Stint
from apexlive.data.session import Entity, SessionInfo

# Scheduled session start (epoch ms) and the first lap-1 start
T0 = 1_700_000_000_000
LAP1 = T0 + 60_000
SESSION_END = T0 + 2 * 3600 * 1000
LONG_AFTER = SESSION_END + 10 * 24 * 3600 * 1000


def make_sample(entity_id, timestamp, **values):
    return Sample(entity_id=str(entity_id), timestamp=int(timestamp), values=dict(values))


class FakeOpenF1Client:
    """
    In-memory OpenF1 client.

    Holds every sample of a session up front and answers window queries the way
    the real API does: ``start <= date < end``, optionally for one driver.
    """

    def __init__(self, entities, samples=None, laps=(), stints=(), race_control=()):
        self.entities = list(entities)
        self.samples = {channel: list(s) for channel, s in (samples or {}).items()}
        self.laps = list(laps)
        self.stints = list(stints)
        self.race_control = list(race_control)
        self.calls = []
        self.closed = False

    def list_entities(self, session_key):
        self.calls.append(("drivers", session_key))
        return list(self.entities)

    def query_channel(self, session_key, channel, start_ms, end_ms, entity_id=None):
        self.calls.append((channel.name, start_ms, end_ms, entity_id))
        return [
            s for s in self.samples.get(channel.name, [])
            if start_ms <= s.timestamp < end_ms
            and (entity_id is None or not channel.per_entity or s.entity_id == entity_id)
        ]

    def get_laps(self, session_key, driver_number=None, lap_number=None):
        self.calls.append(("laps", session_key))
        return list(self.laps)

    def get_stints(self, session_key):
        self.calls.append(("stints", session_key))
        return list(self.stints)

    def get_race_control(self, session_key):
        self.calls.append(("race_control", session_key))
        return list(self.race_control)

    def close(self):
        self.closed = True

    def channel_calls(self, channel):
        return [c for c in self.calls if c[0] == channel]


# =============================================================================
# Sample and Buffer Fixtures
# =============================================================================

@pytest.fixture
def location_samples():
    """
    Three location samples for driver 1, one second apart, moving 10 m/s along x.

    Returns:
        list of Sample
    """
    return [
        make_sample("1", 1000, x=0.0, y=0.0, z=0.0),
        make_sample("1", 2000, x=10.0, y=0.0, z=0.0),
        make_sample("1", 3000, x=20.0, y=4.0, z=0.0),
    ]


@pytest.fixture
def location_buffer(location_samples):
    buffer = TimeSeriesBuffer("1", LOCATION, retention_seconds=60)
    buffer.insert_many(location_samples)
    return buffer


# =============================================================================
# Session Fixtures
# =============================================================================

@pytest.fixture
def session_info():
    return SessionInfo(
        session_key=9999,
        session_name="Race",
        start_ms=T0,
        end_ms=SESSION_END,
        meeting_key=1234,
        session_type="Race",
        location="Monza",
        country_name="Italy",
        year=2024,
    )


@pytest.fixture
def entities():
    return [
        Entity("1", "VER", "Max VERSTAPPEN", "Red Bull Racing", "#3671C6"),
        Entity("16", "LEC", "Charles LECLERC", "Ferrari", "#E8002D"),
    ]


@pytest.fixture
def laps():
    return [
        Lap("1", 1, LAP1, 88.0, 30.0, 29.0, 29.0),
        Lap("16", 1, LAP1 + 500, 88.5, 30.0, 29.5, 29.0),
        Lap("1", 2, LAP1 + 90_000, 90.0, 30.0, 30.0, 30.0),
        Lap("16", 2, LAP1 + 90_800, 90.2, 30.1, 30.0, 30.1),
    ]


@pytest.fixture
def stints():
    return [
        Stint("1", 1, "MEDIUM", lap_start=1, lap_end=None, tyre_age_at_start=3),
        Stint("16", 1, "SOFT", lap_start=1, lap_end=None, tyre_age_at_start=0),
    ]


@pytest.fixture
def race_control_messages():
    return [
        RaceControlMessage(LAP1 - 60_000, "GREEN LIGHT - PIT EXIT OPEN", "Flag", "GREEN"),
        RaceControlMessage(LAP1 + 10_000, "DRS ENABLED", "Drs"),
        RaceControlMessage(LAP1 + 200_000, "CAR 16 (LEC) STOPPED AT TURN 4", "Other"),
    ]


@pytest.fixture
def session_samples():
    """
    Five minutes of synthetic data from the first lap-1 start.

    Driver 1 moves at 10 m/s along x (x = 10 * seconds since LAP1), driver 16
    runs the same line 5 m to the side. Driver 1 speed rises by 1 km/h per
    second from 100 km/h. Positions are set two minutes before the start and
    swap 90 s in; intervals report every 4 s.
    """
    location, car_data, intervals = [], [], []
    for t in range(LAP1 - 10_000, LAP1 + 300_000, 250):
        seconds = (t - LAP1) / 1000.0
        location.append(make_sample("1", t, x=10.0 * seconds, y=0.0, z=0.0))
        location.append(make_sample("16", t, x=10.0 * seconds, y=5.0, z=0.0))
        car_data.append(make_sample("1", t, speed=100.0 + seconds, throttle=100.0, brake=0.0,
                                    rpm=11000.0, gear=7.0, drs=0.0))
    for t in range(LAP1 - 120_000, LAP1 + 300_000, 4000):
        intervals.append(make_sample("1", t, gap_to_leader=0.0, interval=0.0))
        intervals.append(make_sample("16", t, gap_to_leader=0.8, interval=0.8))
    position = [
        make_sample("1", LAP1 - 120_000, position=1.0),
        make_sample("16", LAP1 - 120_000, position=2.0),
        make_sample("16", LAP1 + 90_000, position=1.0),
        make_sample("1", LAP1 + 90_000, position=2.0),
    ]
    return {LOCATION: location, CAR_DATA: car_data, POSITION: position, INTERVALS: intervals}


@pytest.fixture
def fake_client(entities, session_samples, laps, stints, race_control_messages):
    return FakeOpenF1Client(entities, session_samples, laps, stints, race_control_messages)


# =============================================================================
# Config Fixtures
# =============================================================================

@pytest.fixture
def fast_config():
    """Default config with throttling and backoff switched off."""
    config = ReplayConfig()
    config.min_request_spacing = 0.0
    config.backoff_base = 0.0
    config.backoff_max = 0.0
    config.jitter = 0.0
    return config

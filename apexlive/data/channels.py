"""
Channel definitions and sample parsing.

A channel is a category of sampled data (location, car sensors, ...). Each
channel has a fixed set of fields; continuous fields are linearly interpolated
between samples while discrete fields (gear, DRS, position) are stepped.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from apexlive.lib.time import series_to_epoch_ms

logger = logging.getLogger(__name__)

SESSION_ENTITY = "session"

LOCATION = "location"
CAR_DATA = "car_data"
POSITION = "position"
INTERVALS = "intervals"
WEATHER = "weather"

LAPPED_PATTERN = re.compile(r"^\+?\s*(\d+)\s*LAPS?$", re.IGNORECASE)


@dataclass(frozen=True)
class Sample:
    """One observation of a channel for one entity at one instant (epoch ms)."""
    entity_id: str
    timestamp: int
    values: Dict[str, float] = field(default_factory=dict)

    def __getitem__(self, name):
        return self.values[name]

    def get(self, name, default=None):
        return self.values.get(name, default)


@dataclass(frozen=True)
class ChannelSpec:
    """
    Field layout of one channel.

    Args:
        name: Channel name used as the buffer key
        endpoint: OpenF1 endpoint path
        continuous: Fields that are linearly interpolated
        discrete: Fields held at the left bracket value
        source_names: API column name for fields whose name differs
        optional: Fields that fall back to a default instead of dropping the record
        nullable: Fields left out of the sample when the source has no number for them
        converters: Per-field parser applied to the raw value instead of numeric coercion
        per_entity: False for session-wide channels such as weather
    """
    name: str
    endpoint: str
    continuous: Tuple[str, ...] = ()
    discrete: Tuple[str, ...] = ()
    source_names: Dict[str, str] = field(default_factory=dict)
    optional: Dict[str, float] = field(default_factory=dict)
    nullable: Tuple[str, ...] = ()
    converters: Dict[str, Callable] = field(default_factory=dict)
    per_entity: bool = True

    @property
    def fields(self):
        return self.continuous + self.discrete

    def source_name(self, name):
        return self.source_names.get(name, name)


def laps_behind(value):
    """Laps a car is down from a gap value: 1.0 for "+1 LAP", 0.0 for a time or nothing."""
    if isinstance(value, str):
        match = LAPPED_PATTERN.match(value.strip())
        if match:
            return float(match.group(1))
    return 0.0


CHANNELS: Dict[str, ChannelSpec] = {
    LOCATION: ChannelSpec(
        name=LOCATION,
        endpoint="/location",
        continuous=("x", "y", "z"),
        optional={"z": 0.0},
    ),
    CAR_DATA: ChannelSpec(
        name=CAR_DATA,
        endpoint="/car_data",
        continuous=("speed", "throttle", "brake", "rpm"),
        discrete=("gear", "drs"),
        source_names={"gear": "n_gear"},
    ),
    POSITION: ChannelSpec(
        name=POSITION,
        endpoint="/position",
        discrete=("position",),
    ),
    INTERVALS: ChannelSpec(
        name=INTERVALS,
        endpoint="/intervals",
        continuous=("gap_to_leader", "interval"),
        discrete=("laps_down",),
        # The leader reports null gaps and lapped cars report "+1 LAP"; neither is a time
        source_names={"laps_down": "gap_to_leader"},
        nullable=("gap_to_leader", "interval"),
        converters={"laps_down": laps_behind},
    ),
    WEATHER: ChannelSpec(
        name=WEATHER,
        endpoint="/weather",
        continuous=("air_temperature", "track_temperature", "humidity", "pressure", "wind_speed"),
        # Direction wraps at 360 so it is stepped rather than interpolated
        discrete=("wind_direction", "rainfall"),
        optional={"pressure": 0.0, "wind_speed": 0.0, "wind_direction": 0.0, "rainfall": 0.0},
        per_entity=False,
    ),
}


def get_channel(name):
    try:
        return CHANNELS[name]
    except KeyError:
        raise ValueError(f"Unknown channel '{name}'. Expected one of {sorted(CHANNELS)}")


def parse_samples(records: List[dict], channel: ChannelSpec,
                  entity_id: Optional[str] = None) -> List[Sample]:
    """
    Turn raw API records into Samples, dropping malformed rows.

    A record is dropped when its date cannot be parsed, when it has no driver
    number on a per-entity channel, or when a required field is missing or not a
    finite number. Optional fields fall back to their default; nullable fields
    are left out of the sample, so no value is ever invented for them. A bad
    record never affects its siblings.

    Args:
        records: List of JSON objects as returned by the source
        channel: Channel the records belong to
        entity_id: Restrict to one entity (records for others are ignored)

    Returns:
        List of Samples in source order (not yet deduplicated or sorted)
    """
    if not records:
        return []

    df = pd.DataFrame([r for r in records if isinstance(r, dict)])
    if df.empty or "date" not in df:
        logger.debug("Dropped %d %s records without dates", len(records), channel.name)
        return []

    keep = pd.Series(True, index=df.index)
    df["_ts"] = series_to_epoch_ms(df["date"])
    keep &= df["_ts"].notna()

    if channel.per_entity:
        if "driver_number" not in df:
            logger.debug("Dropped %d %s records without driver numbers", len(df), channel.name)
            return []
        df["_entity"] = df["driver_number"].map(_entity_key)
        keep &= df["_entity"].notna()
        if entity_id is not None:
            keep &= df["_entity"] == str(entity_id)
    else:
        df["_entity"] = SESSION_ENTITY

    columns = {}
    for name in channel.fields:
        source = channel.source_name(name)
        raw = df[source] if source in df else pd.Series(np.nan, index=df.index)
        if name in channel.converters:
            numeric = raw.map(channel.converters[name]).astype(float)
        else:
            numeric = pd.to_numeric(raw, errors="coerce").astype(float)
        numeric[~np.isfinite(numeric)] = np.nan
        if name in channel.optional:
            numeric = numeric.fillna(channel.optional[name])
        elif name not in channel.nullable:
            keep &= numeric.notna()
        columns[name] = numeric

    dropped = int((~keep).sum())
    if dropped:
        logger.debug("Dropped %d malformed %s records", dropped, channel.name)

    samples = []
    for idx in df.index[keep.to_numpy()]:
        values = {}
        for name in channel.fields:
            value = columns[name][idx]
            # only nullable fields can still be NaN here
            if np.isnan(value):
                continue
            values[name] = float(value)
        samples.append(Sample(
            entity_id=df.at[idx, "_entity"],
            timestamp=int(df.at[idx, "_ts"]),
            values=values,
        ))
    return samples


def _entity_key(value):
    if value is None or (isinstance(value, float) and not np.isfinite(value)):
        return None
    try:
        return str(int(value))
    except (ValueError, TypeError):
        return None

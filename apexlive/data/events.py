"""
Session-level event records: lap boundaries, tyre stints and race control messages.

Unlike channel samples these are not interpolated. They are loaded for the whole
session and filtered by the virtual clock when read.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from apexlive.lib.time import to_epoch_ms
from apexlive.lib.tyres import normalize_compound
from apexlive.lib.utils import safe_float, safe_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lap:
    """A lap boundary event with per-sector durations (seconds)."""
    entity_id: str
    lap_number: int
    date_start: Optional[int]
    lap_duration: Optional[float] = None
    duration_sector_1: Optional[float] = None
    duration_sector_2: Optional[float] = None
    duration_sector_3: Optional[float] = None

    @property
    def sector_durations(self):
        return (self.duration_sector_1, self.duration_sector_2, self.duration_sector_3)

    @property
    def is_complete(self):
        return self.date_start is not None and self.lap_duration is not None


@dataclass(frozen=True)
class Stint:
    """A tyre stint: compound used from lap_start to lap_end (None while still running)."""
    entity_id: str
    stint_number: int
    compound: str
    lap_start: int
    lap_end: Optional[int] = None
    tyre_age_at_start: int = 0


@dataclass(frozen=True)
class RaceControlMessage:
    timestamp: int
    message: str
    category: str = ""
    flag: Optional[str] = None
    driver_number: Optional[str] = None


def parse_laps(records) -> List[Lap]:
    laps = []
    for record in records or []:
        try:
            entity = str(int(record["driver_number"]))
            lap_number = int(record["lap_number"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropped malformed lap record: %r", record)
            continue
        laps.append(Lap(
            entity_id=entity,
            lap_number=lap_number,
            date_start=to_epoch_ms(record.get("date_start")),
            lap_duration=safe_float(record.get("lap_duration")),
            duration_sector_1=safe_float(record.get("duration_sector_1")),
            duration_sector_2=safe_float(record.get("duration_sector_2")),
            duration_sector_3=safe_float(record.get("duration_sector_3")),
        ))
    laps.sort(key=lambda lap: (lap.date_start is None, lap.date_start or 0, lap.lap_number))
    return laps


def parse_stints(records) -> List[Stint]:
    stints = []
    for record in records or []:
        try:
            entity = str(int(record["driver_number"]))
            lap_start = int(record["lap_start"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropped malformed stint record: %r", record)
            continue
        lap_end = record.get("lap_end")
        stints.append(Stint(
            entity_id=entity,
            stint_number=safe_int(record.get("stint_number"), default=0),
            compound=normalize_compound(record.get("compound")),
            lap_start=lap_start,
            lap_end=safe_int(lap_end, default=None) if lap_end is not None else None,
            tyre_age_at_start=safe_int(record.get("tyre_age_at_start"), default=0),
        ))
    stints.sort(key=lambda s: (s.entity_id, s.lap_start))
    return stints


def parse_race_control(records) -> List[RaceControlMessage]:
    messages = []
    for record in records or []:
        if not isinstance(record, dict):
            continue
        timestamp = to_epoch_ms(record.get("date"))
        text = record.get("message")
        if timestamp is None or not text:
            logger.debug("Dropped malformed race control record: %r", record)
            continue
        driver = safe_int(record.get("driver_number"), default=None)
        messages.append(RaceControlMessage(
            timestamp=timestamp,
            message=str(text),
            category=str(record.get("category") or ""),
            flag=record.get("flag"),
            driver_number=str(driver) if driver is not None else None,
        ))
    messages.sort(key=lambda m: m.timestamp)
    return messages

"""Leaderboard rows assembled from interpolated channels and session events at one instant."""
from dataclasses import dataclass
from typing import Callable, List, Optional

from apexlive.data.channels import INTERVALS, POSITION
from apexlive.data.events import Lap, Stint
from apexlive.data.session import Entity
from apexlive.lib.time import format_lap_time
from apexlive.lib.tyres import find_active_stint, tyre_age
from apexlive.race_control import RaceStatus

UNRANKED = 999
DRS_WINDOW_S = 1.0


@dataclass(frozen=True)
class StandingRow:
    entity_id: str
    code: str
    team: str
    color: str
    position: int
    gap_to_leader: Optional[float]
    interval: Optional[float]
    current_lap: int
    last_lap_time: str
    tyre: str
    tyre_age: int
    status: str
    drs_available: bool
    laps_down: int = 0

    @property
    def gap_text(self):
        if self.laps_down:
            return f"+{self.laps_down} LAP" + ("S" if self.laps_down > 1 else "")
        if self.gap_to_leader is None:
            return "-"
        return f"{self.gap_to_leader:.3f}"


@dataclass(frozen=True)
class Standings:
    rows: List[StandingRow]
    completed_laps: int
    total_laps: int

    @property
    def display_lap(self):
        if self.total_laps and self.completed_laps >= self.total_laps:
            return self.total_laps
        return self.completed_laps + 1

    @property
    def leader(self) -> Optional[StandingRow]:
        return self.rows[0] if self.rows else None


class StandingsBuilder:
    """
    Builds the leaderboard.

    ``state_fn(entity_id, channel)`` returns the interpolated sample for a channel
    (or None); it is the engine's ``get_interpolated_state``.
    """

    def __init__(self, entities: List[Entity], laps: List[Lap] = None, stints: List[Stint] = None):
        self.entities = list(entities)
        self.laps = list(laps or [])
        self.stints = list(stints or [])
        self.total_laps = max((lap.lap_number for lap in self.laps), default=0)

    def update_events(self, laps=None, stints=None):
        if laps is not None:
            self.laps = list(laps)
            self.total_laps = max((lap.lap_number for lap in self.laps), default=0)
        if stints is not None:
            self.stints = list(stints)

    def latest_lap(self, entity_id, now_ms) -> Optional[Lap]:
        """The lap the entity is on at now_ms (highest lap number already started)."""
        latest = None
        for lap in self.laps:
            if lap.entity_id != entity_id or lap.date_start is None or lap.date_start > now_ms:
                continue
            if latest is None or lap.lap_number > latest.lap_number:
                latest = lap
        return latest

    def last_completed_lap(self, entity_id, now_ms) -> Optional[Lap]:
        """Latest lap whose end (start + duration) is not after now_ms."""
        latest = None
        for lap in self.laps:
            if lap.entity_id != entity_id or not lap.is_complete:
                continue
            if lap.date_start + lap.lap_duration * 1000 > now_ms:
                continue
            if latest is None or lap.lap_number > latest.lap_number:
                latest = lap
        return latest

    def build(self, now_ms, state_fn: Callable, race_status: RaceStatus = None) -> Standings:
        race_status = race_status or RaceStatus()
        rows = []
        completed_laps = 0

        for entity in self.entities:
            position_state = state_fn(entity.entity_id, POSITION)
            interval_state = state_fn(entity.entity_id, INTERVALS)

            position = int(position_state["position"]) if position_state else 0
            # Gaps the source reported as null or as laps stay unknown
            gap = interval_state.get("gap_to_leader") if interval_state else None
            interval = interval_state.get("interval") if interval_state else None
            laps_down = int(interval_state.get("laps_down", 0)) if interval_state else 0

            lap = self.latest_lap(entity.entity_id, now_ms)
            current_lap = lap.lap_number if lap else 1
            last_lap = self.last_completed_lap(entity.entity_id, now_ms)
            last_lap_time = format_lap_time(last_lap.lap_duration) if last_lap else "-"
            if position == 1:
                completed_laps = current_lap - 1

            stint = find_active_stint(self.stints, entity.entity_id, current_lap)
            tyre = stint.compound if stint else "UNKNOWN"
            age = tyre_age(stint, current_lap) if stint else 0

            retired = entity.entity_id in race_status.retired
            status = "OUT" if retired else "ACTIVE"
            if retired or position == 1:
                gap, interval, laps_down = 0.0, 0.0, 0

            drs_available = (race_status.drs_enabled and status == "ACTIVE"
                             and interval is not None
                             and position not in (0, 1) and interval < DRS_WINDOW_S)

            rows.append(StandingRow(
                entity_id=entity.entity_id,
                code=entity.code,
                team=entity.group_name,
                color=entity.color_hint,
                position=position,
                gap_to_leader=gap,
                interval=interval,
                current_lap=current_lap,
                last_lap_time=last_lap_time,
                tyre=tyre,
                tyre_age=age,
                status=status,
                drs_available=drs_available,
                laps_down=laps_down,
            ))

        rows.sort(key=lambda r: (r.status == "OUT", r.position or UNRANKED))
        return Standings(rows=rows, completed_laps=completed_laps, total_laps=self.total_laps)

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from apexlive.lib.time import to_epoch_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    session_key: int
    session_name: str
    start_ms: int
    end_ms: int
    meeting_key: Optional[int] = None
    session_type: str = ""
    location: str = ""
    country_name: str = ""
    year: Optional[int] = None
    metadata: Dict[str, object] = field(default_factory=dict, compare=False)

    @property
    def meeting_name(self):
        return f"{self.country_name} - {self.location}"

    @property
    def is_race(self):
        return self.session_name.lower() == "race"


@dataclass(frozen=True)
class Entity:
    """A tracked vehicle."""
    entity_id: str
    code: str
    display_name: str
    group_name: str = ""
    color_hint: str = "#333333"
    headshot_url: Optional[str] = None


@dataclass(frozen=True)
class SessionWindow:
    start_ms: int
    end_ms: int

    def clamp(self, t_ms):
        return min(max(t_ms, self.start_ms), self.end_ms)

    def contains(self, t_ms):
        return self.start_ms <= t_ms <= self.end_ms


def parse_sessions(records) -> List[SessionInfo]:
    """Sessions sorted by start time; records without usable dates are dropped."""
    sessions = []
    for record in records or []:
        try:
            key = int(record["session_key"])
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropped malformed session record: %r", record)
            continue
        start_ms = to_epoch_ms(record.get("date_start"))
        end_ms = to_epoch_ms(record.get("date_end"))
        if start_ms is None or end_ms is None:
            logger.debug("Dropped session %s without start/end dates", key)
            continue
        sessions.append(SessionInfo(
            session_key=key,
            session_name=str(record.get("session_name") or ""),
            start_ms=start_ms,
            end_ms=end_ms,
            meeting_key=record.get("meeting_key"),
            session_type=str(record.get("session_type") or ""),
            location=str(record.get("location") or ""),
            country_name=str(record.get("country_name") or ""),
            year=record.get("year"),
            metadata=dict(record),
        ))
    sessions.sort(key=lambda s: s.start_ms)
    return sessions


def parse_entities(records) -> List[Entity]:
    entities = []
    seen = set()
    for record in records or []:
        try:
            entity_id = str(int(record["driver_number"]))
        except (KeyError, TypeError, ValueError):
            logger.debug("Dropped malformed driver record: %r", record)
            continue
        if entity_id in seen:
            continue
        seen.add(entity_id)
        colour = record.get("team_colour")
        entities.append(Entity(
            entity_id=entity_id,
            code=str(record.get("name_acronym") or entity_id),
            display_name=str(record.get("full_name") or record.get("broadcast_name") or entity_id),
            group_name=str(record.get("team_name") or ""),
            color_hint=f"#{colour}" if colour else "#333333",
            headshot_url=record.get("headshot_url"),
        ))
    return entities


def group_by_meeting(sessions: List[SessionInfo]) -> Dict[int, List[SessionInfo]]:
    grouped: Dict[int, List[SessionInfo]] = {}
    for s in sessions:
        grouped.setdefault(s.meeting_key, []).append(s)
    for meeting_sessions in grouped.values():
        meeting_sessions.sort(key=lambda s: s.start_ms)
    return grouped


def pick_default_session(sessions: List[SessionInfo]) -> Optional[SessionInfo]:
    """The race of the latest meeting, falling back to its last session."""
    if not sessions:
        return None
    grouped = group_by_meeting(sessions)
    latest = max(grouped.values(), key=lambda group: group[0].start_ms)
    for s in latest:
        if s.is_race:
            return s
    for s in latest:
        if "race" in s.session_name.lower():
            return s
    return latest[-1]


def derive_session_window(session: SessionInfo, laps, start_offset_s=300.0,
                          end_grace_s=1200.0) -> SessionWindow:
    """
    Replayable range for a session.

    Starts at the earliest lap-1 start (the formation is skipped) or, when no lap 1
    is known, start_offset_s after the scheduled start. Ends end_grace_s after the
    scheduled end so post-flag laps are still reachable.
    """
    lap1_starts = [lap.date_start for lap in laps if lap.lap_number == 1 and lap.date_start is not None]
    if lap1_starts:
        start_ms = min(lap1_starts)
    else:
        start_ms = session.start_ms + int(start_offset_s * 1000)
    end_ms = session.end_ms + int(end_grace_s * 1000)
    if end_ms < start_ms:
        end_ms = start_ms
    return SessionWindow(start_ms=start_ms, end_ms=end_ms)


def pick_reference_lap(laps, preferred_entities=(), lap_number=2):
    """
    A clean lap to build the track reference from.

    Tries the preferred entities first and needs sector timing on the lap; falls
    back to any entity's lap with that number.
    """
    candidates = [lap for lap in laps if lap.lap_number == lap_number and lap.is_complete]
    for entity_id in preferred_entities:
        for lap in candidates:
            if lap.entity_id == str(entity_id) and all(d is not None for d in lap.sector_durations):
                return lap
    for lap in candidates:
        if all(d is not None for d in lap.sector_durations):
            return lap
    return candidates[0] if candidates else None


def reference_lap_window(lap, tail_s=5.0) -> Tuple[int, int]:
    return lap.date_start, lap.date_start + int((lap.lap_duration + tail_s) * 1000)

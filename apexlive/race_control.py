"""
Race Control Enrichment Module

Classifies free-text race control messages into structured race state:
- Retirements (RETIRED / DNF / STOPPED / WITHDRAWN)
- Track status (green, yellow, safety car, virtual safety car, red flag)
- DRS enabled / disabled

This is keyword and regex matching over human-written text. It is a best-effort
pass with known false positives (e.g. "CAR 14 STOPPED" for a car that later
rejoins) and false negatives (unusual wording), and it is kept separate from the
replay core for that reason.
"""

import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional

from apexlive.data.events import RaceControlMessage

RETIREMENT_KEYWORDS = ("RETIRED", "DNF", "STOPPED", "WITHDRAWN")
CAR_NUMBER_PATTERN = re.compile(r"(?:CAR|NO\.?|DRIVER)\s*(\d+)", re.IGNORECASE)
STATUS_PATTERN = re.compile(r"SAFETY CAR|VIRTUAL|VSC|RED FLAG|YELLOW FLAG|GREEN FLAG|TRACK CLEAR|RESUME")

FEED_LENGTH = 50


@dataclass(frozen=True)
class RaceStatus:
    """Race state inferred from race control messages up to one instant"""
    track_status: str = "GREEN"
    drs_enabled: bool = False
    retired: FrozenSet[str] = frozenset()
    feed: List[RaceControlMessage] = field(default_factory=list)  # newest first


def classify_track_status(text: str) -> Optional[str]:
    """Map one status message to a track status, or None if it is not a status message"""
    text = text.upper()
    if not STATUS_PATTERN.search(text):
        return None
    # "ENDING" still counts as deployed: the car is out until the next green
    if "VIRTUAL" in text or "VSC" in text:
        return "VSC"
    if "SAFETY CAR" in text:
        return "SC"
    if "RED" in text and "CLEAR" not in text:
        return "RED"
    if "YELLOW" in text and "CLEAR" not in text:
        return "YELLOW"
    if "GREEN" in text or "CLEAR" in text or "RESUME" in text:
        return "GREEN"
    return None


def retired_entity(message: RaceControlMessage, known_entities: Iterable[str]) -> Optional[str]:
    """Driver a retirement message refers to, if it is one and names a known driver"""
    text = message.message.upper()
    if not any(keyword in text for keyword in RETIREMENT_KEYWORDS):
        return None

    target = message.driver_number
    if target is None:
        match = CAR_NUMBER_PATTERN.search(text)
        if match:
            target = str(int(match.group(1)))

    if target is not None and target in set(known_entities):
        return target
    return None


class RaceControlAnalyzer:
    """Derives RaceStatus from the message stream of one session"""

    def __init__(self, messages: List[RaceControlMessage] = None, known_entities: Iterable[str] = ()):
        self.messages = sorted(messages or [], key=lambda m: m.timestamp)
        self.known_entities = frozenset(str(e) for e in known_entities)

    def update_messages(self, messages: List[RaceControlMessage]):
        self.messages = sorted(messages, key=lambda m: m.timestamp)

    def messages_until(self, now_ms) -> List[RaceControlMessage]:
        """Messages published at or before now_ms, newest first"""
        return [m for m in reversed(self.messages) if m.timestamp <= now_ms]

    def status_at(self, now_ms) -> RaceStatus:
        visible = self.messages_until(now_ms)

        retired = set()
        for message in visible:
            entity = retired_entity(message, self.known_entities)
            if entity is not None:
                retired.add(entity)

        track_status = "GREEN"
        for message in visible:
            status = classify_track_status(message.message)
            if status is not None:
                track_status = status
                break

        drs_enabled = False
        for message in visible:
            text = message.message.upper()
            if "DRS" not in text:
                continue
            if "ENABLED" in text:
                drs_enabled = True
                break
            if "DISABLED" in text:
                drs_enabled = False
                break

        return RaceStatus(
            track_status=track_status,
            drs_enabled=drs_enabled,
            retired=frozenset(retired),
            feed=visible[:FEED_LENGTH],
        )

import copy
import logging
import logging.config
import os
from dataclasses import dataclass

import yaml

logger = logging.getLogger(__name__)

SCOPES = ("all", "tracked", "session")


@dataclass(frozen=True)
class FetchJob:
    """One periodic request: a channel, who it covers and which window to ask for."""
    channel: str
    scope: str
    window_before: float
    window_after: float
    retention: float
    every_n_ticks: int = 1

    @classmethod
    def from_dict(cls, raw):
        scope = raw.get("scope", "all")
        if scope not in SCOPES:
            raise ValueError(f"Fetch job scope must be one of {SCOPES}, got '{scope}'")
        return cls(
            channel=raw["channel"],
            scope=scope,
            window_before=float(raw.get("window_before", 1.0)),
            window_after=float(raw.get("window_after", 0.0)),
            retention=float(raw.get("retention", 10.0)),
            every_n_ticks=max(1, int(raw.get("every_n_ticks", 1))),
        )


class ReplayConfig:
    def __init__(self, overrides_path=None):
        self.CONFIG_FILE_DIRECTORY = os.path.join(os.path.dirname(__file__), "config_files")
        self.LOGGING_CONFIG = self.load_config_file("logging_config.yaml")
        self.REPLAY_CONFIG = self.load_config_file("replay_config.yaml")
        if overrides_path:
            with open(overrides_path, "r") as f:
                overrides = yaml.safe_load(f) or {}
            self.REPLAY_CONFIG = deep_merge(self.REPLAY_CONFIG, overrides)
        self._apply(self.REPLAY_CONFIG)

    def load_config_file(self, file):
        filepath = os.path.join(self.CONFIG_FILE_DIRECTORY, file)
        with open(filepath, "r") as f:
            return yaml.safe_load(f) or {}

    def _apply(self, cfg):
        source = cfg.get("source", {})
        self.base_url = source.get("base_url", "https://api.openf1.org/v1")
        self.request_timeout = float(source.get("request_timeout", 10.0))

        clock = cfg.get("clock", {})
        self.clock_tick_interval = float(clock.get("tick_interval", 0.1))
        self.playback_speeds = tuple(float(s) for s in clock.get("playback_speeds", [1, 5, 10, 30]))
        if 1.0 not in self.playback_speeds:
            raise ValueError("playback_speeds must include 1")

        live = cfg.get("live", {})
        self.live_lag = float(live.get("lag", 30.0))
        self.live_threshold = float(live.get("threshold", 60.0))
        self.live_session_grace = float(live.get("session_grace", 7200.0))

        session = cfg.get("session", {})
        self.session_start_offset = float(session.get("start_offset", 300.0))
        self.session_end_grace = float(session.get("end_grace", 1200.0))
        self.reference_lap_number = int(session.get("reference_lap_number", 2))
        self.reference_entities = tuple(str(e) for e in session.get("reference_entities", []))

        fetch = cfg.get("fetch", {})
        self.fetch_tick_interval = float(fetch.get("tick_interval", 1.0))
        self.min_request_spacing = float(fetch.get("min_request_spacing", 0.2))
        self.max_retries = int(fetch.get("max_retries", 3))
        self.backoff_base = float(fetch.get("backoff_base", 1.0))
        self.backoff_max = float(fetch.get("backoff_max", 8.0))
        self.jitter = float(fetch.get("jitter", 0.5))
        self.fetch_jobs = tuple(FetchJob.from_dict(job) for job in fetch.get("jobs", []))

        events = cfg.get("events", {})
        self.race_control_every_n_ticks = max(1, int(events.get("race_control_every_n_ticks", 5)))
        self.laps_every_n_ticks = max(1, int(events.get("laps_every_n_ticks", 30)))

        seek = cfg.get("seek", {})
        self.seek_position_lookback = float(seek.get("position_lookback", 300.0))
        self.seek_interval_lookback = float(seek.get("interval_lookback", 120.0))
        self.chart_lookback = float(seek.get("chart_lookback", 60.0))

        self.sector_stride = max(1, int(cfg.get("derived", {}).get("sector_stride", 5)))
        self.render_fps = float(cfg.get("render", {}).get("fps", 60))

    @property
    def retention_by_channel(self):
        return {job.channel: job.retention for job in self.fetch_jobs}

    def job_for(self, channel):
        for job in self.fetch_jobs:
            if job.channel == channel:
                return job
        return None


def deep_merge(base, overrides):
    """Recursively merge overrides into a copy of base. Lists are replaced, not merged."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def setup_logging(config=None, level=None):
    """Configure logging from logging_config.yaml; level overrides the apexlive logger level."""
    config = config or ReplayConfig()
    logging.config.dictConfig(config.LOGGING_CONFIG)
    if level is not None:
        package_logger = logging.getLogger("apexlive")
        package_logger.setLevel(level)
        for handler in package_logger.handlers:
            handler.setLevel(level)

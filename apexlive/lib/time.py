"""Time conversion helpers.

Every instant inside the engine is an integer count of milliseconds since the
Unix epoch (UTC). These helpers convert to and from the ISO-8601 strings the
OpenF1 API uses and format values for display.
"""
import pandas as pd

_EPOCH = pd.Timestamp("1970-01-01", tz="UTC")


def to_epoch_ms(value):
    """
    Convert an ISO-8601 string, ``datetime`` or ``pd.Timestamp`` to epoch milliseconds.

    Naive values are taken as UTC. Returns None if the value cannot be parsed.

    Examples:
        >>> to_epoch_ms("1970-01-01T00:00:01.500Z")
        1500
        >>> to_epoch_ms("not a date") is None
        True
    """
    if value is None:
        return None
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError):
        return None
    if ts is pd.NaT:
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return int(ts.value // 1_000_000)


def series_to_epoch_ms(series):
    """
    Vectorised ISO-8601 parsing for a pandas Series.

    Returns a float Series of epoch milliseconds with NaN where parsing failed.
    """
    parsed = pd.to_datetime(series, utc=True, errors="coerce", format="ISO8601")
    ms = pd.Series(float("nan"), index=series.index)
    valid = parsed.notna()
    ms[valid] = (parsed[valid] - _EPOCH) // pd.Timedelta(milliseconds=1)
    return ms


def to_iso(ms):
    """Format epoch milliseconds as an ISO-8601 UTC string with a ``Z`` suffix."""
    ts = pd.Timestamp(int(ms), unit="ms", tz="UTC")
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def format_time(seconds):
    """
    Format a duration in seconds as ``MM:SS.sss``.

    Returns ``"N/A"`` for None or negative input.
    """
    if seconds is None or seconds < 0:
        return "N/A"
    total_ms = int(round(seconds * 1000))
    minutes, rem_ms = divmod(total_ms, 60_000)
    secs, millis = divmod(rem_ms, 1000)
    return f"{minutes:02d}:{secs:02d}.{millis:03d}"


def format_lap_time(seconds):
    """Lap time as ``M:SS.sss``; ``"-"`` when there is no valid time."""
    if seconds is None or seconds <= 0:
        return "-"
    total_ms = int(round(seconds * 1000))
    minutes, rem_ms = divmod(total_ms, 60_000)
    return f"{minutes}:{rem_ms / 1000:06.3f}"


def format_clock(ms):
    """Wall-clock style ``HH:MM:SS`` (UTC) for a virtual time, ``--:--:--`` if unset."""
    if ms is None:
        return "--:--:--"
    return pd.Timestamp(int(ms), unit="ms", tz="UTC").strftime("%H:%M:%S")

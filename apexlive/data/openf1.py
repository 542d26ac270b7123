"""
Client for the OpenF1 HTTP API (https://openf1.org).

The client is synchronous and does a single attempt per call. Throttling and
retry with backoff live in the async layer (``apexlive.replay.scheduler``), so a
seek can cancel a request that is waiting out a backoff.
"""
import logging
from typing import List, Optional

import requests

from apexlive.data.channels import ChannelSpec, parse_samples
from apexlive.data.events import parse_laps, parse_race_control, parse_stints
from apexlive.data.session import SessionInfo, parse_entities, parse_sessions
from apexlive.errors import RateLimitedError, SourceResponseError, SourceUnavailableError
from apexlive.lib.time import to_iso

logger = logging.getLogger(__name__)

API_BASE = "https://api.openf1.org/v1"

HEADERS = {
    'User-Agent': 'ApexLiveReplay/1.0'
}


class OpenF1Client:
    def __init__(self, base_url=API_BASE, timeout=10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update(HEADERS)

    def close(self):
        self.http.close()

    def get_json(self, endpoint, filters):
        """
        GET an endpoint with OpenF1 filters.

        Filters are ``(key, op, value)`` tuples, e.g. ``("date", ">=", iso)``, and
        are written into the query string verbatim because OpenF1 encodes the
        comparison operator in the parameter itself.

        Raises:
            RateLimitedError: HTTP 429
            SourceUnavailableError: connection error, timeout or HTTP 5xx
            SourceResponseError: any other non-2xx status, or a body that is not a JSON list
        """
        query = "&".join(f"{key}{op}{value}" for key, op, value in filters)
        url = f"{self.base_url}{endpoint}"
        if query:
            url = f"{url}?{query}"

        try:
            response = self.http.get(url, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise SourceUnavailableError(f"OpenF1 request failed: {e}", endpoint=endpoint) from e

        if response.status_code == 429:
            raise RateLimitedError("OpenF1 rate limit exceeded", endpoint=endpoint, status_code=429)
        if response.status_code >= 500:
            raise SourceUnavailableError(f"OpenF1 server error {response.status_code}",
                                         endpoint=endpoint, status_code=response.status_code)
        if response.status_code == 404:
            # OpenF1 answers 404 for a filter that matches nothing
            return []
        if not response.ok:
            raise SourceResponseError(f"OpenF1 API Error: {response.status_code} {response.reason}",
                                      endpoint=endpoint, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise SourceResponseError("OpenF1 returned a body that is not JSON", endpoint=endpoint) from e
        if isinstance(data, dict) and "detail" in data:
            # "No results found." comes back as an object
            return []
        if not isinstance(data, list):
            raise SourceResponseError(f"Unexpected OpenF1 payload type {type(data).__name__}",
                                      endpoint=endpoint)
        return data

    # --- Session metadata ---

    def list_sessions(self, year) -> List[SessionInfo]:
        return parse_sessions(self.get_json("/sessions", [("year", "=", int(year))]))

    def list_entities(self, session_key):
        return parse_entities(self.get_json("/drivers", [("session_key", "=", session_key)]))

    # --- Time-series channels ---

    def query_channel(self, session_key, channel: ChannelSpec, start_ms, end_ms,
                      entity_id: Optional[str] = None):
        """Samples of one channel in [start_ms, end_ms) for one entity or, if entity_id is None, all."""
        filters = [("session_key", "=", session_key)]
        if entity_id is not None and channel.per_entity:
            filters.append(("driver_number", "=", entity_id))
        filters.append(("date", ">=", to_iso(start_ms)))
        filters.append(("date", "<", to_iso(end_ms)))
        records = self.get_json(channel.endpoint, filters)
        return parse_samples(records, channel, entity_id=entity_id)

    # --- Session-level events ---

    def get_laps(self, session_key, driver_number=None, lap_number=None):
        filters = [("session_key", "=", session_key)]
        if driver_number is not None:
            filters.append(("driver_number", "=", driver_number))
        if lap_number is not None:
            filters.append(("lap_number", "=", lap_number))
        return parse_laps(self.get_json("/laps", filters))

    def get_stints(self, session_key):
        return parse_stints(self.get_json("/stints", [("session_key", "=", session_key)]))

    def get_race_control(self, session_key):
        return parse_race_control(self.get_json("/race_control", [("session_key", "=", session_key)]))

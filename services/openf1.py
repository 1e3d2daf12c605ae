"""OpenF1 API helpers.

An async client for https://api.openf1.org plus the functions that turn
its JSON rows into the shapes the replay engine works with.

Notes:
- Timestamps are converted to milliseconds since session start (time_ms)
  with the helpers in replay/timeline.py.
- Requests are spaced by a global minimum interval and retried with
  exponential backoff. A request that still fails raises FetchError.
- Archived sessions never change, so non-empty responses can be cached in
  SQLite (see repo/cache_repo.py). Cache reads and writes run in a worker
  thread so they never block the tick loop.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from replay.driver_state import DriverInfo
from replay.errors import FetchError
from replay.timeline import ms_since, parse_iso

logger = logging.getLogger(__name__)

OPENF1_BASE = "https://api.openf1.org/v1"


def normalize_driver(row: Dict[str, Any]) -> Optional[DriverInfo]:
    """Build a DriverInfo from an OpenF1 /drivers row; None for rows without a number."""
    number = row.get("driver_number")
    if number is None:
        return None

    first = row.get("first_name")
    last = row.get("last_name")
    if first and last:
        name = f"{first.title()} {last.title()}"
    else:
        raw_name = row.get("full_name")
        name = raw_name.title() if raw_name else None

    acronym = row.get("name_acronym") or (last[:3].upper() if last else None)
    colour = row.get("team_colour")
    return DriverInfo(
        number=int(number),
        full_name=name,
        acronym=acronym,
        team_name=row.get("team_name"),
        team_color=f"#{colour}" if colour else "#777777",
    )


def normalize_drivers(rows: List[Dict[str, Any]]) -> List[DriverInfo]:
    """Normalized drivers sorted by number, one per driver number."""
    drivers: Dict[int, DriverInfo] = {}
    for row in rows:
        info = normalize_driver(row)
        if info is not None:
            drivers.setdefault(info.number, info)
    return [drivers[n] for n in sorted(drivers)]


def normalize_results(
    rows: List[Dict[str, Any]],
) -> Tuple[Dict[int, int], Dict[int, List[Optional[float]]]]:
    """Split /session_result rows into lap counts and per-phase durations."""
    lap_counts: Dict[int, int] = {}
    durations: Dict[int, List[Optional[float]]] = {}
    for row in rows:
        number = row.get("driver_number")
        if not number:
            continue
        number = int(number)
        if row.get("number_of_laps") is not None:
            lap_counts[number] = int(row["number_of_laps"])
        duration = row.get("duration")
        # race sessions report a single duration instead of one per phase
        durations[number] = list(duration) if isinstance(duration, list) else []
    return lap_counts, durations


def normalize_control_events(
    rows: List[Dict[str, Any]], session_start: datetime
) -> List[Tuple[float, Optional[str]]]:
    """(time_ms, phase label) for each race control message with a parseable date."""
    events: List[Tuple[float, Optional[str]]] = []
    for row in rows:
        if not row.get("date"):
            continue
        try:
            t = ms_since(session_start, parse_iso(row["date"]))
        except ValueError:
            continue
        phase = row.get("qualifying_phase")
        events.append((t, f"Q{phase}" if phase else None))
    return events


class RateLimiter:
    """Keeps at least min_interval_ms between the starts of two requests."""

    def __init__(self, min_interval_ms: float) -> None:
        self.min_interval = min_interval_ms / 1000.0
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if self._last is not None:
                delay = self.min_interval - (now - self._last)
                if delay > 0:
                    await asyncio.sleep(delay)
            self._last = time.monotonic()


class OpenF1Client:
    def __init__(
        self,
        base_url: str = OPENF1_BASE,
        rate_limit_ms: float = 500,
        timeout_s: float = 10.0,
        retries: int = 3,
        initial_delay_ms: float = 600,
        cache=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.retries = retries
        self.initial_delay_ms = initial_delay_ms
        self.cache = cache
        self._limiter = RateLimiter(rate_limit_ms)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch_json(self, url: str) -> List[Dict[str, Any]]:
        r = await self._http().get(url)
        r.raise_for_status()
        data = r.json()
        return data if isinstance(data, list) else []

    async def _get(self, endpoint: str, query: str, session_key: Optional[int] = None) -> List[Dict[str, Any]]:
        if self.cache is not None:
            cached = await asyncio.to_thread(self.cache.get, endpoint, query)
            if cached is not None:
                return cached

        url = f"{self.base_url}/{endpoint}?{query}"
        delay = self.initial_delay_ms / 1000.0
        for attempt in range(self.retries + 1):
            try:
                await self._limiter.wait()
                data = await self._fetch_json(url)
                break
            except (httpx.HTTPError, ValueError) as exc:
                if attempt == self.retries:
                    logger.warning(f"Request failed | url={url} | attempts={attempt + 1} | error={exc}")
                    raise FetchError(f"Request failed: {endpoint} ({exc})") from exc
                logger.debug(f"Retrying | url={url} | attempt={attempt + 1} | error={exc}")
            await asyncio.sleep(delay)
            delay *= 2

        if self.cache is not None and data:
            await asyncio.to_thread(self.cache.put, endpoint, query, data, session_key)
        return data

    async def find_sessions(self, country: str, session_name: str, year: int) -> List[Dict[str, Any]]:
        query = urlencode({"country_name": country, "session_name": session_name, "year": year})
        return await self._get("sessions", query)

    async def get_session(self, session_key: int) -> List[Dict[str, Any]]:
        return await self._get("sessions", urlencode({"session_key": session_key}), session_key)

    async def get_drivers(self, session_key: int) -> List[Dict[str, Any]]:
        return await self._get("drivers", urlencode({"session_key": session_key}), session_key)

    async def get_results(self, session_key: int) -> List[Dict[str, Any]]:
        return await self._get("session_result", urlencode({"session_key": session_key}), session_key)

    async def get_control_events(self, session_key: int) -> List[Dict[str, Any]]:
        return await self._get("race_control", urlencode({"session_key": session_key}), session_key)

    async def get_laps(
        self, session_key: int, driver_number: int, from_lap: int = 1, to_lap: int = 3
    ) -> List[Dict[str, Any]]:
        # OpenF1 filters ranges with operators inside the key: lap_number>=1
        base = urlencode({"session_key": session_key, "driver_number": driver_number})
        query = f"{base}&lap_number>={from_lap}&lap_number<={to_lap}"
        return await self._get("laps", query, session_key)

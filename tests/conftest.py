"""Shared fixtures and raw OpenF1 row builders."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("F1REPLAY_CACHE", "0")

from replay.driver_state import DriverInfo  # noqa: E402
from replay.engine import ReplayEngine  # noqa: E402
from replay.clock import PlaybackClock  # noqa: E402
from replay.errors import FetchError  # noqa: E402

SESSION_START = datetime(2025, 12, 6, 14, 0, tzinfo=timezone.utc)
SESSION_END = SESSION_START + timedelta(hours=1)
SESSION_END_MS = 3_600_000.0


def iso(seconds: float) -> str:
    """ISO string for a point `seconds` after session start."""
    return (SESSION_START + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z")


def make_lap(
    lap_number: int,
    start_s: float,
    s1: float | None = 30.0,
    s2: float | None = 35.0,
    s3: float | None = 28.0,
    lap_duration: float | None = "auto",
    pit_out: bool = False,
    driver_number: int = 1,
    segments: tuple | None = None,
) -> dict:
    """Build a raw /laps row. lap_duration="auto" sums the sectors."""
    if lap_duration == "auto":
        lap_duration = s1 + s2 + s3 if None not in (s1, s2, s3) else None
    seg1, seg2, seg3 = segments or ([2049, 2051], [2049, 2049], [2048])
    return {
        "driver_number": driver_number,
        "lap_number": lap_number,
        "date_start": iso(start_s),
        "duration_sector_1": s1,
        "duration_sector_2": s2,
        "duration_sector_3": s3,
        "lap_duration": lap_duration,
        "is_pit_out_lap": pit_out,
        "segments_sector_1": seg1,
        "segments_sector_2": seg2,
        "segments_sector_3": seg3,
    }


def make_driver(number: int, acronym: str) -> DriverInfo:
    return DriverInfo(number=number, full_name=f"Driver {acronym}", acronym=acronym)


class FakeWallClock:
    """Manually advanced stand-in for time.monotonic()."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_engine(
    drivers=None,
    phase_ranges=(),
    durations=None,
    lap_counts=None,
    wall=None,
    **kwargs,
) -> ReplayEngine:
    drivers = drivers or [make_driver(1, "VER"), make_driver(4, "NOR"), make_driver(16, "LEC")]
    clock = PlaybackClock(0.0, SESSION_END_MS, speed=1.0, wall_clock=wall or FakeWallClock())
    return ReplayEngine(
        drivers,
        session_start=SESSION_START,
        session_end_ms=SESSION_END_MS,
        phase_ranges=phase_ranges,
        phase_durations=durations,
        lap_counts=lap_counts,
        clock=clock,
        **kwargs,
    )


@pytest.fixture
def wall():
    return FakeWallClock()


@pytest.fixture
def engine(wall):
    return make_engine(wall=wall)


SESSION_KEY = 9839

LAPS = {
    1: [
        make_lap(1, 100, pit_out=True),
        make_lap(2, 193, s2=32.0),
        make_lap(3, 283, s2=35.0),
        make_lap(4, 1250, pit_out=True),
        make_lap(5, 1343, s2=31.0),
        make_lap(6, 1432, s2=34.0),
    ],
    4: [
        make_lap(1, 120, pit_out=True, driver_number=4),
        make_lap(2, 213, s2=33.0, driver_number=4),
        make_lap(3, 304, s2=33.0, driver_number=4),
        make_lap(4, 1300, pit_out=True, driver_number=4),
    ],
}


class FakeOpenF1:
    """Serves a single session from memory and records what was asked."""

    def __init__(self) -> None:
        self.service = None
        self.statuses = []
        self.lap_calls = []
        self.fail = set()
        self.broken = set()
        self.hold = set()
        self.closed = False

    def _enter(self, name):
        if self.service is not None:
            self.statuses.append(self.service.status)
        if name in self.fail:
            raise FetchError(f"Request failed: {name}")

    async def find_sessions(self, country, session_name, year):
        self._enter("find_sessions")
        if country != "United Arab Emirates":
            return []
        return [{"session_key": SESSION_KEY}]

    async def get_drivers(self, session_key):
        self._enter("get_drivers")
        return [
            {"driver_number": 4, "first_name": "Lando", "last_name": "Norris", "name_acronym": "NOR"},
            {"driver_number": 1, "first_name": "Max", "last_name": "Verstappen", "name_acronym": "VER"},
        ]

    async def get_session(self, session_key):
        self._enter("get_session")
        return [
            {
                "session_key": session_key,
                "session_name": "Qualifying",
                "location": "Yas Marina",
                "country_name": "United Arab Emirates",
                "year": 2025,
                "date_start": iso(0),
                "date_end": iso(3600),
            }
        ]

    async def get_results(self, session_key):
        self._enter("get_results")
        return [
            {"driver_number": 1, "number_of_laps": 6, "duration": [90.0, 89.0, 88.5]},
            {"driver_number": 4, "number_of_laps": 6, "duration": [91.0, 90.0, 89.0]},
        ]

    async def get_control_events(self, session_key):
        self._enter("get_control_events")
        return [{"date": iso(60), "qualifying_phase": 1, "message": "GREEN LIGHT - PIT EXIT OPEN"}]

    async def get_laps(self, session_key, driver_number, from_lap=1, to_lap=3):
        self._enter("get_laps")
        self.lap_calls.append((driver_number, from_lap, to_lap))
        if (driver_number, from_lap) in self.fail:
            raise FetchError("Request failed: laps")
        if (driver_number, from_lap) in self.broken:
            raise RuntimeError("unexpected payload")
        if (driver_number, from_lap) in self.hold:
            await asyncio.Event().wait()
        return [lap for lap in LAPS.get(driver_number, []) if from_lap <= lap["lap_number"] <= to_lap]

    async def aclose(self):
        self.closed = True

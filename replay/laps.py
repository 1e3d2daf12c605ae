"""Lap normalizer.

Turns one raw OpenF1 lap record into an immutable LapFact: sector
boundaries, minisector boundaries and validity flags, all expressed in
milliseconds since session start (time_ms).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from replay.errors import DataGapError
from replay.timeline import ms_since, parse_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Minisector:
    end_ms: float
    value: Optional[int]


@dataclass(frozen=True)
class LapFact:
    lap_number: int
    start_ms: float
    is_pit_out_lap: bool
    has_lap_duration: bool
    lap_duration_ms: Optional[float]
    sector_ms: Tuple[Optional[float], Optional[float], Optional[float]]
    sector_end_ms: Tuple[Optional[float], Optional[float], Optional[float]]
    minisectors: Tuple[Minisector, ...] = ()
    segments: Tuple[Tuple[Optional[int], ...], ...] = ((), (), ())

    @property
    def end_ms(self) -> Optional[float]:
        if self.lap_duration_ms is None:
            return None
        return self.start_ms + self.lap_duration_ms

    @property
    def sector_sum_end_ms(self) -> Optional[float]:
        if any(s is None for s in self.sector_ms):
            return None
        return self.start_ms + sum(self.sector_ms)

    @property
    def last_mini_end_ms(self) -> Optional[float]:
        return self.minisectors[-1].end_ms if self.minisectors else None

    @property
    def is_timed(self) -> bool:
        """True when the lap may count for best/last lap."""
        return (
            not self.is_pit_out_lap
            and self.has_lap_duration
            and all(end is not None for end in self.sector_end_ms)
        )

    @property
    def all_segments(self) -> List[Optional[int]]:
        return [value for sector in self.segments for value in sector]

    def lap_end_ms(self, next_lap_start_ms: Optional[float] = None) -> Optional[float]:
        """Best available end marker, falling back to the next lap's start."""
        for candidate in (
            self.sector_sum_end_ms,
            self.last_mini_end_ms,
            self.sector_end_ms[2],
            self.end_ms,
            next_lap_start_ms,
        ):
            if candidate is not None:
                return candidate
        return None

    def trigger_end_ms(self) -> Optional[float]:
        """Point in the lap used to decide when to prefetch the next batch."""
        for candidate in (self.sector_end_ms[1], self.last_mini_end_ms, self.end_ms):
            if candidate is not None:
                return candidate
        return None


def _seconds_to_ms(value: Any) -> Optional[float]:
    # OpenF1 reports missing sectors as null and sometimes as 0
    if not value:
        return None
    return float(value) * 1000.0


def _parse_lap_start(raw: Dict[str, Any], session_start: datetime) -> float:
    date_start = raw.get("date_start")
    if not date_start or raw.get("lap_number") is None:
        raise DataGapError(f"lap has no start timestamp: lap={raw.get('lap_number')}")
    try:
        return ms_since(session_start, parse_iso(date_start))
    except (TypeError, ValueError) as exc:
        raise DataGapError(f"unparseable date_start: {date_start!r}") from exc


def _split_sector(
    values: Optional[List[Optional[int]]],
    sector_start: float,
    sector_ms: Optional[float],
) -> List[Minisector]:
    """Spread a sector's duration evenly over its minisectors."""
    if not values or not sector_ms:
        return []
    step = sector_ms / len(values)
    return [
        Minisector(end_ms=sector_start + step * (i + 1), value=value)
        for i, value in enumerate(values)
    ]


def build_lap_fact(raw: Dict[str, Any], session_start: datetime) -> Optional[LapFact]:
    """Build a LapFact from a raw lap, or None if the lap has no usable start."""
    try:
        start_ms = _parse_lap_start(raw, session_start)
    except DataGapError as exc:
        logger.debug(f"Lap dropped | driver={raw.get('driver_number')} | reason={exc}")
        return None

    s1 = _seconds_to_ms(raw.get("duration_sector_1"))
    s2 = _seconds_to_ms(raw.get("duration_sector_2"))
    s3 = _seconds_to_ms(raw.get("duration_sector_3"))

    has_lap_duration = raw.get("lap_duration") is not None
    if has_lap_duration:
        lap_duration_ms: Optional[float] = float(raw["lap_duration"]) * 1000.0
    elif s1 is not None and s2 is not None and s3 is not None:
        lap_duration_ms = s1 + s2 + s3
    else:
        lap_duration_ms = None

    # Each boundary needs its predecessor; one missing sector truncates the chain.
    s1_end = start_ms + s1 if s1 is not None else None
    s2_end = s1_end + s2 if s2 is not None and s1_end is not None else None
    s3_end = s2_end + s3 if s3 is not None and s2_end is not None else None

    segments = tuple(
        tuple(raw.get(f"segments_sector_{i}") or ()) for i in (1, 2, 3)
    )
    minisectors = _split_sector(list(segments[0]), start_ms, s1)
    if s1_end is not None:
        minisectors += _split_sector(list(segments[1]), s1_end, s2)
    if s2_end is not None:
        minisectors += _split_sector(list(segments[2]), s2_end, s3)

    return LapFact(
        lap_number=int(raw["lap_number"]),
        start_ms=start_ms,
        is_pit_out_lap=bool(raw.get("is_pit_out_lap")),
        has_lap_duration=has_lap_duration,
        lap_duration_ms=lap_duration_ms,
        sector_ms=(s1, s2, s3),
        sector_end_ms=(s1_end, s2_end, s3_end),
        minisectors=tuple(minisectors),
        segments=segments,
    )


def build_lap_facts(raws: Iterable[Dict[str, Any]], session_start: datetime) -> List[LapFact]:
    """Normalize a batch of raw laps, dropping unusable ones, sorted by start."""
    facts = [f for f in (build_lap_fact(r, session_start) for r in raws) if f is not None]
    return sorted(facts, key=lambda f: f.start_ms)

"""Per-driver timing state machine.

One DriverState per driver, held in a DriverTable keyed by driver number.
Only the engine mutates these records.

    PIT_LANE -(LAP_START, pit out)-> PIT_OUT_LAP -(LAP_END)-> PIT_LANE
    PIT_LANE -(LAP_START)-> ON_TRACK -(LAP_END)-> PIT_LANE
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from replay.events import EventType, LapEvent
from replay.laps import LapFact

HIGHLIGHT_MS = 5000.0

Sectors = Tuple[Optional[float], Optional[float], Optional[float]]


@dataclass(frozen=True)
class DriverInfo:
    number: int
    full_name: Optional[str] = None
    acronym: Optional[str] = None
    team_name: Optional[str] = None
    team_color: str = "#777777"


@dataclass
class DriverState:
    driver: DriverInfo
    laps: List[LapFact] = field(default_factory=list)

    # live timing
    active_lap: Optional[LapFact] = None
    best_lap_ms: Optional[float] = None
    best_lap_at_ms: Optional[float] = None
    best_lap_number: Optional[int] = None
    best_lap_highlight_until: Optional[float] = None
    best_sectors: Sectors = (None, None, None)
    last_lap_ms: Optional[float] = None
    last_sectors: Sectors = (None, None, None)
    last_segments: Optional[List[Optional[int]]] = None
    last_completed_lap_number: Optional[int] = None

    on_track: bool = False
    pit_out: bool = False
    pit_lane: bool = True
    is_eliminated: bool = False
    segment_start_ms: Optional[float] = None
    last_processed_lap_index: int = -1

    # prefetch cursor
    max_laps: Optional[int] = None
    next_batch_start: Optional[int] = None
    loading_more: bool = False

    @property
    def number(self) -> int:
        return self.driver.number

    def reset_live_timing(self) -> None:
        """Forget best/last/sector timing; lap history is kept."""
        self.active_lap = None
        self.best_lap_ms = None
        self.best_lap_at_ms = None
        self.best_lap_number = None
        self.best_lap_highlight_until = None
        self.best_sectors = (None, None, None)
        self.last_lap_ms = None
        self.last_sectors = (None, None, None)
        self.last_segments = None
        self.last_completed_lap_number = None

    def reset_runtime(self) -> None:
        """Back to the state at session start, ready for a replay."""
        self.reset_live_timing()
        self.last_processed_lap_index = -1
        self.segment_start_ms = None
        self.on_track = False
        self.pit_out = False
        self.pit_lane = True
        self.is_eliminated = False

    def retire(self) -> None:
        self.on_track = False
        self.pit_out = False
        self.pit_lane = False
        self.active_lap = None

    def merge_laps(self, laps: List[LapFact]) -> List[LapFact]:
        """Add laps not already in history; returns the ones added."""
        known = {lap.lap_number for lap in self.laps}
        added: List[LapFact] = []
        for lap in laps:
            if lap.lap_number in known:
                continue
            known.add(lap.lap_number)
            added.append(lap)
        if added:
            self.laps = sorted(self.laps + added, key=lambda lap: lap.start_ms)
        return added

    def next_lap_start(self, lap: LapFact) -> Optional[float]:
        for candidate in self.laps:
            if candidate.start_ms > lap.start_ms:
                return candidate.start_ms
        return None

    def start_lap(self, event: LapEvent) -> None:
        self.active_lap = event.lap
        self.on_track = not event.lap.is_pit_out_lap
        self.pit_out = event.lap.is_pit_out_lap
        self.pit_lane = False

    def end_lap(self, event: LapEvent) -> bool:
        """Apply a LAP_END. Returns True when it set a new personal best."""
        self.active_lap = None
        self.on_track = False
        self.pit_out = False
        self.pit_lane = True
        self.last_completed_lap_number = event.lap_number

        lap = event.lap
        # laps begun before the current phase never count for it
        if self.segment_start_ms is not None and lap.start_ms < self.segment_start_ms:
            return False
        if not lap.is_timed:
            return False

        self.last_lap_ms = lap.lap_duration_ms
        self.last_sectors = lap.sector_ms
        self.last_segments = lap.all_segments
        if self.best_lap_ms is not None and lap.lap_duration_ms >= self.best_lap_ms:
            return False
        self.best_lap_ms = lap.lap_duration_ms
        self.best_lap_at_ms = event.time_ms
        self.best_lap_number = lap.lap_number
        self.best_sectors = lap.sector_ms
        return True

    def display_sectors(self, now_ms: float) -> Sectors:
        """Sector times as they should read at now_ms.

        A sector of the lap in progress shows once the clock has crossed its
        end boundary; until then the last completed lap's value is shown.
        """
        active = self.active_lap
        values = []
        for i in range(3):
            end = active.sector_end_ms[i] if active is not None else None
            if end is not None and now_ms >= end:
                values.append(active.sector_ms[i])
            else:
                values.append(self.last_sectors[i])
        return (values[0], values[1], values[2])

    def display_minisectors(self, now_ms: float) -> List[Tuple[Optional[int], bool]]:
        """(value, reached) pairs for the lap in progress, else the last lap."""
        if self.active_lap is not None:
            return [(m.value, now_ms >= m.end_ms) for m in self.active_lap.minisectors]
        if self.last_segments:
            return [(value, True) for value in self.last_segments]
        return []

    def is_highlighted(self, now_ms: float) -> bool:
        return self.best_lap_highlight_until is not None and now_ms <= self.best_lap_highlight_until


class DriverTable:
    """Driver states keyed by driver number."""

    def __init__(self, drivers: List[DriverInfo], highlight_ms: float = HIGHLIGHT_MS) -> None:
        self._states: Dict[int, DriverState] = {
            d.number: DriverState(driver=d) for d in sorted(drivers, key=lambda d: d.number)
        }
        self.highlight_ms = highlight_ms

    def __iter__(self) -> Iterator[DriverState]:
        return iter(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    def get(self, number: int) -> Optional[DriverState]:
        return self._states.get(number)

    def numbers(self) -> List[int]:
        return list(self._states)

    def global_best_lap(self) -> Optional[float]:
        times = [s.best_lap_ms for s in self if s.best_lap_ms is not None]
        return min(times) if times else None

    def apply(self, event: LapEvent) -> None:
        """Feed one event into its driver's state machine."""
        state = self._states.get(event.driver_number)
        if state is None or state.is_eliminated:
            return
        if event.type is EventType.LAP_START:
            state.start_lap(event)
            return
        if state.end_lap(event):
            if state.best_lap_ms == self.global_best_lap():
                state.best_lap_highlight_until = event.time_ms + self.highlight_ms
            else:
                state.best_lap_highlight_until = None

    def reset_runtime(self) -> None:
        for state in self:
            state.reset_runtime()

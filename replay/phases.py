"""Qualifying phase segmentation.

Race control tags messages with the qualifying phase they belong to. The
first message of each run of equal labels opens a phase; the next
differing label closes it. Ranges are clipped to the session window.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

NO_PHASE = "—"


@dataclass(frozen=True)
class PhaseRange:
    phase: str
    start_ms: float
    end_ms: float

    def contains(self, time_ms: float, closed: bool = False) -> bool:
        if closed:
            return self.start_ms <= time_ms <= self.end_ms
        return self.start_ms <= time_ms < self.end_ms


def build_phase_ranges(
    control_events: Iterable[Tuple[float, Optional[str]]],
    session_start_ms: float,
    session_end_ms: float,
) -> List[PhaseRange]:
    """Collapse (time_ms, label) control events into contiguous phase ranges."""
    tagged = sorted(
        ((t, label) for t, label in control_events if label), key=lambda item: item[0]
    )
    if not tagged:
        return []

    ranges: List[PhaseRange] = []
    current_time, current_phase = tagged[0]
    start = max(session_start_ms, current_time)
    for time_ms, phase in tagged[1:]:
        if phase == current_phase:
            continue
        ranges.append(PhaseRange(current_phase, start, max(start, time_ms)))
        current_phase = phase
        start = max(session_start_ms, time_ms)
    ranges.append(PhaseRange(current_phase, start, max(start, session_end_ms)))
    return ranges


def phase_at(time_ms: Optional[float], ranges: Sequence[PhaseRange]) -> str:
    """Label of the first range containing time_ms, else NO_PHASE.

    Ranges are half-open except the last, which includes the session end.
    This is a point lookup; the engine walks ranges in order instead and
    must agree with it at every instant.
    """
    if time_ms is None:
        return NO_PHASE
    for i, r in enumerate(ranges):
        if r.contains(time_ms, closed=i == len(ranges) - 1):
            return r.phase
    return NO_PHASE


def phase_index(phase: str) -> Optional[int]:
    """Zero-based position of a phase label in the results durations ("Q2" -> 1)."""
    if not phase.startswith("Q"):
        return None
    try:
        return int(phase[1:]) - 1
    except ValueError:
        return None


def is_eliminated(
    driver_number: int,
    phase: str,
    durations: Dict[int, List[Optional[float]]],
) -> bool:
    """A driver without a result time for the phase is out of it."""
    index = phase_index(phase)
    per_phase = durations.get(driver_number)
    if index is None or index < 0 or not isinstance(per_phase, list):
        return True
    return index >= len(per_phase) or per_phase[index] is None

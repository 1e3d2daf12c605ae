"""Standings ranker.

Pure projection of the driver table into an ordered leaderboard. Drivers
with a best lap sort by it; the rest follow in the phase fallback order;
eliminated drivers always come last, also in fallback order.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from replay.driver_state import DriverState, Sectors

MOVE_INDICATOR_MS = 5000.0


@dataclass
class Standing:
    position: int
    number: int
    acronym: Optional[str]
    full_name: Optional[str]
    team_color: str
    best_lap_ms: Optional[float]
    best_lap_number: Optional[int]
    last_lap_ms: Optional[float]
    last_lap_number: Optional[int]
    gap_to_leader_ms: Optional[float]
    interval_to_ahead_ms: Optional[float]
    best_sectors: Sectors
    current_sectors: Sectors
    minisectors: List[Tuple[Optional[int], bool]]
    global_best_sectors: Sectors
    is_global_best_sector: Tuple[bool, bool, bool]
    is_current_best_sector: Tuple[bool, bool, bool]
    best_lap_highlight: bool
    on_track: bool
    pit_out: bool
    pit_lane: bool
    is_eliminated: bool
    movement: Optional[Dict[str, object]] = field(default=None)


def rank_states(states: Iterable[DriverState], fallback_order: Sequence[int]) -> List[DriverState]:
    """Order driver states for the leaderboard."""
    fallback = {number: i for i, number in enumerate(fallback_order)}

    def fallback_key(state: DriverState) -> int:
        return fallback.get(state.number, len(fallback))

    states = list(states)
    active = [s for s in states if not s.is_eliminated]
    eliminated = [s for s in states if s.is_eliminated]

    timed = sorted((s for s in active if s.best_lap_ms is not None), key=lambda s: s.best_lap_ms)
    untimed = sorted((s for s in active if s.best_lap_ms is None), key=fallback_key)
    return timed + untimed + sorted(eliminated, key=fallback_key)


def global_best_sectors(states: Iterable[DriverState]) -> Sectors:
    best: List[Optional[float]] = [None, None, None]
    for state in states:
        for i, value in enumerate(state.best_sectors):
            if value is not None and (best[i] is None or value < best[i]):
                best[i] = value
    return (best[0], best[1], best[2])


def compute_standings(
    states: Iterable[DriverState],
    fallback_order: Sequence[int],
    now_ms: float = 0.0,
) -> List[Standing]:
    states = list(states)
    ranked = rank_states(states, fallback_order)
    sector_bests = global_best_sectors(states)
    leader_ms = next((s.best_lap_ms for s in ranked if s.best_lap_ms is not None), None)

    standings: List[Standing] = []
    previous: Optional[DriverState] = None
    for position, state in enumerate(ranked, start=1):
        best = state.best_lap_ms
        gap = best - leader_ms if best is not None and leader_ms is not None else None
        interval = None
        if previous is not None and previous.best_lap_ms is not None and best is not None:
            interval = best - previous.best_lap_ms
        flags = tuple(
            value is not None and value == sector_bests[i]
            for i, value in enumerate(state.best_sectors)
        )
        current = state.display_sectors(now_ms)
        beating = tuple(
            value is not None and sector_bests[i] is not None and value < sector_bests[i]
            for i, value in enumerate(current)
        )
        standings.append(
            Standing(
                position=position,
                number=state.number,
                acronym=state.driver.acronym,
                full_name=state.driver.full_name,
                team_color=state.driver.team_color,
                best_lap_ms=best,
                best_lap_number=state.best_lap_number,
                last_lap_ms=state.last_lap_ms,
                last_lap_number=state.last_completed_lap_number,
                gap_to_leader_ms=gap,
                interval_to_ahead_ms=interval,
                best_sectors=state.best_sectors,
                current_sectors=current,
                minisectors=state.display_minisectors(now_ms),
                global_best_sectors=sector_bests,
                is_global_best_sector=(flags[0], flags[1], flags[2]),
                is_current_best_sector=(beating[0], beating[1], beating[2]),
                best_lap_highlight=state.is_highlighted(now_ms),
                on_track=state.on_track,
                pit_out=state.pit_out,
                pit_lane=state.pit_lane,
                is_eliminated=state.is_eliminated,
            )
        )
        previous = state
    return standings


class PositionTracker:
    """Remembers recent position changes so the board can show arrows."""

    def __init__(self, hold_ms: float = MOVE_INDICATOR_MS) -> None:
        self.hold_ms = hold_ms
        self._positions: Dict[int, int] = {}
        self._moves: Dict[int, Dict[str, object]] = {}

    def reset(self) -> None:
        self._positions = {}
        self._moves = {}

    def update(self, standings: Sequence[Standing], now_ms: float) -> Dict[int, Dict[str, object]]:
        moves = {n: m for n, m in self._moves.items() if m["until"] > now_ms}
        positions: Dict[int, int] = {}
        for standing in standings:
            positions[standing.number] = standing.position
            previous = self._positions.get(standing.number)
            if previous is None or previous == standing.position:
                continue
            moves[standing.number] = {
                "direction": "up" if standing.position < previous else "down",
                "until": now_ms + self.hold_ms,
            }
        self._positions = positions
        self._moves = moves
        return dict(moves)

    def annotate(self, standings: List[Standing], now_ms: float) -> List[Standing]:
        for standing in standings:
            move = self._moves.get(standing.number)
            standing.movement = move if move and now_ms <= move["until"] else None
        return standings

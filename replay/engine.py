"""Replay engine.

Laps fetched from OpenF1 are turned into LAP_START / LAP_END events and
stored in a time-sorted queue. The playback clock steps simulated time
forward and every event up to that instant is applied, in order, to the
per-driver state machines. Phase changes reset live timing and decide who
is eliminated.

If laps arrive for a moment that has already been played, the queue flags
it and the engine rebuilds state by replaying everything from session
start before moving on.

Phases are entered exactly at their start: events before the boundary are
applied first, then the phase is entered, then the rest. The state at a
given simulated time therefore does not depend on the step sizes used to
get there.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from replay.clock import PlaybackClock
from replay.driver_state import HIGHLIGHT_MS, DriverInfo, DriverState, DriverTable
from replay.events import EventQueue, build_lap_events
from replay.laps import build_lap_facts
from replay.phases import NO_PHASE, PhaseRange, is_eliminated
from replay.standings import Standing, compute_standings

logger = logging.getLogger(__name__)

PREFETCH_BATCH = 3
PREFETCH_LEAD = 3


@dataclass(frozen=True)
class LapRequest:
    driver_number: int
    start_lap: int
    end_lap: int


@dataclass
class TickResult:
    requests: List[LapRequest] = field(default_factory=list)
    entered_phase: Optional[str] = None
    replayed: bool = False


class ReplayEngine:
    def __init__(
        self,
        drivers: Sequence[DriverInfo],
        session_start: datetime,
        session_end_ms: float,
        phase_ranges: Sequence[PhaseRange] = (),
        phase_durations: Optional[Dict[int, List[Optional[float]]]] = None,
        lap_counts: Optional[Dict[int, int]] = None,
        clock: Optional[PlaybackClock] = None,
        batch_size: int = PREFETCH_BATCH,
        prefetch_lead: int = PREFETCH_LEAD,
        highlight_ms: float = HIGHLIGHT_MS,
    ) -> None:
        self.session_start = session_start
        self.drivers = DriverTable(list(drivers), highlight_ms=highlight_ms)
        self.queue = EventQueue()
        self.phase_ranges = list(phase_ranges)
        self.phase_durations = dict(phase_durations or {})
        self.clock = clock or PlaybackClock(0.0, session_end_ms)
        self.batch_size = batch_size
        self.prefetch_lead = prefetch_lead

        self.phase = NO_PHASE
        self._phase_index = -1
        self.initial_order = self.drivers.numbers()
        self.fallback_order = list(self.initial_order)

        for state in self.drivers:
            state.max_laps = (lap_counts or {}).get(state.number)
            state.next_batch_start = 1

    # ------------------------------------------------------------------
    # Data intake
    # ------------------------------------------------------------------

    def batch_end(self, state: DriverState, start_lap: int) -> int:
        end = start_lap + self.batch_size - 1
        if state.max_laps is not None:
            end = min(end, state.max_laps)
        return end

    def ingest_laps(
        self,
        driver_number: int,
        raw_laps: Iterable[Dict[str, Any]],
        start_lap: int,
        end_lap: int,
    ) -> int:
        """Merge a fetched batch of laps for one driver.

        Returns how many new events were queued.
        """
        state = self.drivers.get(driver_number)
        if state is None:
            return 0
        state.loading_more = False

        added = state.merge_laps(build_lap_facts(raw_laps, self.session_start))
        state.next_batch_start = end_lap + 1
        if state.max_laps is not None and state.next_batch_start > state.max_laps:
            state.next_batch_start = None

        queued = 0
        if added:
            # an earlier lap may only now get an end marker from a later lap's start
            for lap in state.laps:
                queued += self.queue.extend(
                    build_lap_events(driver_number, lap, state.next_lap_start(lap))
                )
        if queued and self.queue.replay_required:
            logger.info(
                f"Late laps | driver={driver_number} | laps={start_lap}-{end_lap} | replay required"
            )
        return queued

    def fetch_failed(self, driver_number: int) -> None:
        """A lap fetch failed; the next trigger asks for the same batch again."""
        state = self.drivers.get(driver_number)
        if state is not None:
            state.loading_more = False

    def next_request(self, state: DriverState) -> Optional[LapRequest]:
        """Claim the driver's next unfetched batch, if any."""
        if state.next_batch_start is None or state.loading_more:
            return None
        start_lap = state.next_batch_start
        if state.max_laps is not None and start_lap > state.max_laps:
            state.next_batch_start = None
            return None
        state.loading_more = True
        return LapRequest(state.number, start_lap, self.batch_end(state, start_lap))

    def phase_sweep(self) -> List[LapRequest]:
        """Next batch for every driver that has one and isn't already fetching.

        Nothing is claimed here; the caller claims each driver in turn with
        next_request so the sweep never overlaps a per-tick fetch.
        """
        pending = []
        for state in self.drivers:
            if state.next_batch_start is None or state.loading_more:
                continue
            if state.max_laps is not None and state.next_batch_start > state.max_laps:
                state.next_batch_start = None
                continue
            pending.append(
                LapRequest(state.number, state.next_batch_start, self.batch_end(state, state.next_batch_start))
            )
        return pending

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def reset_runtime(self) -> None:
        """Forget all derived state and rewind the event cursor."""
        self.drivers.reset_runtime()
        self.queue.rewind()
        self.phase = NO_PHASE
        self._phase_index = -1
        self.fallback_order = list(self.initial_order)

    def enter_phase(self, segment: PhaseRange) -> bool:
        """Switch to a new phase. Returns False if the label did not change."""
        if segment.phase == NO_PHASE or segment.phase == self.phase:
            return False
        self.fallback_order = [s.number for s in self.standings()]
        self.phase = segment.phase

        for state in self.drivers:
            state.is_eliminated = is_eliminated(state.number, segment.phase, self.phase_durations)
            if state.is_eliminated:
                state.retire()
                continue
            state.segment_start_ms = segment.start_ms
            state.reset_live_timing()
            state.on_track = False
            state.pit_out = False
            state.pit_lane = False
            state.last_processed_lap_index = self._last_lap_before(state, segment.start_ms)

        eliminated = [s.number for s in self.drivers if s.is_eliminated]
        logger.info(f"Phase entered | phase={segment.phase} | eliminated={eliminated}")
        return True

    @staticmethod
    def _last_lap_before(state: DriverState, segment_start: float) -> int:
        """Index of the last lap in history that ended before segment_start."""
        last = -1
        for i, lap in enumerate(state.laps):
            end = lap.last_mini_end_ms
            if end is None:
                end = lap.end_ms if lap.end_ms is not None else lap.start_ms
            if end >= segment_start:
                break
            last = i
        return last

    def _apply_until(self, time_ms: float, inclusive: bool = True) -> None:
        for event in self.queue.drain(time_ms, inclusive=inclusive):
            self.drivers.apply(event)

    def _prefetch_due(self, state: DriverState, time_ms: float) -> bool:
        if state.next_batch_start is None or state.loading_more:
            return False
        trigger_lap = max(1, state.next_batch_start - self.prefetch_lead)
        active = state.active_lap
        if active is not None and active.lap_number >= trigger_lap:
            trigger_end = active.trigger_end_ms()
            if trigger_end is not None and time_ms >= trigger_end:
                return True
        return (state.last_completed_lap_number or 0) >= trigger_lap

    def process_at(self, time_ms: float, result: Optional[TickResult] = None) -> TickResult:
        """Advance all state to time_ms."""
        result = result if result is not None else TickResult()

        for index in range(self._phase_index + 1, len(self.phase_ranges)):
            segment = self.phase_ranges[index]
            if segment.start_ms > time_ms:
                break
            is_last = index == len(self.phase_ranges) - 1
            if segment.start_ms == segment.end_ms and not is_last:
                # empty range, never current
                self._phase_index = index
                continue
            self._apply_until(segment.start_ms, inclusive=False)
            self._phase_index = index
            if self.enter_phase(segment):
                result.entered_phase = segment.phase

        self._apply_until(time_ms)

        for state in self.drivers:
            if state.is_eliminated:
                state.retire()
                continue
            if self._prefetch_due(state, time_ms):
                request = self.next_request(state)
                if request is not None:
                    result.requests.append(request)
        return result

    def _replay_if_required(self, result: TickResult) -> None:
        if self.queue.replay_required:
            logger.info(f"Replaying from session start | resume_at={self.clock.current_ms:.0f}")
            self.reset_runtime()
            result.replayed = True

    def tick(self) -> TickResult:
        """Run one scheduler tick of the playback clock."""
        result = TickResult()
        if not self.clock.playing:
            return result
        for time_ms in self.clock.steps():
            self._replay_if_required(result)
            self.process_at(time_ms, result)
        return result

    def seek(self, time_ms: float) -> TickResult:
        """Process everything up to time_ms without consulting the wall clock."""
        result = TickResult()
        self._replay_if_required(result)
        time_ms = min(time_ms, self.clock.sim_end_ms)
        if time_ms < self.clock.current_ms:
            self.reset_runtime()
            result.replayed = True
        self.clock.current_ms = time_ms
        return self.process_at(time_ms, result)

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        self.clock.play()

    def pause(self) -> None:
        self.clock.pause()

    def set_speed(self, speed: float) -> None:
        self.clock.set_speed(speed)

    def reset(self) -> None:
        """Back to session start; fetched laps are kept."""
        self.clock.reset()
        self.reset_runtime()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def now_ms(self) -> float:
        return self.clock.current_ms

    def standings(self) -> List[Standing]:
        return compute_standings(self.drivers, self.fallback_order, self.now_ms)

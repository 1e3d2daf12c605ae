"""Playback clock.

Maps elapsed wall-clock time times a speed factor onto simulated time and
hands out the simulated instants the engine should step through.
"""
import math
import time
from typing import Callable, Iterator, Optional

DEFAULT_SPEED = 5.0
DEFAULT_STEP_MS = 80.0
DEFAULT_MAX_ITERATIONS = 200


class PlaybackClock:
    def __init__(
        self,
        sim_start_ms: float,
        sim_end_ms: float,
        speed: float = DEFAULT_SPEED,
        step_ms: float = DEFAULT_STEP_MS,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        wall_clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if speed <= 0:
            raise ValueError("speed must be > 0")
        self.sim_start_ms = sim_start_ms
        self.sim_end_ms = max(sim_start_ms, sim_end_ms)
        self.speed = speed
        self.step_ms = step_ms
        self.max_iterations = max_iterations
        self._wall_clock = wall_clock

        self.current_ms = sim_start_ms
        self.playing = False
        self._origin_ms = sim_start_ms
        self._wall_ref: Optional[float] = None

    def _rebase(self) -> None:
        self._origin_ms = self.current_ms
        self._wall_ref = self._wall_clock()

    def play(self) -> None:
        """Start or resume from the current simulated time."""
        if self.current_ms >= self.sim_end_ms:
            return
        self._rebase()
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def set_speed(self, speed: float) -> None:
        if speed <= 0:
            raise ValueError("speed must be > 0")
        if self.playing:
            self._rebase()
        self.speed = speed

    def reset(self) -> None:
        self.playing = False
        self.current_ms = self.sim_start_ms
        self._origin_ms = self.sim_start_ms
        self._wall_ref = None

    @property
    def progress(self) -> float:
        span = self.sim_end_ms - self.sim_start_ms
        if span <= 0:
            return 100.0
        return min(100.0, (self.current_ms - self.sim_start_ms) / span * 100.0)

    def target(self) -> float:
        """Simulated time the wall clock says we should be at."""
        if not self.playing or self._wall_ref is None:
            return self.current_ms
        elapsed_ms = (self._wall_clock() - self._wall_ref) * 1000.0 * self.speed
        return min(self._origin_ms + elapsed_ms, self.sim_end_ms)

    def steps(self) -> Iterator[float]:
        """Yield the simulated instants to process for this tick.

        The gap to the target is covered in step_ms increments, or in
        max_iterations equal increments when the gap is larger than that.
        current_ms follows each yielded value. Playback stops at sim end.
        """
        target = self.target()
        start = self.current_ms
        delta = target - start
        if delta > 0:
            step = self.step_ms
            if delta > self.step_ms * self.max_iterations:
                step = delta / self.max_iterations
            count = min(self.max_iterations, math.ceil(delta / step))
            for i in range(1, count + 1):
                t = target if i == count else min(start + step * i, target)
                self.current_ms = t
                yield t
        if self.current_ms >= self.sim_end_ms:
            self.playing = False

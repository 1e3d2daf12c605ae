"""Lap events and the time-sorted event queue.

Each LapFact becomes a LAP_START event and, when an end can be derived,
a LAP_END event. Events are identified by (type, driver, lap) and kept
sorted by time_ms. Inserting an event at or before the time already
processed marks the queue as needing a full replay from session start.
"""
import bisect
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Set, Tuple

from replay.laps import LapFact


class EventType(str, Enum):
    LAP_START = "LAP_START"
    LAP_END = "LAP_END"


@dataclass(frozen=True)
class LapEvent:
    type: EventType
    driver_number: int
    lap_number: int
    time_ms: float
    lap: LapFact = field(compare=False, repr=False)

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.type.value, self.driver_number, self.lap_number)


def build_lap_events(
    driver_number: int,
    lap: LapFact,
    next_lap_start_ms: Optional[float] = None,
) -> List[LapEvent]:
    """Return the LAP_START and (if derivable) LAP_END events for a lap."""
    events = [
        LapEvent(EventType.LAP_START, driver_number, lap.lap_number, lap.start_ms, lap)
    ]
    end_ms = lap.lap_end_ms(next_lap_start_ms)
    if end_ms is not None:
        events.append(
            LapEvent(EventType.LAP_END, driver_number, lap.lap_number, end_ms, lap)
        )
    return events


class EventQueue:
    """Time-sorted, deduplicated event log with a monotonic read cursor."""

    def __init__(self) -> None:
        self._events: List[LapEvent] = []
        self._keys: Set[Tuple[str, int, int]] = set()
        self.cursor = 0
        self.processed_ms: Optional[float] = None
        self.replay_required = False

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[LapEvent]:
        return iter(self._events)

    def push(self, event: LapEvent) -> bool:
        """Insert an event; returns False when its key is already known."""
        if event.key in self._keys:
            return False
        self._keys.add(event.key)
        if self.processed_ms is not None and event.time_ms <= self.processed_ms:
            self.replay_required = True
        # insort_right keeps insertion order among equal timestamps
        bisect.insort_right(self._events, event, key=lambda e: e.time_ms)
        return True

    def extend(self, events: List[LapEvent]) -> int:
        return sum(1 for e in events if self.push(e))

    def drain(self, until_ms: float, inclusive: bool = True) -> Iterator[LapEvent]:
        """Yield unread events up to until_ms, advancing the cursor."""
        while self.cursor < len(self._events) and (
            self._events[self.cursor].time_ms <= until_ms
            if inclusive
            else self._events[self.cursor].time_ms < until_ms
        ):
            event = self._events[self.cursor]
            self.cursor += 1
            yield event
        if inclusive and (self.processed_ms is None or until_ms > self.processed_ms):
            self.processed_ms = until_ms

    def rewind(self) -> None:
        """Move the cursor back to the start; the log itself is kept."""
        self.cursor = 0
        self.processed_ms = None
        self.replay_required = False

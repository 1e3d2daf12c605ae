"""Driver timing state machine."""

from __future__ import annotations

from replay.driver_state import DriverState, DriverTable
from replay.events import build_lap_events
from replay.laps import build_lap_fact
from tests.conftest import SESSION_START, make_driver, make_lap


def _events(driver, lap_number, start_s, **kwargs):
    lap = build_lap_fact(make_lap(lap_number, start_s=start_s, **kwargs), SESSION_START)
    return build_lap_events(driver, lap)


def _table():
    return DriverTable([make_driver(4, "NOR"), make_driver(1, "VER")])


def test_table_is_ordered_by_number():
    assert _table().numbers() == [1, 4]


def test_pit_out_lap_start_and_end():
    table = _table()
    start, end = _events(1, 1, 0, pit_out=True)

    table.apply(start)
    state = table.get(1)
    assert (state.on_track, state.pit_out, state.pit_lane) == (False, True, False)
    assert state.active_lap is start.lap

    table.apply(end)
    assert (state.on_track, state.pit_out, state.pit_lane) == (False, False, True)
    assert state.active_lap is None
    assert state.last_completed_lap_number == 1
    assert state.best_lap_ms is None
    assert state.last_lap_ms is None


def test_timed_lap_sets_last_and_best():
    table = _table()
    for event in _events(1, 2, 100, s1=30, s2=35, s3=28):
        table.apply(event)

    state = table.get(1)
    assert state.on_track is False
    assert state.last_lap_ms == 93_000.0
    assert state.best_lap_ms == 93_000.0
    assert state.best_lap_number == 2
    assert state.best_sectors == (30_000.0, 35_000.0, 28_000.0)
    assert state.last_segments == [2049, 2051, 2049, 2049, 2048]


def test_slower_lap_updates_last_but_not_best():
    table = _table()
    for event in _events(1, 2, 100, s1=30, s2=35, s3=28):
        table.apply(event)
    for event in _events(1, 3, 200, s1=29, s2=36, s3=29):
        table.apply(event)

    state = table.get(1)
    assert state.last_lap_ms == 94_000.0
    assert state.last_sectors == (29_000.0, 36_000.0, 29_000.0)
    assert state.best_lap_ms == 93_000.0
    assert state.best_sectors == (30_000.0, 35_000.0, 28_000.0)


def test_new_global_best_opens_highlight_window():
    table = _table()
    for event in _events(1, 2, 100, s1=30, s2=35, s3=28):
        table.apply(event)
    assert table.get(1).best_lap_highlight_until == 193_000.0 + 5000.0

    # personal best for driver 4, but slower than driver 1
    for event in _events(4, 2, 110, s1=31, s2=35, s3=28):
        table.apply(event)
    assert table.get(4).best_lap_ms == 94_000.0
    assert table.get(4).best_lap_highlight_until is None

    assert table.get(1).is_highlighted(198_000.0)
    assert not table.get(1).is_highlighted(198_001.0)


def test_lap_started_before_segment_start_is_ignored():
    table = _table()
    state = table.get(1)
    state.segment_start_ms = 150_000.0

    for event in _events(1, 2, 100):
        table.apply(event)

    assert state.best_lap_ms is None
    assert state.pit_lane is True
    assert state.last_completed_lap_number == 2


def test_eliminated_driver_gets_no_updates():
    table = _table()
    table.get(1).is_eliminated = True

    for event in _events(1, 2, 100):
        table.apply(event)

    state = table.get(1)
    assert state.best_lap_ms is None
    assert state.last_completed_lap_number is None


def test_sectors_fill_in_as_the_clock_passes_them():
    table = _table()
    for event in _events(1, 1, 0, s1=30, s2=35, s3=28):
        table.apply(event)
    start, _ = _events(1, 2, 93, s1=29, s2=34, s3=27)
    table.apply(start)
    state = table.get(1)

    assert state.display_sectors(100_000.0) == (30_000.0, 35_000.0, 28_000.0)
    assert state.display_sectors(93_000.0 + 29_000.0) == (29_000.0, 35_000.0, 28_000.0)
    assert state.display_sectors(93_000.0 + 63_000.0) == (29_000.0, 34_000.0, 28_000.0)


def test_minisectors_show_progress_of_active_lap():
    table = _table()
    start, _ = _events(1, 1, 0, segments=([2049, 2051], [2049], [2048]))
    table.apply(start)

    reached = table.get(1).display_minisectors(20_000.0)
    assert reached == [(2049, True), (2051, False), (2049, False), (2048, False)]


def test_merge_laps_dedupes_by_number():
    state = DriverState(driver=make_driver(1, "VER"))
    first = build_lap_fact(make_lap(1, start_s=0), SESSION_START)
    second = build_lap_fact(make_lap(2, start_s=93), SESSION_START)

    assert state.merge_laps([second, first]) == [second, first]
    assert state.merge_laps([first]) == []
    assert [lap.lap_number for lap in state.laps] == [1, 2]
    assert state.next_lap_start(first) == 93_000.0
    assert state.next_lap_start(second) is None


def test_reset_runtime_keeps_history():
    table = _table()
    for event in _events(1, 2, 100):
        table.apply(event)
    state = table.get(1)
    state.laps.append(build_lap_fact(make_lap(2, start_s=100), SESSION_START))
    state.is_eliminated = True

    table.reset_runtime()

    assert state.best_lap_ms is None
    assert state.is_eliminated is False
    assert state.pit_lane is True
    assert len(state.laps) == 1

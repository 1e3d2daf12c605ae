"""ReplayService bootstrap, controls and prefetch wiring, against an in-memory client."""

from __future__ import annotations

import asyncio

import pytest

from config import Settings
from replay.errors import BootstrapError
from services.replay_service import ReplayService
from tests.conftest import SESSION_KEY, FakeOpenF1, FakeWallClock


@pytest.fixture
def client():
    return FakeOpenF1()


@pytest.fixture
def service(client):
    svc = ReplayService(client, Settings(cache_enabled=False, speed=1.0))
    client.service = svc
    return svc


def _load(service, country="United Arab Emirates"):
    return asyncio.run(service.load(country, "Qualifying", 2025))


def test_load_builds_engine(service, client):
    _load(service)

    engine = service.engine
    assert service.status == "Ready."
    assert engine.drivers.numbers() == [1, 4]
    assert [r.phase for r in engine.phase_ranges] == ["Q1"]
    assert client.lap_calls == [(1, 1, 3), (4, 1, 3)]
    assert service.laps_progress == "2/2 · 100%"
    assert service.session["location"] == "Yas Marina"
    assert engine.drivers.get(1).max_laps == 6
    assert engine.drivers.get(1).next_batch_start == 4


def test_load_reports_each_step(service, client):
    _load(service)

    assert client.statuses == [
        "Loading session...",
        "Loading drivers...",
        "Loading session data...",
        "Loading results...",
        "Loading laps (1-3)...",
        "Loading laps (1-3)...",
        "Loading race control...",
    ]


def test_unknown_session(service):
    with pytest.raises(BootstrapError):
        _load(service, country="Atlantis")

    assert service.status == "Session not found."
    assert service.engine is None


def test_failed_load_keeps_previous_session(service, client):
    _load(service)
    previous = service.engine

    client.fail.add("get_results")
    with pytest.raises(BootstrapError):
        _load(service)

    assert service.engine is previous
    assert service.status == "Request failed: get_results"
    assert service.session["session_key"] == SESSION_KEY


def test_controls_need_a_session(service):
    with pytest.raises(BootstrapError):
        service.pause()
    with pytest.raises(BootstrapError):
        service.reset()


def test_set_speed(service):
    _load(service)

    service.set_speed(20)

    assert service.speed == 20
    assert service.engine.clock.speed == 20
    with pytest.raises(ValueError):
        service.set_speed(0)


def test_snapshot_before_and_after_load(service):
    empty = service.snapshot()
    assert empty["standings"] == []
    assert empty["phase"] == "—"
    assert empty["laps_progress"] == "—"

    _load(service)
    snap = service.snapshot()

    assert snap["status"] == "Ready."
    assert snap["sim_time_ms"] == 0.0
    assert snap["sim_clock"] == "2025-12-06T14:00:00+00:00"
    assert snap["playing"] is False
    assert [row["number"] for row in snap["standings"]] == [1, 4]
    assert snap["standings"][0]["movement"] is None


def test_tick_launches_prefetch_and_sweep(service, client, monkeypatch):
    wall = FakeWallClock()

    async def scenario():
        await service.load("United Arab Emirates", "Qualifying", 2025)
        engine = service.engine
        monkeypatch.setattr(engine.clock, "_wall_clock", wall)
        engine.play()

        wall.advance(170)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        return engine

    engine = asyncio.run(scenario())

    assert engine.phase == "Q1"
    assert set(client.lap_calls[2:]) == {(1, 4, 6), (4, 4, 6)}
    ver = engine.drivers.get(1)
    assert len(ver.laps) == 6
    assert ver.next_batch_start is None
    assert ver.loading_more is False
    assert len(engine.drivers.get(4).laps) == 4


def test_failed_prefetch_is_retried(service, client, monkeypatch):
    wall = FakeWallClock()
    client.fail.update({(1, 4), (4, 4)})

    async def scenario():
        await service.load("United Arab Emirates", "Qualifying", 2025)
        engine = service.engine
        monkeypatch.setattr(engine.clock, "_wall_clock", wall)
        engine.play()

        wall.advance(170)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        first = list(client.lap_calls)

        client.fail.clear()
        wall.advance(1)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        return engine, first

    engine, first = asyncio.run(scenario())

    assert (1, 4, 6) in first[2:]
    assert client.lap_calls[-1] == (1, 4, 6)
    assert len(engine.drivers.get(1).laps) == 6


def test_unexpected_prefetch_error_releases_driver(service, client, monkeypatch):
    wall = FakeWallClock()
    client.broken.add((1, 4))

    async def scenario():
        await service.load("United Arab Emirates", "Qualifying", 2025)
        engine = service.engine
        monkeypatch.setattr(engine.clock, "_wall_clock", wall)
        engine.play()

        wall.advance(170)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        ver = engine.drivers.get(1)
        after_error = (ver.loading_more, ver.next_batch_start, len(service._tasks))

        client.broken.clear()
        wall.advance(1)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        return engine, after_error

    engine, after_error = asyncio.run(scenario())

    assert after_error == (False, 4, 0)
    assert client.lap_calls[-1] == (1, 4, 6)
    assert len(engine.drivers.get(1).laps) == 6


def test_reload_cancels_fetches_of_previous_session(service, client, monkeypatch):
    client.hold.update({(1, 4), (4, 4)})

    async def play_into_q1():
        engine = service.engine
        wall = FakeWallClock()
        monkeypatch.setattr(engine.clock, "_wall_clock", wall)
        engine.play()
        wall.advance(170)
        service.tick()
        for _ in range(5):
            await asyncio.sleep(0)
        return engine

    async def scenario():
        await service.load("United Arab Emirates", "Qualifying", 2025)
        old = await play_into_q1()
        blocked = list(service._tasks)
        calls_before = len(client.lap_calls)

        client.hold.clear()
        await service.load("United Arab Emirates", "Qualifying", 2025)
        for _ in range(5):
            await asyncio.sleep(0)
        cancelled = [task.cancelled() for task in blocked]

        new = await play_into_q1()
        return old, new, blocked, cancelled, client.lap_calls[calls_before:]

    old, new, blocked, cancelled, later_calls = asyncio.run(scenario())

    assert len(blocked) == 2
    assert cancelled == [True, True]
    assert old.drivers.get(4).loading_more is False
    assert later_calls == [(1, 1, 3), (4, 1, 3), (1, 4, 6), (4, 4, 6)]
    assert len(new.drivers.get(4).laps) == 4
    assert service._sweep_task.done()


def test_close_releases_client(service, client):
    asyncio.run(service.close())

    assert client.closed is True

"""Replay service.

Owns the loaded ReplayEngine and drives it from one asyncio task. Lap
fetches run as tasks on the same event loop and hand their results back to
the engine there, so every engine mutation happens on the loop thread.
"""
import asyncio
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional, Set

from config import Settings
from replay.clock import PlaybackClock
from replay.engine import LapRequest, ReplayEngine
from replay.errors import BootstrapError, FetchError
from replay.phases import NO_PHASE, build_phase_ranges
from replay.standings import PositionTracker
from replay.timeline import at_ms, ms_since, parse_iso
from services.openf1 import (
    OpenF1Client,
    normalize_control_events,
    normalize_drivers,
    normalize_results,
)

logger = logging.getLogger(__name__)


class ReplayService:
    def __init__(self, client: OpenF1Client, settings: Optional[Settings] = None) -> None:
        self.client = client
        self.settings = settings or Settings()
        self.engine: Optional[ReplayEngine] = None
        self.session: Optional[Dict[str, Any]] = None
        self.status = "Enter session parameters and load."
        self.laps_done = 0
        self.laps_total = 0
        self.speed = self.settings.speed
        self.tracker = PositionTracker()

        self._ticker: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._swept_phase: Optional[str] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, country: str, session_name: str, year: int) -> None:
        """Fetch a session and build a fresh engine for it.

        On failure the status carries the reason, BootstrapError is raised
        and the previously loaded session stays as it was.
        """
        logger.info(f"Load started | country={country} | session={session_name} | year={year}")
        try:
            engine, session = await self._bootstrap(country, session_name, year)
        except BootstrapError as exc:
            self.status = str(exc)
            logger.error(f"Load failed | country={country} | year={year} | error={exc}")
            raise
        except FetchError as exc:
            self.status = str(exc)
            logger.error(f"Load failed | country={country} | year={year} | error={exc}")
            raise BootstrapError(str(exc)) from exc

        if self.engine is not None:
            self.engine.pause()
        self._cancel_tasks()
        self.engine = engine
        self.session = session
        self.tracker.reset()
        self._swept_phase = None
        self.status = "Ready."
        logger.info(
            f"Load finished | session_key={session['session_key']} | drivers={len(engine.drivers)} "
            f"| events={len(engine.queue)} | phases={[r.phase for r in engine.phase_ranges]}"
        )

    async def _bootstrap(self, country: str, session_name: str, year: int):
        client = self.client
        self.status = "Loading session..."
        sessions = await client.find_sessions(country, session_name, year)
        if not sessions:
            raise BootstrapError("Session not found.")
        session_key = sessions[0]["session_key"]

        self.status = "Loading drivers..."
        drivers = normalize_drivers(await client.get_drivers(session_key))
        if not drivers:
            raise BootstrapError("No driver data for this session.")

        self.status = "Loading session data..."
        info = await client.get_session(session_key)
        session = info[0] if info else sessions[0]
        if not session.get("date_start") or not session.get("date_end"):
            raise BootstrapError("Session has no start or end time.")
        start = parse_iso(session["date_start"])
        end_ms = ms_since(start, parse_iso(session["date_end"]))

        self.status = "Loading results..."
        lap_counts, durations = normalize_results(await client.get_results(session_key))

        s = self.settings
        engine = ReplayEngine(
            drivers,
            session_start=start,
            session_end_ms=end_ms,
            phase_durations=durations,
            lap_counts=lap_counts,
            clock=PlaybackClock(
                0.0, end_ms, speed=self.speed, step_ms=s.step_ms, max_iterations=s.max_iterations
            ),
            batch_size=s.prefetch_batch,
            prefetch_lead=s.prefetch_lead,
            highlight_ms=s.highlight_ms,
        )

        self.status = f"Loading laps (1-{s.prefetch_batch})..."
        self.laps_total = len(drivers)
        self.laps_done = 0
        for state in engine.drivers:
            request = engine.next_request(state)
            if request is not None:
                raws = await client.get_laps(
                    session_key, state.number, request.start_lap, request.end_lap
                )
                engine.ingest_laps(state.number, raws, request.start_lap, request.end_lap)
            self.laps_done += 1

        self.status = "Loading race control..."
        control = normalize_control_events(await client.get_control_events(session_key), start)
        engine.phase_ranges = build_phase_ranges(control, 0.0, end_ms)

        meta = {
            "session_key": session_key,
            "session_name": session.get("session_name"),
            "location": session.get("location"),
            "country_name": session.get("country_name"),
            "year": session.get("year"),
            "date_start": start.isoformat(),
            "date_end": session["date_end"],
        }
        return engine, meta

    # ------------------------------------------------------------------
    # Playback controls
    # ------------------------------------------------------------------

    def _require_engine(self) -> ReplayEngine:
        if self.engine is None:
            raise BootstrapError("No session loaded.")
        return self.engine

    def play(self) -> None:
        engine = self._require_engine()
        engine.set_speed(self.speed)
        engine.play()
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.get_running_loop().create_task(self._run())

    def pause(self) -> None:
        self._require_engine().pause()

    def reset(self) -> None:
        self._require_engine().reset()
        self.tracker.reset()

    def set_speed(self, speed: float) -> None:
        if speed <= 0:
            raise ValueError("speed must be > 0")
        self.speed = speed
        if self.engine is not None:
            self.engine.set_speed(speed)

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while self.engine is not None and self.engine.clock.playing:
            self.tick()
            await asyncio.sleep(self.settings.tick_s)

    def tick(self) -> None:
        """One scheduler tick: step the engine and start the fetches it asks for."""
        engine = self.engine
        if engine is None or not engine.clock.playing:
            return
        try:
            result = engine.tick()
        except Exception:
            logger.exception(f"Tick failed | at={engine.now_ms:.0f}")
            return

        session_key = self.session["session_key"]
        for request in result.requests:
            self._spawn(self._fetch_batch(engine, session_key, request))
        sweeping = self._sweep_task is not None and not self._sweep_task.done()
        if result.entered_phase and result.entered_phase != self._swept_phase and not sweeping:
            self._swept_phase = result.entered_phase
            self._sweep_task = self._spawn(self._sweep(engine, session_key))
        if result.replayed:
            self.tracker.reset()
        self.tracker.update(engine.standings(), engine.now_ms)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fetch_batch(self, engine: ReplayEngine, session_key: int, request: LapRequest) -> None:
        """Fetch one lap batch. The driver's claim is released unless the laps were ingested."""
        ingested = False
        try:
            raws = await self.client.get_laps(
                session_key, request.driver_number, request.start_lap, request.end_lap
            )
            if engine is self.engine:
                engine.ingest_laps(request.driver_number, raws, request.start_lap, request.end_lap)
                ingested = True
        except FetchError as exc:
            logger.debug(
                f"Prefetch failed | driver={request.driver_number} "
                f"| laps={request.start_lap}-{request.end_lap} | error={exc}"
            )
        except Exception:
            logger.exception(
                f"Prefetch crashed | driver={request.driver_number} "
                f"| laps={request.start_lap}-{request.end_lap}"
            )
        finally:
            if not ingested:
                engine.fetch_failed(request.driver_number)

    async def _sweep(self, engine: ReplayEngine, session_key: int) -> None:
        """Fetch the next batch for every driver, one driver at a time."""
        for pending in engine.phase_sweep():
            state = engine.drivers.get(pending.driver_number)
            request = engine.next_request(state) if state is not None else None
            if request is not None:
                await self._fetch_batch(engine, session_key, request)

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._sweep_task = None

    async def close(self) -> None:
        self._cancel_tasks()
        if self._ticker is not None:
            self._ticker.cancel()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def laps_progress(self) -> str:
        if not self.laps_total:
            return "—"
        pct = round(self.laps_done / max(1, self.laps_total) * 100)
        return f"{self.laps_done}/{self.laps_total} · {pct}%"

    def standings(self):
        engine = self.engine
        if engine is None:
            return []
        return [asdict(s) for s in self.tracker.annotate(engine.standings(), engine.now_ms)]

    def snapshot(self) -> Dict[str, Any]:
        engine = self.engine
        payload: Dict[str, Any] = {
            "status": self.status,
            "laps_progress": self.laps_progress,
            "session": self.session,
            "speed": self.speed,
            "playing": False,
            "sim_time_ms": None,
            "sim_clock": None,
            "progress": 0.0,
            "phase": NO_PHASE,
            "standings": [],
        }
        if engine is None:
            return payload
        payload.update(
            playing=engine.clock.playing,
            sim_time_ms=engine.now_ms,
            sim_clock=at_ms(engine.session_start, engine.now_ms).isoformat(),
            progress=engine.clock.progress,
            phase=engine.phase,
            standings=self.standings(),
        )
        return payload

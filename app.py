"""F1 Qualifying Replay API (FastAPI)

Small API for replaying an archived OpenF1 qualifying session as a live
timing board: load a session, press play, and poll /state.

Folders:
- services/: OpenF1 client and the replay service that drives the engine
- repo/: reads/writes the SQLite response cache
- replay/: laps -> events -> driver timing state -> standings
"""
from fastapi import Depends, FastAPI, HTTPException, Query
from typing import Optional
from config import Settings
from replay.errors import BootstrapError
from replay.segments import segment_category
from repo.cache_repo import ResponseCache
from services.openf1 import OpenF1Client
from services.replay_service import ReplayService
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = Settings.from_env()
cache = ResponseCache(settings.db_path) if settings.cache_enabled else None

app = FastAPI(title="F1 Qualifying Replay API")

_service = ReplayService(
    OpenF1Client(
        base_url=settings.openf1_base_url,
        rate_limit_ms=settings.rate_limit_ms,
        timeout_s=settings.timeout_s,
        retries=settings.retries,
        initial_delay_ms=settings.backoff_ms,
        cache=cache,
    ),
    settings,
)


def get_service() -> ReplayService:
    return _service


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/load")
async def load(
    country: Optional[str] = Query(None),
    session_name: Optional[str] = Query(None),
    year: Optional[int] = Query(None),
    service: ReplayService = Depends(get_service),
):
    defaults = settings.default_session
    country = country or defaults["country"]
    session_name = session_name or defaults["session_name"]
    year = year or defaults["year"]

    try:
        await service.load(country, session_name, year)
    except BootstrapError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    return {
        "ok": True,
        "session": service.session,
        "status": service.status,
        "laps_progress": service.laps_progress,
    }


@app.post("/play")
async def play(service: ReplayService = Depends(get_service)):
    try:
        service.play()
    except BootstrapError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "playing": service.engine.clock.playing}


@app.post("/pause")
async def pause(service: ReplayService = Depends(get_service)):
    try:
        service.pause()
    except BootstrapError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "sim_time_ms": service.engine.now_ms}


@app.post("/reset")
async def reset(service: ReplayService = Depends(get_service)):
    try:
        service.reset()
    except BootstrapError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "sim_time_ms": service.engine.now_ms}


@app.post("/speed")
async def speed(
    value: float = Query(...),
    service: ReplayService = Depends(get_service),
):
    if value <= 0:
        raise HTTPException(status_code=400, detail="value must be > 0")
    service.set_speed(value)
    return {"ok": True, "speed": service.speed}


@app.get("/state")
async def state(service: ReplayService = Depends(get_service)):
    return service.snapshot()


@app.get("/standings")
async def standings(service: ReplayService = Depends(get_service)):
    snapshot = service.snapshot()
    return {
        "sim_time_ms": snapshot["sim_time_ms"],
        "phase": snapshot["phase"],
        "standings": snapshot["standings"],
    }


@app.get("/segments/{value}")
def segment(value: str):
    return {"value": value, "category": segment_category(value)}


@app.get("/cache")
def cached_sessions():
    if cache is None:
        return {"enabled": False, "sessions": []}
    return {"enabled": True, "sessions": cache.sessions()}


@app.delete("/cache")
def clear_cache(session_key: int = Query(...)):
    if cache is None:
        raise HTTPException(status_code=404, detail="Response cache is disabled")
    deleted = cache.delete_session(session_key)
    logger.info(f"Cache cleared | session_key={session_key} | rows={deleted}")
    return {"ok": True, "session_key": session_key, "deleted": deleted}

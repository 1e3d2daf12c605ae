"""Settings read from the environment (and a .env file if present)."""
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from db import DB_PATH


def _flag(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class Settings:
    openf1_base_url: str = "https://api.openf1.org/v1"
    rate_limit_ms: float = 700
    timeout_s: float = 10.0
    retries: int = 3
    backoff_ms: float = 600
    db_path: str = DB_PATH
    cache_enabled: bool = True

    speed: float = 5.0
    step_ms: float = 80.0
    max_iterations: int = 200
    tick_s: float = 0.05
    prefetch_batch: int = 3
    prefetch_lead: int = 3
    highlight_ms: float = 5000.0

    default_session: dict = field(
        default_factory=lambda: {
            "country": "United Arab Emirates",
            "session_name": "Qualifying",
            "year": 2025,
        }
    )

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        return cls(
            openf1_base_url=env.get("OPENF1_BASE_URL", cls.openf1_base_url),
            rate_limit_ms=float(env.get("OPENF1_RATE_LIMIT_MS", cls.rate_limit_ms)),
            timeout_s=float(env.get("OPENF1_TIMEOUT_S", cls.timeout_s)),
            retries=int(env.get("OPENF1_RETRIES", cls.retries)),
            backoff_ms=float(env.get("OPENF1_BACKOFF_MS", cls.backoff_ms)),
            db_path=env.get("F1REPLAY_DB", DB_PATH),
            cache_enabled=_flag(env.get("F1REPLAY_CACHE", "1")),
            speed=float(env.get("REPLAY_SPEED", cls.speed)),
            step_ms=float(env.get("REPLAY_STEP_MS", cls.step_ms)),
            max_iterations=int(env.get("REPLAY_MAX_ITERATIONS", cls.max_iterations)),
            tick_s=float(env.get("REPLAY_TICK_S", cls.tick_s)),
            prefetch_batch=int(env.get("PREFETCH_BATCH", cls.prefetch_batch)),
            prefetch_lead=int(env.get("PREFETCH_LEAD", cls.prefetch_lead)),
            highlight_ms=float(env.get("HIGHLIGHT_MS", cls.highlight_ms)),
        )

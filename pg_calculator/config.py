import math
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

DEFAULT_STATIC_DIR = str(Path(__file__).resolve().parent / "static")


@dataclass(frozen=True)
class Config:
    database_url: str
    host: str = "0.0.0.0"
    port: int = 3000
    threads: int = 20
    pool_max_size: int = 5
    pool_timeout: float = 30.0
    startup_timeout: float = 5.0
    static_dir: str = DEFAULT_STATIC_DIR
    log_level: str = "INFO"


def _positive(env, name: str, default, cast=int):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{name} must be a positive finite number, got {raw!r}")
    return value


def load_config(environ=None) -> Config:
    """Read the service configuration from the environment.

    DATABASE_URL is the only required variable; everything else falls back
    to the defaults on Config.
    """
    env = os.environ if environ is None else environ

    database_url = env.get("DATABASE_URL", "").strip()
    if not database_url:
        raise ConfigError("DATABASE_URL env var is not set")

    return Config(
        database_url=database_url,
        host=env.get("HOST", "").strip() or Config.host,
        port=_positive(env, "PORT", Config.port),
        threads=_positive(env, "THREADS", Config.threads),
        pool_max_size=_positive(env, "CALC_POOL_MAX_SIZE", Config.pool_max_size),
        pool_timeout=_positive(env, "CALC_POOL_TIMEOUT", Config.pool_timeout, float),
        startup_timeout=_positive(env, "CALC_STARTUP_TIMEOUT", Config.startup_timeout, float),
        static_dir=env.get("CALC_STATIC_DIR", "").strip() or DEFAULT_STATIC_DIR,
        log_level=env.get("LOG_LEVEL", "").strip().upper() or Config.log_level,
    )

import os
from dataclasses import dataclass, field
from typing import Mapping

from errors import ConfigError

BACKENDS = ("memory", "sql", "supabase")


@dataclass(frozen=True)
class Settings:
    backend: str = "memory"
    database_url: str = "sqlite:///./counters.db"
    supabase_url: str | None = None
    supabase_key: str | None = None
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: tuple = ("*",)
    rate_limit_max: int = 100
    rate_limit_window_seconds: int = 900
    log_level: str = "INFO"
    hsts: bool = False
    counter_table: str = "visits"
    increment_rpc: str = "increment_visits"
    clicks_table: str = "card_clicks"
    click_counts_view: str = "card_click_counts"
    service_name: str = field(default="visit-counter-api")


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}")
    return value


def _origins(raw: str | None) -> tuple:
    if not raw:
        return ("*",)
    origins = tuple(o.strip() for o in raw.split(",") if o.strip())
    return origins or ("*",)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables.

    Raises ConfigError when the selected backend lacks its credentials.
    """
    env = os.environ if environ is None else environ

    backend = env.get("STORE_BACKEND", "memory").strip().lower()
    if backend not in BACKENDS:
        raise ConfigError(f"STORE_BACKEND must be one of {', '.join(BACKENDS)}")

    supabase_url = env.get("SUPABASE_URL") or None
    # service key wins over the anonymous key when both are present
    supabase_key = env.get("SUPABASE_SERVICE_KEY") or env.get("SUPABASE_ANON_KEY") or None
    if backend == "supabase":
        if not supabase_url:
            raise ConfigError("SUPABASE_URL is required for the supabase backend")
        if not supabase_key:
            raise ConfigError("SUPABASE_SERVICE_KEY or SUPABASE_ANON_KEY is required for the supabase backend")

    database_url = env.get("DATABASE_URL") or Settings.database_url
    if backend == "sql" and "://" not in database_url:
        raise ConfigError("DATABASE_URL must be an SQLAlchemy URL")

    return Settings(
        backend=backend,
        database_url=database_url,
        supabase_url=supabase_url.rstrip("/") if supabase_url else None,
        supabase_key=supabase_key,
        host=env.get("HOST", Settings.host),
        port=_int(env, "PORT", Settings.port, minimum=1),
        cors_origins=_origins(env.get("CORS_ORIGINS")),
        rate_limit_max=_int(env, "RATE_LIMIT_MAX", Settings.rate_limit_max),
        rate_limit_window_seconds=_int(env, "RATE_LIMIT_WINDOW_SECONDS", Settings.rate_limit_window_seconds, minimum=1),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        hsts=env.get("HSTS", "").lower() in ("1", "true", "yes"),
        counter_table=env.get("COUNTER_TABLE", Settings.counter_table),
        increment_rpc=env.get("INCREMENT_RPC", Settings.increment_rpc),
        clicks_table=env.get("CLICKS_TABLE", Settings.clicks_table),
        click_counts_view=env.get("CLICK_COUNTS_VIEW", Settings.click_counts_view),
    )

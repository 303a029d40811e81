from dataclasses import dataclass, replace
from datetime import date
import os

from dotenv import load_dotenv


load_dotenv()

WRITE_STRATEGIES = ("per_row", "reused", "array_batch", "server")

# Fetch/write/commit shapes of the benchmark variants.
PRESETS: dict[str, dict[str, object]] = {
    "naive": {
        "strategy": "per_row",
        "fetch_size": 10,
        "commit_window": 1,
        "filter_at_source": False,
    },
    "filtered": {
        "strategy": "per_row",
        "fetch_size": 10,
        "commit_window": 1,
        "filter_at_source": True,
    },
    "prepared": {
        "strategy": "reused",
        "fetch_size": 1000,
        "commit_window": 10000,
        "filter_at_source": True,
    },
    "batched": {
        "strategy": "array_batch",
        "fetch_size": 1000,
        "batch_size": 1000,
        "commit_window": 10000,
        "filter_at_source": True,
    },
    "server": {
        "strategy": "server",
        "commit_window": 0,
        "filter_at_source": True,
    },
}


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    output_dir: str
    run_period: str
    enrolled_since: date
    write_strategy: str
    fetch_size: int
    batch_size: int
    commit_window: int
    error_ceiling: int
    filter_at_source: bool
    isolate_batch_failures: bool
    special_category: str
    special_address_terms: tuple[str, ...]
    reconcile_tolerance_pct: float
    progress_interval: int
    schedule_day: int
    schedule_hour_utc: int
    schedule_minute_utc: int


@dataclass(frozen=True)
class RunConfig:
    """Everything one pipeline run needs; built from Settings, never mutated."""

    run_period: str
    enrolled_since: date
    strategy: str
    fetch_size: int
    batch_size: int
    commit_window: int | None
    error_ceiling: int
    filter_at_source: bool = True
    isolate_batch_failures: bool = False
    progress_interval: int = 50000
    preset: str | None = None


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_terms(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(term.strip() for term in raw.split(",") if term.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "couponbatch"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./coupons.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        output_dir=os.getenv("OUTPUT_DIR", "./outputs"),
        run_period=os.getenv("RUN_PERIOD", "202506"),
        enrolled_since=date.fromisoformat(os.getenv("ENROLLED_SINCE", "2013-01-01")),
        write_strategy=os.getenv("WRITE_STRATEGY", "array_batch"),
        fetch_size=int(os.getenv("FETCH_SIZE", "1000")),
        batch_size=int(os.getenv("BATCH_SIZE", "1000")),
        commit_window=int(os.getenv("COMMIT_WINDOW", "10000")),
        error_ceiling=int(os.getenv("ERROR_CEILING", "1000")),
        filter_at_source=_env_bool("FILTER_AT_SOURCE", "true"),
        isolate_batch_failures=_env_bool("ISOLATE_BATCH_FAILURES", "false"),
        special_category=os.getenv("SPECIAL_CATEGORY", "F"),
        special_address_terms=_env_terms("SPECIAL_ADDRESS_TERMS", "송파구,풍납1동"),
        reconcile_tolerance_pct=float(os.getenv("RECONCILE_TOLERANCE_PCT", "1.0")),
        progress_interval=int(os.getenv("PROGRESS_INTERVAL", "50000")),
        schedule_day=int(os.getenv("SCHEDULE_DAY", "1")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )


def build_run_config(settings: Settings, *, preset: str | None = None, **overrides: object) -> RunConfig:
    """Resolve settings, then the preset, then explicit overrides (None means unset)."""
    config = RunConfig(
        run_period=settings.run_period,
        enrolled_since=settings.enrolled_since,
        strategy=settings.write_strategy,
        fetch_size=settings.fetch_size,
        batch_size=settings.batch_size,
        commit_window=settings.commit_window or None,
        error_ceiling=settings.error_ceiling,
        filter_at_source=settings.filter_at_source,
        isolate_batch_failures=settings.isolate_batch_failures,
        progress_interval=settings.progress_interval,
    )
    if preset is not None:
        if preset not in PRESETS:
            raise ValueError(f"unknown preset '{preset}'")
        config = replace(config, preset=preset, **PRESETS[preset])

    explicit = {key: value for key, value in overrides.items() if value is not None}
    config = replace(config, **explicit)
    if config.commit_window is not None and config.commit_window <= 0:
        config = replace(config, commit_window=None)

    if config.strategy not in WRITE_STRATEGIES:
        raise ValueError(f"unknown write strategy '{config.strategy}'")
    if config.fetch_size < 1 or config.batch_size < 1:
        raise ValueError("fetch_size and batch_size must be positive")
    if config.strategy == "server":
        # One set statement, one commit.
        config = replace(config, commit_window=None)
    return config

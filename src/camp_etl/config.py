"""camp_etl.config

YAML configuration for the pipeline.

Responsibilities:
  - Load and validate config/pipeline.yml (thresholds, batch sizes, retention)
  - Load and validate regional address profiles from config/regions/*.yml
  - Resolve a source's city_slug to its regional profile

Usage:
    from pathlib import Path
    from camp_etl.config import load_pipeline_config, load_regional_profiles

    cfg = load_pipeline_config(Path("config/pipeline.yml"))
    profiles = load_regional_profiles(Path("config/regions"))
    portland = profiles["portland"]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_PIPELINE_PATH = PROJECT_ROOT / "config" / "pipeline.yml"
DEFAULT_REGIONS_DIR = PROJECT_ROOT / "config" / "regions"

REQUIRED_PIPELINE_KEYS = frozenset({
    "version",
    "thresholds",
    "max_session_days",
    "zero_price_alert",
    "health",
    "scheduler",
    "cleanup",
    "geocoding",
})

REQUIRED_THRESHOLD_KEYS = frozenset({
    "review_min_score", "active_score", "high_quality", "medium_quality",
})

REQUIRED_PROFILE_KEYS = frozenset({
    "city_slug", "default_city", "default_state", "states", "cities", "zip_prefixes",
})

_MONTH_DAY_RE = re.compile(r"^\d{2}-\d{2}$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a YAML config or profile file fails validation."""


# ---------------------------------------------------------------------------
# PipelineConfig
# ---------------------------------------------------------------------------

@dataclass
class PipelineConfig:
    """Pipeline thresholds. Defaults match config/pipeline.yml."""

    version: str = "default"
    review_min_score: int = 50
    active_score: int = 100
    high_quality: int = 80
    medium_quality: int = 50
    max_session_days: int = 21
    zero_price_min_sessions: int = 3
    zero_price_max_ratio: float = 0.8
    zero_price_dedupe_hours: int = 24
    regeneration_after_failures: int = 3
    disable_after_failures: int = 10
    scheduler_batch_size: int = 5
    scheduler_max_workers: int = 3
    retention_days: int = 30
    cleanup_batch_size: int = 50
    stuck_job_minutes: int = 60
    geocode_max_workers: int = 3
    geocode_max_attempts: int = 3
    geocode_backoff_seconds: float = 2.0


def validate_pipeline_config(data: Any) -> None:
    if not isinstance(data, dict):
        raise ConfigValidationError("pipeline config must be a YAML mapping")
    missing = REQUIRED_PIPELINE_KEYS - data.keys()
    if missing:
        raise ConfigValidationError(f"pipeline config missing keys: {sorted(missing)}")
    thresholds = data["thresholds"]
    if not isinstance(thresholds, dict):
        raise ConfigValidationError("thresholds must be a mapping")
    missing = REQUIRED_THRESHOLD_KEYS - thresholds.keys()
    if missing:
        raise ConfigValidationError(f"thresholds missing keys: {sorted(missing)}")
    for key in REQUIRED_THRESHOLD_KEYS:
        value = thresholds[key]
        if not isinstance(value, int) or not 0 <= value <= 100:
            raise ConfigValidationError(f"thresholds.{key} must be an integer in [0, 100]")
    if thresholds["review_min_score"] > thresholds["active_score"]:
        raise ConfigValidationError("thresholds.review_min_score must not exceed active_score")
    if thresholds["medium_quality"] > thresholds["high_quality"]:
        raise ConfigValidationError("thresholds.medium_quality must not exceed high_quality")

    zp = data["zero_price_alert"]
    if not isinstance(zp, dict) or not 0 <= float(zp.get("max_ratio", -1)) <= 1:
        raise ConfigValidationError("zero_price_alert.max_ratio must be in [0, 1]")

    health = data["health"]
    if not isinstance(health, dict):
        raise ConfigValidationError("health must be a mapping")
    regen = health.get("regeneration_after_failures")
    disable = health.get("disable_after_failures")
    if not isinstance(regen, int) or not isinstance(disable, int) or regen < 1 or disable < regen:
        raise ConfigValidationError(
            "health thresholds must be positive integers with "
            "regeneration_after_failures <= disable_after_failures"
        )

    for section in ("scheduler", "cleanup", "geocoding"):
        if not isinstance(data[section], dict):
            raise ConfigValidationError(f"{section} must be a mapping")
    if not isinstance(data["max_session_days"], int) or data["max_session_days"] < 1:
        raise ConfigValidationError("max_session_days must be a positive integer")


def load_pipeline_config(yaml_path: Path | None = None) -> PipelineConfig:
    """Load and validate the pipeline config; defaults when no path is given.

    Raises:
        ConfigValidationError: If any required key is missing or invalid.
        FileNotFoundError: If an explicit path does not exist.
    """
    if yaml_path is None:
        if not DEFAULT_PIPELINE_PATH.exists():
            return PipelineConfig()
        yaml_path = DEFAULT_PIPELINE_PATH
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_pipeline_config(data)
    t = data["thresholds"]
    zp = data["zero_price_alert"]
    sched = data["scheduler"]
    cleanup = data["cleanup"]
    geo = data["geocoding"]
    defaults = PipelineConfig()
    return PipelineConfig(
        version=str(data["version"]),
        review_min_score=t["review_min_score"],
        active_score=t["active_score"],
        high_quality=t["high_quality"],
        medium_quality=t["medium_quality"],
        max_session_days=data["max_session_days"],
        zero_price_min_sessions=int(zp.get("min_sessions", defaults.zero_price_min_sessions)),
        zero_price_max_ratio=float(zp["max_ratio"]),
        zero_price_dedupe_hours=int(zp.get("dedupe_hours", defaults.zero_price_dedupe_hours)),
        regeneration_after_failures=data["health"]["regeneration_after_failures"],
        disable_after_failures=data["health"]["disable_after_failures"],
        scheduler_batch_size=int(sched.get("batch_size", defaults.scheduler_batch_size)),
        scheduler_max_workers=int(sched.get("max_workers", defaults.scheduler_max_workers)),
        retention_days=int(cleanup.get("retention_days", defaults.retention_days)),
        cleanup_batch_size=int(cleanup.get("batch_size", defaults.cleanup_batch_size)),
        stuck_job_minutes=int(cleanup.get("stuck_job_minutes", defaults.stuck_job_minutes)),
        geocode_max_workers=int(geo.get("max_workers", defaults.geocode_max_workers)),
        geocode_max_attempts=int(geo.get("max_attempts", defaults.geocode_max_attempts)),
        geocode_backoff_seconds=float(geo.get("backoff_seconds", defaults.geocode_backoff_seconds)),
    )


# ---------------------------------------------------------------------------
# RegionalProfile
# ---------------------------------------------------------------------------

@dataclass
class RegionalProfile:
    """Address heuristics for one metro area."""

    city_slug: str
    default_city: str
    default_state: str
    states: list[str]
    cities: list[str]
    zip_prefixes: list[str]
    center_latitude: float | None = None
    center_longitude: float | None = None
    seasons: dict[str, tuple[str, str]] = field(default_factory=dict)


def validate_regional_profile(data: Any) -> None:
    if not isinstance(data, dict):
        raise ConfigValidationError("regional profile must be a YAML mapping")
    missing = REQUIRED_PROFILE_KEYS - data.keys()
    if missing:
        raise ConfigValidationError(f"regional profile missing keys: {sorted(missing)}")
    for key in ("states", "cities", "zip_prefixes"):
        values = data[key]
        if not isinstance(values, list) or not values:
            raise ConfigValidationError(f"{key} must be a non-empty list")
    for prefix in data["zip_prefixes"]:
        if not re.fullmatch(r"\d{1,5}", str(prefix)):
            raise ConfigValidationError(f"invalid zip prefix: {prefix!r}")
    for name, window in (data.get("seasons") or {}).items():
        if (
            not isinstance(window, dict)
            or not _MONTH_DAY_RE.match(str(window.get("start", "")))
            or not _MONTH_DAY_RE.match(str(window.get("end", "")))
        ):
            raise ConfigValidationError(f"season {name!r} needs start/end as MM-DD")


def load_regional_profile(yaml_path: Path) -> RegionalProfile:
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    validate_regional_profile(data)
    center = data.get("center") or {}
    return RegionalProfile(
        city_slug=str(data["city_slug"]),
        default_city=str(data["default_city"]),
        default_state=str(data["default_state"]),
        states=[str(s).upper() for s in data["states"]],
        cities=[str(c) for c in data["cities"]],
        zip_prefixes=[str(p) for p in data["zip_prefixes"]],
        center_latitude=center.get("latitude"),
        center_longitude=center.get("longitude"),
        seasons={
            str(name).lower(): (str(w["start"]), str(w["end"]))
            for name, w in (data.get("seasons") or {}).items()
        },
    )


def load_regional_profiles(regions_dir: Path | None = None) -> dict[str, RegionalProfile]:
    """All *.yml profiles in a directory, keyed by city_slug."""
    regions_dir = regions_dir or DEFAULT_REGIONS_DIR
    profiles: dict[str, RegionalProfile] = {}
    for path in sorted(regions_dir.glob("*.yml")):
        profile = load_regional_profile(path)
        profiles[profile.city_slug] = profile
    return profiles

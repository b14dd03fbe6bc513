"""
Runtime configuration for the trip engine.

Every value is read from the environment (a local ``.env`` is loaded on
import) so thresholds and provider ordering can be tuned per deployment.
API keys are *not* captured here; the provider modules read them lazily.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


@dataclass
class ProviderSetting:
    """One entry of the flight provider priority list."""
    name: str
    enabled: bool = True


def _provider_settings() -> list[ProviderSetting]:
    disabled = set(_env_list("FLIGHT_PROVIDERS_DISABLED", ""))
    return [
        ProviderSetting(name=name, enabled=name not in disabled)
        for name in _env_list("FLIGHT_PROVIDERS", "serper,amadeus,llm,mock")
    ]


@dataclass
class Settings:
    # Travel mode thresholds: a leg is flown when either limit is exceeded.
    drive_max_hours: float = field(default_factory=lambda: _env_float("DRIVE_MAX_HOURS", 4.0))
    drive_max_distance_km: float = field(default_factory=lambda: _env_float("DRIVE_MAX_DISTANCE_KM", 300.0))

    # Flight search
    provider_timeout_seconds: float = field(default_factory=lambda: _env_float("PROVIDER_TIMEOUT_SECONDS", 15.0))
    max_flight_results: int = field(default_factory=lambda: _env_int("MAX_FLIGHT_RESULTS", 5))
    airport_candidates: int = field(default_factory=lambda: _env_int("AIRPORT_CANDIDATES", 2))
    flight_providers: list[ProviderSetting] = field(default_factory=_provider_settings)
    round_trip_first_leg: bool = field(default_factory=lambda: _env_bool("ROUND_TRIP_FIRST_LEG", True))

    # Trip length
    work_hours_per_day: float = field(default_factory=lambda: _env_float("WORK_HOURS_PER_DAY", 10.0))
    min_travel_days: int = field(default_factory=lambda: _env_int("MIN_TRAVEL_DAYS", 1))

    # Warn about intra-European flights longer than this (minutes); 0 disables.
    long_flight_warning_minutes: int = field(default_factory=lambda: _env_int("LONG_FLIGHT_WARNING_MINUTES", 600))

    def enabled_providers(self) -> list[str]:
        """Names of the enabled providers, in priority order."""
        return [p.name for p in self.flight_providers if p.enabled]


settings = Settings()

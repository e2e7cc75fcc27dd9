"""
TRAPWATCH — Centralised configuration loader.

All configuration is read from environment variables.
Provides a single Settings object imported by every module.
Pydantic BaseSettings validates types and raises clear errors for bad values.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings loaded from environment variables / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Project ---
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"  # "json" | "text"

    # --- Telemetry collaborator ---
    telemetry_mode: str = "mock"  # "mock" | "live"
    telemetry_base_url: str = "https://datads.iosense.io/api"
    telemetry_user_id: str = ""
    telemetry_timezone: str = "UTC"
    telemetry_timeout_seconds: float = 15.0
    telemetry_max_attempts: int = 3

    # --- Fleet refresh ---
    fleet_refresh_interval_seconds: float = 1800.0
    card_refresh_interval_seconds: float = 30.0
    fleet_device_ids: str = ""  # comma-separated allow-list, empty = every steam trap

    # --- Classification heuristics (degC) ---
    # Not derived from a physical model; review with process engineers before
    # relying on them operationally.
    heuristic_normal_differential: float = 100.0
    heuristic_flooding_differential: float = 20.0

    # --- Energy loss estimate (kW per faulty trap) ---
    energy_loss_choking: float = 10.0
    energy_loss_heavy_leak: float = 15.0

    # --- Fleet insights ---
    insight_efficiency_low: float = 80.0
    insight_efficiency_high: float = 90.0
    insight_energy_loss_high: float = 20.0
    insight_differential_low: float = 50.0

    # --- FastAPI ---
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000"

    # --- Simulator (mock mode) ---
    simulator_devices: int = 12
    simulator_seed: int = 42
    simulator_failure_rate: float = 0.05

    @field_validator("telemetry_mode", mode="before")
    @classmethod
    def normalise_mode(cls, v: str) -> str:
        """Accept MOCK / Live etc. from env."""
        mode = str(v).strip().lower()
        if mode not in ("mock", "live"):
            raise ValueError(f"telemetry_mode must be 'mock' or 'live', got: {v!r}")
        return mode

    @field_validator("telemetry_max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("telemetry_max_attempts must be >= 1")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Return CORS origins as a list for FastAPI middleware."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def fleet_device_id_list(self) -> List[str]:
        """Return the device allow-list; empty means no restriction."""
        return [d.strip() for d in self.fleet_device_ids.split(",") if d.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return a cached Settings singleton.

    Using lru_cache ensures environment variables are read once at startup.
    Call get_settings() everywhere — do not instantiate Settings() directly
    outside of tests.
    """
    return Settings()

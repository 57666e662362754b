from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, Field

from utils import mask_secret


class Configuration(BaseModel):
    # Google Places / Geocoding
    google_api_key: Optional[str] = Field(default=None)
    places_base_url: str = Field(default="https://places.googleapis.com/v1")
    geocode_base_url: str = Field(default="https://maps.googleapis.com/maps/api/geocode/json")
    provider_timeout: int = Field(default=15)
    places_max_results: int = Field(default=20)
    provider_cache_ttl_sec: int = Field(default=60 * 30)
    provider_cache_max: int = Field(default=128)

    # Sessions
    default_radius_m: float = Field(default=5000.0)
    session_duration_hours: int = Field(default=24)
    join_code_max_attempts: int = Field(default=20)

    # Restaurant stage
    batch_size: int = Field(default=8)

    # Recommendations
    max_recommendations: int = Field(default=3)
    favorite_boost: float = Field(default=0.5)
    quality_weight: float = Field(default=0.1)

    @classmethod
    def from_env(cls, overrides: Optional[dict[str, Any]] = None) -> "Configuration":
        raw: dict[str, Any] = {}

        env_map = {
            "google_api_key": os.getenv("GOOGLE_API_KEY"),
            "places_base_url": os.getenv("PLACES_BASE_URL"),
            "geocode_base_url": os.getenv("GEOCODE_BASE_URL"),
            "provider_timeout": os.getenv("PROVIDER_TIMEOUT"),
            "places_max_results": os.getenv("PLACES_MAX_RESULTS"),
            "provider_cache_ttl_sec": os.getenv("PROVIDER_CACHE_TTL_SEC"),
            "provider_cache_max": os.getenv("PROVIDER_CACHE_MAX"),
            "default_radius_m": os.getenv("DEFAULT_RADIUS_M"),
            "session_duration_hours": os.getenv("SESSION_DURATION_HOURS"),
            "join_code_max_attempts": os.getenv("JOIN_CODE_MAX_ATTEMPTS"),
            "batch_size": os.getenv("BATCH_SIZE"),
            "max_recommendations": os.getenv("MAX_RECOMMENDATIONS"),
            "favorite_boost": os.getenv("FAVORITE_BOOST"),
            "quality_weight": os.getenv("QUALITY_WEIGHT"),
        }

        for k, v in env_map.items():
            if v is None:
                continue
            raw[k] = v

        if overrides:
            raw.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**raw)

    def require_places(self) -> None:
        if not self.google_api_key:
            raise ValueError("GOOGLE_API_KEY is required")

    @property
    def session_duration_ms(self) -> int:
        return self.session_duration_hours * 60 * 60 * 1000

    def log_summary(self) -> str:
        return (
            "places=%s timeout=%s max_results=%s batch_size=%s session_hours=%s api_key=%s"
            % (
                bool(self.google_api_key),
                self.provider_timeout,
                self.places_max_results,
                self.batch_size,
                self.session_duration_hours,
                mask_secret(self.google_api_key),
            )
        )

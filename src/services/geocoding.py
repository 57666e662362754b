from __future__ import annotations

import re
from typing import Optional

import requests
from loguru import logger

from config import Configuration
from models import GeocodeResult
from services.errors import InvalidInputError, NotFoundError, ProviderUnavailableError
from services.places import ProviderClient


def clean_zip_code(zip_code: str) -> str:
    return re.sub(r"[\s-]", "", zip_code or "")


def is_valid_zip_code(zip_code: str) -> bool:
    """US ZIP: five digits or ZIP+4, spaces and hyphens ignored."""
    return bool(re.fullmatch(r"\d{5}|\d{9}", clean_zip_code(zip_code)))


class GeocodingClient(ProviderClient):
    def __init__(self, cfg: Configuration, session: Optional[requests.Session] = None) -> None:
        super().__init__(cfg, session)
        self.url = cfg.geocode_base_url

    def geocode_zip(self, zip_code: str) -> GeocodeResult:
        if not is_valid_zip_code(zip_code):
            raise InvalidInputError("Invalid zip code format. Please enter a valid 5-digit US zip code.")
        if not self.cfg.google_api_key:
            raise ProviderUnavailableError("GOOGLE_API_KEY is required")

        cleaned = clean_zip_code(zip_code)
        logger.info("geocoding zip {}", cleaned)
        payload = self._request(
            "GET",
            self.url,
            params={"address": cleaned, "components": "country:US", "key": self.cfg.google_api_key},
        )

        status = payload.get("status")
        if status == "ZERO_RESULTS":
            raise NotFoundError("Zip code not found. Please check and try again.")
        if status != "OK":
            raise ProviderUnavailableError(f"geocoding failed: {status}")

        results = payload.get("results") or []
        if not results:
            raise NotFoundError("Zip code not found. Please check and try again.")
        first = results[0]
        location = (first.get("geometry") or {}).get("location") or {}
        if location.get("lat") is None or location.get("lng") is None:
            raise ProviderUnavailableError("geocoding response missing coordinates")

        return GeocodeResult(
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            formatted_address=str(first.get("formatted_address") or ""),
        )

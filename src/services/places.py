from __future__ import annotations

import asyncio
import random
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from loguru import logger

from config import Configuration
from models import Photo, Restaurant
from services.errors import ProviderUnavailableError

PRICE_LEVELS = {
    "PRICE_LEVEL_FREE": 0,
    "PRICE_LEVEL_INEXPENSIVE": 1,
    "PRICE_LEVEL_MODERATE": 2,
    "PRICE_LEVEL_EXPENSIVE": 3,
    "PRICE_LEVEL_VERY_EXPENSIVE": 4,
}

_PLACE_FIELDS = [
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "rating",
    "userRatingCount",
    "priceLevel",
    "photos",
    "types",
    "currentOpeningHours",
    "businessStatus",
]
SEARCH_FIELD_MASK = ",".join(f"places.{f}" for f in _PLACE_FIELDS)
DETAILS_FIELD_MASK = ",".join(_PLACE_FIELDS)


@dataclass
class _RetryPolicy:
    retries: int = 3
    base_delay: float = 0.5


class ProviderClient:
    """JSON-over-HTTP with retries on network errors, 429 and 5xx."""

    def __init__(self, cfg: Configuration, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self.policy = _RetryPolicy()

    def _request(self, method: str, url: str, **kwargs: Any) -> dict:
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.request(method, url, timeout=self.cfg.provider_timeout, **kwargs)
            except requests.RequestException as exc:
                if attempt <= self.policy.retries:
                    time.sleep(self.policy.base_delay * attempt)
                    continue
                raise ProviderUnavailableError(f"request error: {exc}")

            if resp.status_code in (429, 500, 502, 503, 504):
                if attempt <= self.policy.retries:
                    time.sleep(self.policy.base_delay * attempt)
                    continue
                raise ProviderUnavailableError(f"upstream {resp.status_code}: {resp.text[:300]}")

            if not resp.ok:
                raise ProviderUnavailableError(f"upstream {resp.status_code}: {resp.text[:300]}")

            try:
                return resp.json()
            except ValueError:
                raise ProviderUnavailableError("invalid json response")


def parse_place(place: Dict[str, Any]) -> Optional[Restaurant]:
    place_id = place.get("id")
    if not place_id:
        return None
    location = place.get("location") or {}
    price = place.get("priceLevel")
    hours = place.get("currentOpeningHours") or {}
    rating = place.get("rating")
    count = place.get("userRatingCount")
    photos = [
        Photo(
            photo_reference=str(p.get("name")),
            width=int(p.get("widthPx") or 0),
            height=int(p.get("heightPx") or 0),
        )
        for p in (place.get("photos") or [])
        if p.get("name")
    ]
    return Restaurant(
        place_id=str(place_id),
        name=str((place.get("displayName") or {}).get("text") or "Unknown"),
        vicinity=str(place.get("formattedAddress") or ""),
        lat=float(location.get("latitude") or 0.0),
        lng=float(location.get("longitude") or 0.0),
        rating=float(rating) if isinstance(rating, (int, float)) else None,
        user_ratings_total=int(count) if isinstance(count, (int, float)) else None,
        price_level=PRICE_LEVELS.get(price, 0) if price else None,
        types=[str(t) for t in (place.get("types") or [])],
        photos=photos,
        open_now=hours.get("openNow") if "openNow" in hours else None,
        business_status=place.get("businessStatus"),
    )


class PlacesClient(ProviderClient):
    """Nearby restaurant search against the Places API (New)."""

    def __init__(
        self,
        cfg: Configuration,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(cfg, session)
        self.base = cfg.places_base_url.rstrip("/")
        self.rng = rng or random.Random()
        self._cache_ttl = cfg.provider_cache_ttl_sec
        self._cache_max = cfg.provider_cache_max
        self._cache: OrderedDict[str, Tuple[float, List[Restaurant]]] = OrderedDict()
        # search_nearby hits the cache from worker threads
        self._cache_lock = threading.Lock()

    def _cache_get(self, key: str) -> Optional[List[Restaurant]]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if not entry:
                return None
            ts, value = entry
            if time.time() - ts > self._cache_ttl:
                self._cache.pop(key, None)
                return None
            self._cache.move_to_end(key)
            return list(value)

    def _cache_set(self, key: str, value: List[Restaurant]) -> None:
        with self._cache_lock:
            self._cache.pop(key, None)
            while self._cache and len(self._cache) >= self._cache_max:
                self._cache.popitem(last=False)
            self._cache[key] = (time.time(), list(value))

    def _headers(self, field_mask: str) -> Dict[str, str]:
        if not self.cfg.google_api_key:
            raise ProviderUnavailableError("GOOGLE_API_KEY is required")
        return {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.cfg.google_api_key,
            "X-Goog-FieldMask": field_mask,
        }

    def search_by_type(self, latitude: float, longitude: float, radius_m: float, type_name: str) -> List[Restaurant]:
        key = f"nearby:{type_name}:{latitude:.4f},{longitude:.4f}:{radius_m:.0f}"
        cached = self._cache_get(key)
        if cached is not None:
            return cached
        body = {
            "includedTypes": [type_name],
            "maxResultCount": self.cfg.places_max_results,
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": latitude, "longitude": longitude},
                    "radius": radius_m,
                }
            },
        }
        payload = self._request(
            "POST", f"{self.base}/places:searchNearby", headers=self._headers(SEARCH_FIELD_MASK), json=body
        )
        results = [r for r in (parse_place(p) for p in payload.get("places") or []) if r is not None]
        self._cache_set(key, results)
        return results

    def _search_type_safe(self, latitude: float, longitude: float, radius_m: float, type_name: str) -> List[Restaurant]:
        try:
            results = self.search_by_type(latitude, longitude, radius_m, type_name)
        except ProviderUnavailableError as exc:
            logger.warning("no results for type {}: {}", type_name, exc)
            return []
        logger.debug("type {}: {} results", type_name, len(results))
        return results

    async def search_nearby(
        self, latitude: float, longitude: float, radius_m: float, types: Sequence[str]
    ) -> List[Restaurant]:
        """One request per category, merged by place id and shuffled.

        A category that fails or comes back empty contributes nothing; it
        never fails the whole search.
        """
        batches = await asyncio.gather(
            *(asyncio.to_thread(self._search_type_safe, latitude, longitude, radius_m, t) for t in types)
        )
        merged: Dict[str, Restaurant] = {}
        for batch in batches:
            for restaurant in batch:
                merged.setdefault(restaurant.place_id, restaurant)
        unique = list(merged.values())
        self.rng.shuffle(unique)
        logger.info("found {} unique restaurants across {} categories", len(unique), len(types))
        return unique

    def get_details(self, place_id: str) -> Optional[Restaurant]:
        payload = self._request("GET", f"{self.base}/places/{place_id}", headers=self._headers(DETAILS_FIELD_MASK))
        return parse_place(payload)

    def photo_url(self, photo_name: str, max_width: int = 400) -> str:
        if not self.cfg.google_api_key:
            raise ProviderUnavailableError("GOOGLE_API_KEY is required")
        return f"{self.base}/{photo_name}/media?key={self.cfg.google_api_key}&maxWidthPx={max_width}"

"""Data models for the group elimination coordinator.

Restaurants, statistics and recommendations are plain dataclasses computed in
process. Records that live in the document store (sessions and participant
responses) are pydantic schemas so every read and write is validated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from utils import unique_ordered

SCHEMA_VERSION = 1


class Stage(str, Enum):
    CUISINES = "cuisines"
    VENUES = "venues"
    RESTAURANTS = "restaurants"
    COMPLETE = "complete"


STAGE_ORDER: List[Stage] = [Stage.CUISINES, Stage.VENUES, Stage.RESTAURANTS, Stage.COMPLETE]


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass
class Photo:
    photo_reference: str
    width: int = 0
    height: int = 0


@dataclass
class Restaurant:
    place_id: str
    name: str
    vicinity: str = ""
    lat: float = 0.0
    lng: float = 0.0
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    price_level: Optional[int] = None
    types: list[str] = field(default_factory=list)
    photos: list[Photo] = field(default_factory=list)
    open_now: Optional[bool] = None
    business_status: Optional[str] = None

    def slim(self) -> "StoredRestaurant":
        return StoredRestaurant(
            place_id=self.place_id,
            name=self.name,
            vicinity=self.vicinity,
            rating=self.rating,
            user_ratings_total=self.user_ratings_total,
            types=list(self.types),
        )


@dataclass
class GroupStatistics:
    session_id: str
    participant_count: int = 0
    total_eliminations: int = 0
    cuisine_elimination_counts: Dict[str, int] = field(default_factory=dict)
    venue_elimination_counts: Dict[str, int] = field(default_factory=dict)
    restaurant_elimination_counts: Dict[str, int] = field(default_factory=dict)
    updated_at: int = 0

    def type_count(self, type_name: str) -> int:
        """Group eliminations of a category tag, cuisine or venue, whichever is higher."""
        return max(
            self.cuisine_elimination_counts.get(type_name, 0),
            self.venue_elimination_counts.get(type_name, 0),
        )


@dataclass
class Recommendation:
    restaurant: Restaurant
    score: float
    elimination_count: int
    is_favorited: bool
    reasoning: str = ""


@dataclass
class RecommendationResult:
    recommendations: List[Recommendation]
    total_participants: int
    total_restaurants: int
    timestamp: int


@dataclass
class CategorizedType:
    type: str
    category: str  # "cuisine" or "venue"
    display_name: str
    count: int
    elimination_count: int


# Store records


class _Record(BaseModel):
    schema_version: int = Field(default=SCHEMA_VERSION)

    @field_validator("schema_version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value < 1 or value > SCHEMA_VERSION:
            raise ValueError(f"unsupported schema_version {value}")
        return value


class Location(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    address: Optional[str] = None
    radius: float = Field(default=5000.0, gt=0)


class StoredRestaurant(BaseModel):
    """Slim projection shared on the session record."""

    place_id: str
    name: str
    vicinity: str = ""
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    user_ratings_total: Optional[int] = None
    types: List[str] = Field(default_factory=list)

    def to_restaurant(self) -> Restaurant:
        return Restaurant(
            place_id=self.place_id,
            name=self.name,
            vicinity=self.vicinity,
            rating=self.rating,
            user_ratings_total=self.user_ratings_total,
            types=list(self.types),
        )


class Session(_Record):
    id: str
    join_code: str
    admin_id: str
    created_at: int
    expires_at: int
    location: Location
    favorited_restaurants: List[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    cached_restaurants: Optional[List[StoredRestaurant]] = None
    batch_offset: int = Field(default=0, ge=0)
    winner: Optional[StoredRestaurant] = None
    winner_locked_at: Optional[int] = None

    @field_validator("favorited_restaurants")
    @classmethod
    def _dedupe_favorites(cls, value: List[str]) -> List[str]:
        return unique_ordered(value)

    def is_live(self, now: int) -> bool:
        return self.status == SessionStatus.ACTIVE and self.expires_at >= now


class ParticipantResponse(_Record):
    id: str
    session_id: str
    user_id: str
    user_name: Optional[str] = None
    eliminated_cuisines: List[str] = Field(default_factory=list)
    eliminated_venues: List[str] = Field(default_factory=list)
    eliminated_restaurants: List[str] = Field(default_factory=list)
    current_stage: Stage = Stage.CUISINES
    created_at: int
    updated_at: int

    @field_validator("eliminated_cuisines", "eliminated_venues", "eliminated_restaurants")
    @classmethod
    def _as_set(cls, value: List[str]) -> List[str]:
        return unique_ordered(value)

    @model_validator(mode="after")
    def _timestamps_ordered(self) -> "ParticipantResponse":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")
        return self


def response_id(session_id: str, user_id: str) -> str:
    return f"{session_id}_{user_id}"


@dataclass
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str = ""

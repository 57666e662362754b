from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from models import CategorizedType, GroupStatistics, Restaurant


@dataclass(frozen=True)
class PredefinedCategory:
    type: str  # Places type tag
    display_name: str
    emoji: str
    category: str  # "cuisine" or "venue"


# Stage 1
CUISINE_CATEGORIES: List[PredefinedCategory] = [
    PredefinedCategory("american_restaurant", "American", "🍔", "cuisine"),
    PredefinedCategory("italian_restaurant", "Italian", "🍝", "cuisine"),
    PredefinedCategory("mexican_restaurant", "Mexican", "🌮", "cuisine"),
    PredefinedCategory("chinese_restaurant", "Chinese", "🥡", "cuisine"),
    PredefinedCategory("japanese_restaurant", "Japanese", "🍱", "cuisine"),
    PredefinedCategory("thai_restaurant", "Thai", "🍜", "cuisine"),
    PredefinedCategory("indian_restaurant", "Indian", "🍛", "cuisine"),
    PredefinedCategory("pizza_restaurant", "Pizza", "🍕", "cuisine"),
    PredefinedCategory("sushi_restaurant", "Sushi", "🍣", "cuisine"),
    PredefinedCategory("seafood_restaurant", "Seafood", "🦞", "cuisine"),
    PredefinedCategory("steak_house", "Steakhouse", "🥩", "cuisine"),
    PredefinedCategory("barbecue_restaurant", "BBQ", "🍖", "cuisine"),
    PredefinedCategory("mediterranean_restaurant", "Mediterranean", "🥙", "cuisine"),
    PredefinedCategory("korean_restaurant", "Korean", "🍲", "cuisine"),
    PredefinedCategory("vietnamese_restaurant", "Vietnamese", "🥢", "cuisine"),
    PredefinedCategory("french_restaurant", "French", "🥖", "cuisine"),
    PredefinedCategory("greek_restaurant", "Greek", "🫒", "cuisine"),
    PredefinedCategory("spanish_restaurant", "Spanish", "🥘", "cuisine"),
    PredefinedCategory("middle_eastern_restaurant", "Middle Eastern", "🧆", "cuisine"),
    PredefinedCategory("latin_american_restaurant", "Latin American", "🌶️", "cuisine"),
]

# Stage 2
VENUE_CATEGORIES: List[PredefinedCategory] = [
    PredefinedCategory("fast_food_restaurant", "Fast Food", "🍟", "venue"),
    PredefinedCategory("cafe", "Cafe", "☕", "venue"),
    PredefinedCategory("bar", "Bar/Pub", "🍺", "venue"),
    PredefinedCategory("bakery", "Bakery", "🥐", "venue"),
    PredefinedCategory("sandwich_shop", "Sandwich Shop", "🥪", "venue"),
    PredefinedCategory("breakfast_restaurant", "Breakfast", "🥞", "venue"),
    PredefinedCategory("brunch_restaurant", "Brunch", "🍳", "venue"),
    PredefinedCategory("ice_cream_shop", "Dessert", "🍨", "venue"),
    PredefinedCategory("fine_dining_restaurant", "Fine Dining", "🍽️", "venue"),
    PredefinedCategory("casual_dining_restaurant", "Casual Dining", "🍴", "venue"),
]

PREDEFINED_CATEGORIES: List[PredefinedCategory] = CUISINE_CATEGORIES + VENUE_CATEGORIES
_BY_TYPE: Dict[str, PredefinedCategory] = {c.type: c for c in PREDEFINED_CATEGORIES}

# Tags the places provider attaches that count as cuisines when grouping.
CUISINE_TYPES = {
    "american_restaurant", "barbecue_restaurant", "brazilian_restaurant", "chinese_restaurant",
    "french_restaurant", "greek_restaurant", "hamburger_restaurant", "indian_restaurant",
    "indonesian_restaurant", "italian_restaurant", "japanese_restaurant", "korean_restaurant",
    "lebanese_restaurant", "mediterranean_restaurant", "mexican_restaurant",
    "middle_eastern_restaurant", "pizza_restaurant", "ramen_restaurant", "seafood_restaurant",
    "spanish_restaurant", "steak_house", "sushi_restaurant", "thai_restaurant",
    "turkish_restaurant", "vegan_restaurant", "vegetarian_restaurant", "vietnamese_restaurant",
    "latin_american_restaurant",
}

# Generic tags that say nothing about what a group might want to rule out.
_IGNORED_TYPES = {"restaurant", "food", "point_of_interest", "establishment", "store"}


def get_predefined(type_name: str) -> Optional[PredefinedCategory]:
    return _BY_TYPE.get(type_name)


def display_name_for(type_name: str) -> str:
    predefined = _BY_TYPE.get(type_name)
    if predefined:
        return predefined.display_name
    words = type_name.replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words).replace(" Restaurant", "")


def emoji_for(type_name: str) -> str:
    predefined = _BY_TYPE.get(type_name)
    return predefined.emoji if predefined else "🍽️"


def all_category_types() -> List[str]:
    return [c.type for c in PREDEFINED_CATEGORIES]


def fully_eliminated_types(stats: GroupStatistics) -> List[str]:
    """Cuisine and venue tags every participant eliminated."""
    p = stats.participant_count
    if p == 0:
        return []
    cuisines = [t for t, n in stats.cuisine_elimination_counts.items() if n == p]
    venues = [t for t, n in stats.venue_elimination_counts.items() if n == p]
    return list(dict.fromkeys(cuisines + venues))


def search_types(stats: Optional[GroupStatistics]) -> List[str]:
    """Predefined categories worth querying for; all of them when nothing survives."""
    everything = all_category_types()
    if stats is None:
        return everything
    dead = set(fully_eliminated_types(stats))
    remaining = [t for t in everything if t not in dead]
    return remaining or everything


def categorize_types(
    restaurants: Iterable[Restaurant], stats: Optional[GroupStatistics] = None
) -> Dict[str, List[CategorizedType]]:
    restaurants = list(restaurants)
    counts: Dict[str, int] = {}
    for r in restaurants:
        for t in dict.fromkeys(r.types):
            if t in _IGNORED_TYPES:
                continue
            counts[t] = counts.get(t, 0) + 1

    cuisine: list[CategorizedType] = []
    venue: list[CategorizedType] = []
    for t in sorted(counts, key=display_name_for):
        is_cuisine = t in CUISINE_TYPES
        item = CategorizedType(
            type=t,
            category="cuisine" if is_cuisine else "venue",
            display_name=display_name_for(t),
            count=counts[t],
            elimination_count=stats.type_count(t) if stats else 0,
        )
        (cuisine if is_cuisine else venue).append(item)
    return {"cuisine_types": cuisine, "venue_types": venue}

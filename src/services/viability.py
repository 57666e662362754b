from __future__ import annotations

from typing import List, Sequence

from models import GroupStatistics, Restaurant


def is_fully_eliminated(restaurant: Restaurant, stats: GroupStatistics) -> bool:
    p = stats.participant_count
    if p == 0:
        return False
    if stats.restaurant_elimination_counts.get(restaurant.place_id, 0) == p:
        return True
    if not restaurant.types:
        return False
    return all(stats.type_count(t) == p for t in restaurant.types)


def filter_viable(restaurants: Sequence[Restaurant], stats: GroupStatistics) -> List[Restaurant]:
    """Drop restaurants the whole group ruled out, directly or through every one of their tags."""
    if stats.participant_count == 0:
        return list(restaurants)
    return [r for r in restaurants if not is_fully_eliminated(r, stats)]

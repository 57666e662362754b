from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from models import GroupStatistics, Recommendation, RecommendationResult, Restaurant
from utils import now_ms

REASON_SEPARATOR = " • "


@dataclass
class RankingOptions:
    max_recommendations: int = 3
    favorite_boost: float = 0.5  # fraction of the elimination penalty forgiven for favorites
    quality_weight: float = 0.1


def _rate(count: int, participants: int) -> float:
    return count / participants if participants > 0 else 0.0


def quality_score(rating: Optional[float], rating_count: Optional[int]) -> float:
    """Rating scaled to 0..1, discounted when few people rated it.

    Confidence grows with log10 of the rating count: 1/3 at 9 ratings, 2/3
    at 99, saturating at 1.0 from 999 on.
    """
    normalized = (rating or 0.0) / 5.0
    confidence = min(1.0, math.log10((rating_count or 0) + 1) / 3.0)
    return normalized * (0.5 + 0.5 * confidence)


def elimination_penalty(restaurant: Restaurant, stats: GroupStatistics) -> float:
    p = stats.participant_count
    type_rates = [_rate(stats.type_count(t), p) for t in restaurant.types]
    avg_type_rate = sum(type_rates) / len(type_rates) if type_rates else 0.0
    direct_rate = _rate(stats.restaurant_elimination_counts.get(restaurant.place_id, 0), p)
    return max(avg_type_rate, direct_rate)


def elimination_count(restaurant: Restaurant, stats: GroupStatistics) -> int:
    direct = stats.restaurant_elimination_counts.get(restaurant.place_id, 0)
    if direct:
        return direct
    return max((stats.type_count(t) for t in restaurant.types), default=0)


def build_reasoning(count: int, participants: int, is_favorited: bool, rating: Optional[float]) -> str:
    reasons: list[str] = []
    if count == 0:
        reasons.append("No one eliminated this")
    elif count == 1:
        reasons.append("Only 1 person eliminated this")
    else:
        pct = int(math.floor(_rate(count, participants) * 100 + 0.5))
        reasons.append(f"{count} people ({pct}%) eliminated this")

    if is_favorited:
        reasons.append("Admin favorite")

    if rating is not None and rating >= 4.0:
        reasons.append(f"{rating:g}★ rating")

    return REASON_SEPARATOR.join(reasons)


def score_restaurant(
    restaurant: Restaurant,
    stats: GroupStatistics,
    *,
    favorited: bool,
    options: RankingOptions,
) -> Recommendation:
    penalty = elimination_penalty(restaurant, stats)
    if favorited:
        penalty *= 1.0 - options.favorite_boost
    quality = quality_score(restaurant.rating, restaurant.user_ratings_total)
    count = elimination_count(restaurant, stats)
    return Recommendation(
        restaurant=restaurant,
        score=1.0 - penalty + quality * options.quality_weight,
        elimination_count=count,
        is_favorited=favorited,
        reasoning=build_reasoning(count, stats.participant_count, favorited, restaurant.rating),
    )


def rank_recommendations(
    restaurants: Sequence[Restaurant],
    favorited_ids: Iterable[str],
    stats: GroupStatistics,
    options: Optional[RankingOptions] = None,
) -> RecommendationResult:
    opts = options or RankingOptions()
    favorites = set(favorited_ids)

    scored: List[Recommendation] = [
        score_restaurant(r, stats, favorited=r.place_id in favorites, options=opts) for r in restaurants
    ]
    # sorted() is stable, so equal scores keep input order
    ranked = sorted(scored, key=lambda rec: rec.score, reverse=True)

    return RecommendationResult(
        recommendations=ranked[: max(0, opts.max_recommendations)],
        total_participants=stats.participant_count,
        total_restaurants=len(restaurants),
        timestamp=now_ms(),
    )

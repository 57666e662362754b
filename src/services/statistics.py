from __future__ import annotations

from typing import Dict, Iterable, Optional, Set

from models import GroupStatistics, ParticipantResponse
from utils import now_ms


def _tally(counts: Dict[str, int], keys: Iterable[str]) -> int:
    added = 0
    for key in set(keys):
        counts[key] = counts.get(key, 0) + 1
        added += 1
    return added


def compute_statistics(
    session_id: str,
    responses: Iterable[ParticipantResponse],
    *,
    timestamp: Optional[int] = None,
) -> GroupStatistics:
    """Fold every participant's elimination sets into group-wide counts.

    Each count is the number of distinct participants holding the key, so the
    result depends only on the current sets: folding order and repeated runs
    never change it. Only ``updated_at`` reflects when it was computed.
    """
    cuisine: Dict[str, int] = {}
    venue: Dict[str, int] = {}
    restaurant: Dict[str, int] = {}
    total = 0
    participants: Set[str] = set()

    for resp in responses:
        if resp.user_id in participants:
            continue
        participants.add(resp.user_id)
        total += _tally(cuisine, resp.eliminated_cuisines)
        total += _tally(venue, resp.eliminated_venues)
        total += _tally(restaurant, resp.eliminated_restaurants)

    return GroupStatistics(
        session_id=session_id,
        participant_count=len(participants),
        total_eliminations=total,
        cuisine_elimination_counts=dict(sorted(cuisine.items())),
        venue_elimination_counts=dict(sorted(venue.items())),
        restaurant_elimination_counts=dict(sorted(restaurant.items())),
        updated_at=timestamp if timestamp is not None else now_ms(),
    )


def eliminated_restaurant_union(responses: Iterable[ParticipantResponse]) -> Set[str]:
    """Restaurant ids eliminated by at least one participant."""
    union: Set[str] = set()
    for resp in responses:
        union.update(resp.eliminated_restaurants)
    return union

from __future__ import annotations

import random
from typing import AbstractSet, Optional, Sequence

from loguru import logger

from models import Session, Stage, StoredRestaurant
from services.batches import current_page, survivors
from services.errors import ConflictError, NoSurvivorsError, PermissionDeniedError
from services.responses import ResponseRepository
from services.sessions import SessionRepository, ensure_live
from services.stages import has_reached
from services.statistics import eliminated_restaurant_union
from utils import now_ms


def pick_winner(
    page: Sequence[StoredRestaurant], eliminated: AbstractSet[str], rng: random.Random
) -> StoredRestaurant:
    """Uniform random choice among the page's survivors."""
    remaining = survivors(page, eliminated)
    if not remaining:
        raise NoSurvivorsError("You eliminated everything! Go back and remove some eliminations.")
    return rng.choice(remaining)


class WinnerLock:
    def __init__(
        self,
        sessions: SessionRepository,
        responses: ResponseRepository,
        batch_size: int,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.sessions = sessions
        self.responses = responses
        self.batch_size = batch_size
        self.rng = rng or random.SystemRandom()

    def lock(self, session_id: str, actor_id: str, *, now: Optional[int] = None) -> Session:
        """Freeze one winner for the whole group.

        Only the session authority may call this, and only from the restaurant
        stage on. A winner that is already frozen is returned untouched.
        """
        now = now if now is not None else now_ms()
        session = self.sessions.require(session_id, now=now)
        if session.admin_id != actor_id:
            raise PermissionDeniedError("only the session admin can pick the winner")
        if session.winner is not None:
            return session
        ensure_live(session)

        actor = self.responses.require(session_id, actor_id)
        if not has_reached(actor.current_stage, Stage.RESTAURANTS):
            raise ConflictError("finish eliminating cuisines and venues before picking a winner")
        if session.cached_restaurants is None:
            raise ConflictError("restaurants have not been loaded for this session")

        page = current_page(session.cached_restaurants, session.batch_offset, self.batch_size)
        eliminated = eliminated_restaurant_union(self.responses.list_for_session(session_id))
        choice = pick_winner(page, eliminated, self.rng)

        session, written = self.sessions.lock_winner(session_id, choice, now=now)
        if written:
            logger.info("session {} winner locked: {} ({})", session_id, choice.name, choice.place_id)
        else:
            logger.info("session {} winner already locked by a concurrent call", session_id)
        return session

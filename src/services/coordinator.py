from __future__ import annotations

import asyncio
import concurrent.futures
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from loguru import logger

from config import Configuration
from models import (
    GroupStatistics,
    Location,
    ParticipantResponse,
    RecommendationResult,
    Restaurant,
    Session,
    SessionStatus,
    Stage,
)
from services import batches
from services.categories import categorize_types, search_types
from services.errors import (
    ConflictError,
    InvalidInputError,
    NoSurvivorsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderUnavailableError,
)
from services.geocoding import GeocodingClient
from services.join_code import JoinCodeAllocator
from services.places import PlacesClient
from services.ranking import RankingOptions, rank_recommendations
from services.report import build_report
from services.responses import EliminationKind, ResponseRepository
from services.sessions import SessionRepository
from services.stages import advance, group_ready_for_restaurants, has_reached, jump, waiting_on
from services.statistics import compute_statistics, eliminated_restaurant_union
from services.store import DocumentStore
from services.viability import filter_viable
from services.winner import WinnerLock
from utils import now_ms


@dataclass
class LoadResult:
    ready: bool
    restaurants: List[Restaurant] = field(default_factory=list)
    waiting_on: List[str] = field(default_factory=list)


@dataclass
class GroupView:
    """Everything derived from one snapshot of a session and its responses."""

    session: Session
    responses: List[ParticipantResponse]
    statistics: GroupStatistics
    viable: List[Restaurant]
    recommendations: RecommendationResult
    batch: batches.BatchView
    ready: bool = False  # whether the restaurant fetch may run
    waiting_on: List[str] = field(default_factory=list)


class GroupCoordinator:
    """Entry point for every read and write a participant can make.

    Derived state (statistics, viability, scores, the active page) is always
    recomputed from the current records and never cached, so it converges no
    matter in which order participants' writes land.
    """

    def __init__(
        self,
        cfg: Configuration,
        store: Optional[DocumentStore] = None,
        *,
        places: Optional[PlacesClient] = None,
        geocoder: Optional[GeocodingClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.cfg = cfg
        self.store = store or DocumentStore()
        self.rng = rng or random.SystemRandom()
        self.sessions = SessionRepository(self.store, cfg, JoinCodeAllocator(self.store, cfg, self.rng))
        self.responses = ResponseRepository(self.store)
        self.places = places or PlacesClient(cfg)
        self.geocoder = geocoder or GeocodingClient(cfg)
        self.winner_lock = WinnerLock(self.sessions, self.responses, cfg.batch_size, self.rng)
        self._batch_watches: Dict[str, Callable[[], None]] = {}
        # re-entrant: the first snapshot is delivered while subscribing
        self._watch_lock = threading.RLock()
        self._fetches: Dict[str, concurrent.futures.Future] = {}
        self._fetch_lock = threading.Lock()

    # Sessions

    def create_session(
        self,
        admin_id: str,
        *,
        location: Optional[Location] = None,
        zip_code: Optional[str] = None,
        radius_m: Optional[float] = None,
        admin_name: Optional[str] = None,
    ) -> Session:
        if location is None:
            if not zip_code:
                raise InvalidInputError("either a location or a zip code is required")
            geo = self.geocoder.geocode_zip(zip_code)
            location = Location(
                latitude=geo.latitude,
                longitude=geo.longitude,
                address=geo.formatted_address or None,
                radius=radius_m or self.cfg.default_radius_m,
            )
        session = self.sessions.create(admin_id, location)
        self.responses.ensure(session.id, admin_id, user_name=admin_name)
        self._watch_batches(session.id)
        return session

    def join(self, join_code: str, user_id: str, *, user_name: Optional[str] = None) -> ParticipantResponse:
        session = self.sessions.get_by_join_code(join_code)
        if session is None:
            raise NotFoundError("session not found or expired")
        return self.join_session(session.id, user_id, user_name=user_name)

    def join_session(self, session_id: str, user_id: str, *, user_name: Optional[str] = None) -> ParticipantResponse:
        self._require_live(session_id)
        resp = self.responses.ensure(session_id, user_id, user_name=user_name)
        self._watch_batches(session_id)
        return resp

    def get_session(self, session_id: str) -> Session:
        return self.sessions.require(session_id)

    def get_response(self, session_id: str, user_id: str) -> ParticipantResponse:
        return self.responses.require(session_id, user_id)

    def list_responses(self, session_id: str) -> List[ParticipantResponse]:
        self.sessions.require(session_id)
        return self.responses.list_for_session(session_id)

    def _require_live(self, session_id: str) -> Session:
        """The session, if it still accepts writes; closed sessions also lose their page watch."""
        try:
            return self.sessions.require_live(session_id)
        except (NotFoundError, ConflictError):
            self._unwatch_batches(session_id)
            raise

    # Eliminations

    def toggle_elimination(self, session_id: str, user_id: str, kind: EliminationKind, key: str) -> ParticipantResponse:
        self._require_live(session_id)
        resp = self.responses.toggle(session_id, user_id, kind, key)
        self.sync_batch(session_id)
        return resp

    def set_elimination(
        self, session_id: str, user_id: str, kind: EliminationKind, key: str, eliminated: bool
    ) -> ParticipantResponse:
        self._require_live(session_id)
        resp = self.responses.set_elimination(session_id, user_id, kind, key, eliminated)
        self.sync_batch(session_id)
        return resp

    # Stages

    def advance_stage(self, session_id: str, user_id: str) -> ParticipantResponse:
        self._require_live(session_id)
        now = now_ms()
        return self.responses.mutate(session_id, user_id, lambda r: advance(r, now))

    def jump_stage(self, session_id: str, user_id: str, target: Stage, *, actor_id: Optional[str] = None) -> ParticipantResponse:
        self._require_live(session_id)
        now = now_ms()
        actor = actor_id if actor_id is not None else user_id
        return self.responses.mutate(session_id, user_id, lambda r: jump(r, target, actor, now))

    # Favorites

    def set_favorite(self, session_id: str, actor_id: str, place_id: str, favorited: bool = True) -> Session:
        session = self._require_live(session_id)
        if session.admin_id != actor_id:
            raise PermissionDeniedError("only the session admin can change favorites")
        if not place_id:
            raise InvalidInputError("place_id is required")
        if favorited:
            return self.sessions.add_favorite(session_id, place_id)
        return self.sessions.remove_favorite(session_id, place_id)

    # Derived reads

    def statistics(self, session_id: str) -> GroupStatistics:
        self.sessions.require(session_id)
        return compute_statistics(session_id, self.responses.list_for_session(session_id))

    def pool(self, session_id: str) -> List[Restaurant]:
        session = self.sessions.require(session_id)
        return [r.to_restaurant() for r in session.cached_restaurants or []]

    def viable_restaurants(self, session_id: str) -> List[Restaurant]:
        return self.snapshot(session_id).viable

    def recommendations(self, session_id: str, options: Optional[RankingOptions] = None) -> RecommendationResult:
        view = self.snapshot(session_id, options)
        return view.recommendations

    def categories(self, session_id: str):
        return categorize_types(self.pool(session_id), self.statistics(session_id))

    def current_batch(self, session_id: str) -> batches.BatchView:
        self.sync_batch(session_id)
        return self.snapshot(session_id).batch

    def _ranking_options(self) -> RankingOptions:
        return RankingOptions(
            max_recommendations=self.cfg.max_recommendations,
            favorite_boost=self.cfg.favorite_boost,
            quality_weight=self.cfg.quality_weight,
        )

    def derive(
        self,
        session: Session,
        responses: List[ParticipantResponse],
        options: Optional[RankingOptions] = None,
    ) -> GroupView:
        stats = compute_statistics(session.id, responses)
        pool = [r.to_restaurant() for r in session.cached_restaurants or []]
        viable = filter_viable(pool, stats)
        result = rank_recommendations(viable, session.favorited_restaurants, stats, options or self._ranking_options())
        batch = batches.view(pool, session.batch_offset, self.cfg.batch_size)
        return GroupView(
            session=session,
            responses=responses,
            statistics=stats,
            viable=viable,
            recommendations=result,
            batch=batch,
            ready=group_ready_for_restaurants(responses),
            waiting_on=waiting_on(responses),
        )

    def snapshot(self, session_id: str, options: Optional[RankingOptions] = None) -> GroupView:
        session = self.sessions.require(session_id)
        return self.derive(session, self.responses.list_for_session(session_id), options)

    def watch(self, session_id: str, listener: Callable[[GroupView], None]) -> Callable[[], None]:
        """Push a freshly derived GroupView whenever the session or any response changes."""
        self.sessions.require(session_id)

        def on_change(_snapshot) -> None:
            session = self.sessions.get(session_id)
            if session is None:
                return
            listener(self.derive(session, self.responses.list_for_session(session_id)))

        stop_session = self.sessions.subscribe(session_id, on_change)
        stop_responses = self.responses.subscribe(session_id, on_change)

        def unsubscribe() -> None:
            stop_session()
            stop_responses()

        return unsubscribe

    # Restaurant stage

    async def load_restaurants(self, session_id: str, user_id: str) -> LoadResult:
        """Fetch the shared pool once per session, after the group is ready.

        The caller must be at the restaurant stage. Solo sessions fetch
        straight away; otherwise every participant must have got there first,
        and the caller is told who is still behind. A fetch that yields no
        usable restaurants is not cached, so a later call tries again.
        """
        session = self.sessions.require(session_id)
        caller = self.responses.require(session_id, user_id)
        if not has_reached(caller.current_stage, Stage.RESTAURANTS):
            raise ConflictError("finish eliminating cuisines and venues before loading restaurants")
        if session.cached_restaurants is not None:
            return LoadResult(ready=True, restaurants=self.pool(session_id))
        self._require_live(session_id)

        responses = self.responses.list_for_session(session_id)
        if not group_ready_for_restaurants(responses):
            behind = waiting_on(responses)
            logger.info("session {} waiting on {} participant(s) before fetching", session_id, len(behind))
            return LoadResult(ready=False, waiting_on=behind)

        await self._fetch_once(session_id)
        return LoadResult(ready=True, restaurants=self.pool(session_id))

    async def _fetch_once(self, session_id: str) -> None:
        """Run the provider fetch for a session, joining one already in flight."""
        with self._fetch_lock:
            pending = self._fetches.get(session_id)
            owner = pending is None
            if owner:
                pending = concurrent.futures.Future()
                self._fetches[session_id] = pending
        if not owner:
            logger.debug("session {} joining in-flight restaurant fetch", session_id)
            await asyncio.wrap_future(pending)
            return

        try:
            await self._fetch_pool(session_id)
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        else:
            pending.set_result(None)
        finally:
            with self._fetch_lock:
                self._fetches.pop(session_id, None)

    async def _fetch_pool(self, session_id: str) -> None:
        session = self.sessions.require(session_id)
        if session.cached_restaurants is not None:
            return
        stats = compute_statistics(session_id, self.responses.list_for_session(session_id))
        types = search_types(stats)
        loc = session.location
        fetched = await self.places.search_nearby(loc.latitude, loc.longitude, loc.radius, types)
        if not fetched:
            raise ProviderUnavailableError("no restaurants came back from the places provider, try again")
        viable = filter_viable(fetched, stats)
        logger.info("session {}: {} fetched, {} viable after group filter", session_id, len(fetched), len(viable))
        if not viable:
            raise NoSurvivorsError("You eliminated everything! Go back and remove some eliminations.")

        _, written = self.sessions.cache_restaurants(session_id, viable)
        if not written:
            logger.info("session {} pool was cached by another participant first", session_id)
        self.sync_batch(session_id)

    def sync_batch(self, session_id: str) -> int:
        """Auto-advance the active page past pages the group fully eliminated."""
        session = self.sessions.get(session_id)
        if session is None or not session.cached_restaurants:
            return session.batch_offset if session else 0
        eliminated = eliminated_restaurant_union(self.responses.list_for_session(session_id))
        offset = batches.next_offset(session.cached_restaurants, session.batch_offset, self.cfg.batch_size, eliminated)
        if offset != session.batch_offset:
            logger.info("session {} page exhausted, advancing offset {} -> {}", session_id, session.batch_offset, offset)
            session = self.sessions.advance_batch(session_id, offset)
        return session.batch_offset

    def _watch_batches(self, session_id: str) -> None:
        with self._watch_lock:
            if session_id in self._batch_watches:
                return
            self._batch_watches[session_id] = self.responses.subscribe(
                session_id, lambda _responses: self._on_responses_changed(session_id)
            )

    def _on_responses_changed(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            self._unwatch_batches(session_id)
            return
        self.sync_batch(session_id)

    def _unwatch_batches(self, session_id: str) -> None:
        with self._watch_lock:
            stop = self._batch_watches.pop(session_id, None)
        if stop is not None:
            stop()
            logger.debug("session {} closed, page watch dropped", session_id)

    def lock_winner(self, session_id: str, actor_id: str) -> Session:
        self.sync_batch(session_id)
        session = self.winner_lock.lock(session_id, actor_id)
        if session.status != SessionStatus.ACTIVE:
            self._unwatch_batches(session_id)
        return session

    def report(self, session_id: str) -> str:
        self.sync_batch(session_id)
        view = self.snapshot(session_id)
        eliminated = eliminated_restaurant_union(view.responses)
        return build_report(
            view.session,
            view.statistics.participant_count,
            view.batch.items,
            batches.survivors(view.batch.items, eliminated),
            view.recommendations.recommendations,
        )

    def close(self) -> None:
        with self._watch_lock:
            stops = list(self._batch_watches.values())
            self._batch_watches.clear()
        for stop in stops:
            stop()

from __future__ import annotations

import asyncio
import random
from typing import List, Sequence

import pytest

from config import Configuration
from models import GeocodeResult, Location, Restaurant, SessionStatus, Stage
from services.coordinator import GroupCoordinator
from services.errors import (
    ConflictError,
    InvalidInputError,
    NoSurvivorsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderUnavailableError,
)
from services.responses import EliminationKind


class FakePlaces:
    def __init__(self, restaurants: List[Restaurant]) -> None:
        self.restaurants = restaurants
        self.calls: List[Sequence[str]] = []

    async def search_nearby(self, latitude, longitude, radius_m, types):
        self.calls.append(list(types))
        return list(self.restaurants)


class FakeGeocoder:
    def __init__(self) -> None:
        self.zips: List[str] = []

    def geocode_zip(self, zip_code):
        self.zips.append(zip_code)
        return GeocodeResult(latitude=47.61, longitude=-122.33, formatted_address="Seattle, WA")


def _pool(n: int) -> List[Restaurant]:
    return [
        Restaurant(place_id=f"p{i}", name=f"R{i}", rating=4.0, user_ratings_total=50, types=["thai_restaurant"])
        for i in range(n)
    ]


def _coordinator(pool_size: int = 10):
    places = FakePlaces(_pool(pool_size))
    coord = GroupCoordinator(Configuration(), places=places, geocoder=FakeGeocoder(), rng=random.Random(5))
    return coord, places


def _at_restaurants(coord: GroupCoordinator, sid: str, *users: str) -> None:
    for user in users:
        coord.jump_stage(sid, user, Stage.RESTAURANTS)


def test_create_with_zip_geocodes_and_adds_admin() -> None:
    coord, _ = _coordinator()
    session = coord.create_session("admin", zip_code="98101", radius_m=2000)
    assert session.location.address == "Seattle, WA"
    assert session.location.radius == 2000
    assert [r.user_id for r in coord.list_responses(session.id)] == ["admin"]
    assert coord.geocoder.zips == ["98101"]


def test_create_needs_a_location() -> None:
    coord, _ = _coordinator()
    with pytest.raises(InvalidInputError):
        coord.create_session("admin")


def test_join_by_code_and_unknown_code() -> None:
    coord, _ = _coordinator()
    session = coord.create_session("admin", location=Location(latitude=1, longitude=2))
    resp = coord.join(session.join_code.lower(), "guest", user_name="Guest")
    assert resp.session_id == session.id
    with pytest.raises(NotFoundError):
        coord.join("ZZZZZZ", "guest")


def test_load_waits_for_the_group_then_fetches_once() -> None:
    coord, places = _coordinator()
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    _at_restaurants(coord, sid, "admin")
    coord.advance_stage(sid, "guest")

    waiting = asyncio.run(coord.load_restaurants(sid, "admin"))
    assert not waiting.ready
    assert waiting.waiting_on == ["guest"]
    assert places.calls == []

    coord.advance_stage(sid, "guest")
    loaded = asyncio.run(coord.load_restaurants(sid, "guest"))
    assert loaded.ready
    assert len(loaded.restaurants) == 10

    again = asyncio.run(coord.load_restaurants(sid, "admin"))
    assert [r.place_id for r in again.restaurants] == [r.place_id for r in loaded.restaurants]
    assert len(places.calls) == 1


def test_fetch_skips_fully_eliminated_categories_and_filters_pool() -> None:
    coord, places = _coordinator()
    places.restaurants = _pool(2) + [Restaurant(place_id="c1", name="Cafe", types=["cafe"])]
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.toggle_elimination(sid, "admin", EliminationKind.CUISINE, "thai_restaurant")
    _at_restaurants(coord, sid, "admin")

    result = asyncio.run(coord.load_restaurants(sid, "admin"))
    assert "thai_restaurant" not in places.calls[0]
    assert [r.place_id for r in result.restaurants] == ["c1"]


def test_page_advances_when_group_exhausts_it() -> None:
    coord, _ = _coordinator(pool_size=10)
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    _at_restaurants(coord, sid, "admin", "guest")
    asyncio.run(coord.load_restaurants(sid, "admin"))

    first_page = [r.place_id for r in coord.current_batch(sid).items]
    assert len(first_page) == 8
    for i, pid in enumerate(first_page):
        user = "admin" if i % 2 else "guest"
        coord.toggle_elimination(sid, user, EliminationKind.RESTAURANT, pid)

    assert coord.get_session(sid).batch_offset == 8
    assert len(coord.current_batch(sid).items) == 2


def test_watch_pushes_derived_views() -> None:
    coord, _ = _coordinator()
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    views = []
    stop = coord.watch(sid, views.append)
    coord.join_session(sid, "guest")
    coord.toggle_elimination(sid, "guest", EliminationKind.VENUE, "bar")
    stop()
    coord.toggle_elimination(sid, "guest", EliminationKind.VENUE, "cafe")

    latest = views[-1]
    assert latest.statistics.participant_count == 2
    assert latest.statistics.venue_elimination_counts == {"bar": 1}


def test_favorites_are_admin_only_and_boost_ranking() -> None:
    coord, _ = _coordinator(pool_size=3)
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    _at_restaurants(coord, sid, "admin", "guest")
    asyncio.run(coord.load_restaurants(sid, "admin"))
    with pytest.raises(PermissionDeniedError):
        coord.set_favorite(sid, "guest", "p2")

    coord.set_favorite(sid, "admin", "p2")
    for pid in ("p0", "p1", "p2"):
        coord.toggle_elimination(sid, "guest", EliminationKind.RESTAURANT, pid)
    top = coord.recommendations(sid).recommendations[0]
    assert top.restaurant.place_id == "p2"
    assert top.is_favorited


def test_stage_jump_for_someone_else_is_denied() -> None:
    coord, _ = _coordinator()
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    with pytest.raises(PermissionDeniedError):
        coord.jump_stage(sid, "guest", Stage.COMPLETE, actor_id="admin")


def test_lock_winner_and_report() -> None:
    coord, _ = _coordinator(pool_size=4)
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    _at_restaurants(coord, sid, "admin")
    asyncio.run(coord.load_restaurants(sid, "admin"))
    for pid in ("p0", "p1", "p2"):
        coord.toggle_elimination(sid, "admin", EliminationKind.RESTAURANT, pid)

    session = coord.lock_winner(sid, "admin")
    assert session.winner.place_id == "p3"
    assert session.status == SessionStatus.COMPLETED

    md = coord.report(sid)
    assert "### Winner" in md
    assert "R3" in md
    coord.close()


class FlakyPlaces(FakePlaces):
    """Comes back empty on the first search, then recovers."""

    async def search_nearby(self, latitude, longitude, radius_m, types):
        self.calls.append(list(types))
        if len(self.calls) == 1:
            return []
        return list(self.restaurants)


class SlowPlaces(FakePlaces):
    async def search_nearby(self, latitude, longitude, radius_m, types):
        self.calls.append(list(types))
        await asyncio.sleep(0.05)
        return list(self.restaurants)


def _expire(coord: GroupCoordinator, sid: str) -> None:
    coord.store.update("sessions", sid, lambda doc: {**doc, "expires_at": 1})


def test_empty_fetch_is_not_cached_and_retried() -> None:
    places = FlakyPlaces(_pool(1))
    coord = GroupCoordinator(Configuration(), places=places, rng=random.Random(5))
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    _at_restaurants(coord, sid, "admin")

    with pytest.raises(ProviderUnavailableError):
        asyncio.run(coord.load_restaurants(sid, "admin"))
    assert coord.get_session(sid).cached_restaurants is None

    loaded = asyncio.run(coord.load_restaurants(sid, "admin"))
    assert loaded.ready
    assert [r.place_id for r in loaded.restaurants] == ["p0"]
    assert len(places.calls) == 2


def test_fetch_filtered_to_nothing_is_not_cached() -> None:
    coord, places = _coordinator(pool_size=2)
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.toggle_elimination(sid, "admin", EliminationKind.CUISINE, "thai_restaurant")
    _at_restaurants(coord, sid, "admin")

    with pytest.raises(NoSurvivorsError):
        asyncio.run(coord.load_restaurants(sid, "admin"))
    assert coord.get_session(sid).cached_restaurants is None

    coord.toggle_elimination(sid, "admin", EliminationKind.CUISINE, "thai_restaurant")
    assert len(asyncio.run(coord.load_restaurants(sid, "admin")).restaurants) == 2
    assert len(places.calls) == 2


def test_load_requires_restaurant_stage() -> None:
    coord, places = _coordinator()
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    with pytest.raises(ConflictError):
        asyncio.run(coord.load_restaurants(sid, "admin"))
    assert places.calls == []
    assert coord.get_session(sid).cached_restaurants is None


def test_concurrent_loads_share_one_fetch() -> None:
    places = SlowPlaces(_pool(10))
    coord = GroupCoordinator(Configuration(), places=places, rng=random.Random(5))
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    _at_restaurants(coord, sid, "admin", "guest")

    async def load_both():
        return await asyncio.gather(coord.load_restaurants(sid, "admin"), coord.load_restaurants(sid, "guest"))

    first, second = asyncio.run(load_both())
    assert len(places.calls) == 1
    assert [r.place_id for r in first.restaurants] == [r.place_id for r in second.restaurants]
    assert len(first.restaurants) == 10


def test_writes_to_expired_session_are_rejected() -> None:
    coord, _ = _coordinator()
    session = coord.create_session("admin", location=Location(latitude=1, longitude=2))
    sid = session.id
    assert sid in coord._batch_watches  # type: ignore[attr-defined]
    _expire(coord, sid)

    with pytest.raises(NotFoundError):
        coord.toggle_elimination(sid, "admin", EliminationKind.CUISINE, "thai_restaurant")
    assert coord.get_session(sid).status == SessionStatus.EXPIRED
    assert coord.get_response(sid, "admin").eliminated_cuisines == []
    assert sid not in coord._batch_watches  # type: ignore[attr-defined]

    with pytest.raises(NotFoundError):
        coord.join_session(sid, "late")
    with pytest.raises(NotFoundError):
        coord.join(session.join_code, "late")
    with pytest.raises(NotFoundError):
        coord.advance_stage(sid, "admin")
    with pytest.raises(NotFoundError):
        coord.set_favorite(sid, "admin", "p1")
    with pytest.raises(NotFoundError):
        coord.lock_winner(sid, "admin")


def test_completed_session_is_frozen() -> None:
    coord, _ = _coordinator(pool_size=3)
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    _at_restaurants(coord, sid, "admin")
    asyncio.run(coord.load_restaurants(sid, "admin"))
    locked = coord.lock_winner(sid, "admin")
    assert sid not in coord._batch_watches  # type: ignore[attr-defined]

    with pytest.raises(ConflictError):
        coord.toggle_elimination(sid, "admin", EliminationKind.RESTAURANT, "p0")
    with pytest.raises(ConflictError):
        coord.jump_stage(sid, "admin", Stage.CUISINES)
    assert coord.lock_winner(sid, "admin").winner == locked.winner
    assert len(asyncio.run(coord.load_restaurants(sid, "admin")).restaurants) == 3


def test_watch_reports_when_group_becomes_ready() -> None:
    coord, _ = _coordinator()
    sid = coord.create_session("admin", location=Location(latitude=1, longitude=2)).id
    coord.join_session(sid, "guest")
    _at_restaurants(coord, sid, "admin")

    views = []
    stop = coord.watch(sid, views.append)
    assert not views[-1].ready
    assert views[-1].waiting_on == ["guest"]

    coord.jump_stage(sid, "guest", Stage.RESTAURANTS)
    assert views[-1].ready
    assert views[-1].waiting_on == []
    stop()

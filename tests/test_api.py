from __future__ import annotations

import random

import pytest
from fastapi.testclient import TestClient

from config import Configuration
from main import create_app
from models import Restaurant
from services.coordinator import GroupCoordinator


class FakePlaces:
    async def search_nearby(self, latitude, longitude, radius_m, types):
        return [
            Restaurant(place_id=f"p{i}", name=f"R{i}", rating=4.5, user_ratings_total=120, types=["pizza_restaurant"])
            for i in range(5)
        ]


@pytest.fixture
def client() -> TestClient:
    coord = GroupCoordinator(Configuration(), places=FakePlaces(), rng=random.Random(11))
    return TestClient(create_app(coord))


def _create(client: TestClient) -> dict:
    resp = client.post("/sessions", json={"admin_id": "admin", "latitude": 40.7, "longitude": -74.0})
    assert resp.status_code == 200
    return resp.json()


def test_healthz(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"status": "ok"}


def test_create_join_and_eliminate(client: TestClient) -> None:
    session = _create(client)
    sid = session["id"]

    joined = client.post("/sessions/join", json={"join_code": session["join_code"], "user_id": "guest"})
    assert joined.status_code == 200
    assert joined.json()["display_code"] == f"{session['join_code'][:3]}-{session['join_code'][3:]}"

    resp = client.post(
        f"/sessions/{sid}/eliminations", json={"user_id": "guest", "kind": "cuisine", "key": "thai_restaurant"}
    )
    assert resp.status_code == 200
    assert resp.json()["eliminated_cuisines"] == ["thai_restaurant"]

    stats = client.get(f"/sessions/{sid}/statistics").json()
    assert stats["participant_count"] == 2
    assert stats["cuisine_elimination_counts"] == {"thai_restaurant": 1}


def test_restaurant_flow(client: TestClient) -> None:
    sid = _create(client)["id"]
    stage = client.post(f"/sessions/{sid}/stage", json={"user_id": "admin", "action": "jump", "target": "restaurants"})
    assert stage.json()["current_stage"] == "restaurants"

    loaded = client.post(f"/sessions/{sid}/restaurants/load", json={"user_id": "admin"}).json()
    assert loaded["ready"]
    assert len(loaded["restaurants"]) == 5

    recs = client.get(f"/sessions/{sid}/recommendations", params={"limit": 2}).json()
    assert len(recs["recommendations"]) == 2
    assert recs["recommendations"][0]["reasoning"].startswith("No one eliminated this")

    batch = client.get(f"/sessions/{sid}/batch").json()
    assert batch["page_count"] == 1

    winner = client.post(f"/sessions/{sid}/winner", json={"user_id": "admin"})
    assert winner.status_code == 200
    assert winner.json()["status"] == "completed"

    report = client.get(f"/sessions/{sid}/report")
    assert "### Winner" in report.text


def test_error_mapping(client: TestClient) -> None:
    assert client.get("/sessions/missing").status_code == 404
    assert client.post("/sessions/join", json={"join_code": "0O1I", "user_id": "x"}).status_code == 400

    sid = _create(client)["id"]
    client.post("/sessions/join", json={"join_code": client.get(f"/sessions/{sid}").json()["join_code"], "user_id": "guest"})
    denied = client.post(f"/sessions/{sid}/favorites", json={"actor_id": "guest", "place_id": "p1"})
    assert denied.status_code == 403

    not_ready = client.post(f"/sessions/{sid}/winner", json={"user_id": "admin"})
    assert not_ready.status_code == 409

    bad_stage = client.post(f"/sessions/{sid}/stage", json={"user_id": "admin", "action": "jump", "target": "dessert"})
    assert bad_stage.status_code == 400


def test_create_rejects_bad_coordinates(client: TestClient) -> None:
    resp = client.post("/sessions", json={"admin_id": "admin", "latitude": 123.0, "longitude": 0})
    assert resp.status_code == 422

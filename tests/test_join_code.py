from __future__ import annotations

import random

import pytest

from config import Configuration
from models import Location
from services.errors import JoinCodeExhaustedError
from services.join_code import (
    CHARACTERS,
    CODE_LENGTH,
    JoinCodeAllocator,
    clean_join_code,
    format_join_code,
    generate_join_code,
    is_valid_join_code,
)
from services.sessions import SessionRepository
from services.store import DocumentStore

HOUR_MS = 60 * 60 * 1000


class ScriptedRng:
    """Feeds ``rng.choice`` from a fixed list of codes."""

    def __init__(self, *codes: str) -> None:
        self._chars = iter("".join(codes))

    def choice(self, _seq):
        return next(self._chars)


def _repo(store: DocumentStore, rng, **cfg) -> SessionRepository:
    config = Configuration(**cfg)
    return SessionRepository(store, config, JoinCodeAllocator(store, config, rng))


def _loc() -> Location:
    return Location(latitude=40.7, longitude=-74.0)


def test_generated_codes_use_the_unambiguous_alphabet() -> None:
    rng = random.Random(7)
    for _ in range(200):
        code = generate_join_code(rng)
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CHARACTERS)
    assert not set("01IO") & set(CHARACTERS)


def test_clean_validate_format() -> None:
    assert clean_join_code(" abc-def ") == "ABCDEF"
    assert is_valid_join_code("ABCDEF")
    assert not is_valid_join_code("ABCDE0")
    assert not is_valid_join_code("ABC")
    assert format_join_code("ABCDEF") == "ABC-DEF"


def test_collision_with_live_session_draws_again() -> None:
    store = DocumentStore()
    first = _repo(store, ScriptedRng("AAAAAA")).create("admin-1", _loc(), now=0)
    assert first.join_code == "AAAAAA"

    second = _repo(store, ScriptedRng("AAAAAA", "BBBBBB")).create("admin-2", _loc(), now=10)
    assert second.join_code == "BBBBBB"


def test_session_written_directly_still_blocks_its_code() -> None:
    store = DocumentStore()
    seeded = _repo(store, ScriptedRng("CCCCCC")).create("admin-1", _loc(), now=0)
    # drop the reservation so only the session record claims the code
    store._collections["join_codes"].clear()  # type: ignore[attr-defined]

    allocator = JoinCodeAllocator(store, Configuration(), ScriptedRng("CCCCCC", "DDDDDD"))
    assert allocator.allocate("sess-new", expires_at=HOUR_MS, now=5) == "DDDDDD"
    assert seeded.join_code == "CCCCCC"


def test_expired_session_code_can_be_reused() -> None:
    store = DocumentStore()
    _repo(store, ScriptedRng("EEEEEE"), session_duration_hours=1).create("admin-1", _loc(), now=0)

    allocator = JoinCodeAllocator(store, Configuration(), ScriptedRng("EEEEEE"))
    assert allocator.allocate("sess-later", expires_at=3 * HOUR_MS, now=2 * HOUR_MS) == "EEEEEE"
    assert allocator.lookup("EEEEEE") == "sess-later"


def test_gives_up_after_max_attempts() -> None:
    store = DocumentStore()
    _repo(store, ScriptedRng("FFFFFF")).create("admin-1", _loc(), now=0)

    allocator = JoinCodeAllocator(store, Configuration(join_code_max_attempts=3), ScriptedRng(*["FFFFFF"] * 3))
    with pytest.raises(JoinCodeExhaustedError):
        allocator.allocate("sess-x", expires_at=HOUR_MS, now=1)

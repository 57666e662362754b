from __future__ import annotations

import uuid
from typing import Callable, List, Optional, Tuple

from loguru import logger

from config import Configuration
from models import Location, Restaurant, Session, SessionStatus, StoredRestaurant
from services.errors import ConflictError, InvalidInputError, NotFoundError
from services.join_code import SESSIONS, JoinCodeAllocator, require_join_code
from services.store import Document, DocumentStore
from utils import now_ms

# status may only move forward
_ALLOWED_STATUS = {
    SessionStatus.ACTIVE: {SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.EXPIRED},
    SessionStatus.COMPLETED: {SessionStatus.COMPLETED},
    SessionStatus.EXPIRED: {SessionStatus.EXPIRED},
}


def _dump(session: Session) -> Document:
    return session.model_dump(mode="json")


def ensure_live(session: Session) -> Session:
    """Reject writes to a session that has left the active state."""
    if session.status == SessionStatus.EXPIRED:
        raise NotFoundError(f"session {session.id} has expired")
    if session.status == SessionStatus.COMPLETED:
        raise ConflictError(f"session {session.id} is already completed")
    return session


class SessionRepository:
    def __init__(
        self,
        store: DocumentStore,
        cfg: Configuration,
        allocator: Optional[JoinCodeAllocator] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.store = store
        self.cfg = cfg
        self.allocator = allocator or JoinCodeAllocator(store, cfg)
        self.id_factory = id_factory

    def create(self, admin_id: str, location: Location, *, now: Optional[int] = None) -> Session:
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        now = now if now is not None else now_ms()
        session_id = self.id_factory()
        expires_at = now + self.cfg.session_duration_ms
        code = self.allocator.allocate(session_id, expires_at, now)
        session = Session(
            id=session_id,
            join_code=code,
            admin_id=admin_id,
            created_at=now,
            expires_at=expires_at,
            location=location,
        )
        self.store.create(SESSIONS, session_id, _dump(session))
        logger.info("session {} created by {} with code {}", session_id, admin_id, code)
        return session

    def get(self, session_id: str, *, now: Optional[int] = None) -> Optional[Session]:
        doc = self.store.get(SESSIONS, session_id)
        if doc is None:
            return None
        return self._expire_if_due(Session.model_validate(doc), now)

    def require(self, session_id: str, *, now: Optional[int] = None) -> Session:
        session = self.get(session_id, now=now)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        return session

    def require_live(self, session_id: str, *, now: Optional[int] = None) -> Session:
        return ensure_live(self.require(session_id, now=now))

    def get_by_join_code(self, raw_code: str, *, now: Optional[int] = None) -> Optional[Session]:
        """Live session for a join code; inactive or expired sessions are treated as absent."""
        code = require_join_code(raw_code)
        now = now if now is not None else now_ms()
        candidates: List[Session] = [Session.model_validate(d) for d in self.store.query(SESSIONS, "join_code", code)]
        for session in sorted(candidates, key=lambda s: s.created_at, reverse=True):
            session = self._expire_if_due(session, now)
            if session.is_live(now):
                return session
        return None

    def _expire_if_due(self, session: Session, now: Optional[int]) -> Session:
        now = now if now is not None else now_ms()
        if session.status == SessionStatus.ACTIVE and session.expires_at < now:
            logger.info("session {} expired", session.id)
            return self.set_status(session.id, SessionStatus.EXPIRED)
        return session

    def _mutate(self, session_id: str, change: Callable[[Session], Optional[Session]]) -> Session:
        def mutator(doc: Optional[Document]) -> Optional[Document]:
            if doc is None:
                return None
            updated = change(Session.model_validate(doc))
            return _dump(updated) if updated is not None else None

        result = self.store.update(SESSIONS, session_id, mutator)
        if result is None:
            raise NotFoundError(f"session {session_id} not found")
        return Session.model_validate(result)

    def set_status(self, session_id: str, status: SessionStatus) -> Session:
        def change(session: Session) -> Optional[Session]:
            if status not in _ALLOWED_STATUS[session.status]:
                logger.warning("ignoring status change {} -> {} on {}", session.status.value, status.value, session_id)
                return None
            return session.model_copy(update={"status": status})

        return self._mutate(session_id, change)

    def add_favorite(self, session_id: str, place_id: str) -> Session:
        def change(session: Session) -> Optional[Session]:
            if place_id in session.favorited_restaurants:
                return None
            return session.model_copy(update={"favorited_restaurants": session.favorited_restaurants + [place_id]})

        return self._mutate(session_id, change)

    def remove_favorite(self, session_id: str, place_id: str) -> Session:
        def change(session: Session) -> Optional[Session]:
            if place_id not in session.favorited_restaurants:
                return None
            remaining = [p for p in session.favorited_restaurants if p != place_id]
            return session.model_copy(update={"favorited_restaurants": remaining})

        return self._mutate(session_id, change)

    def cache_restaurants(self, session_id: str, restaurants: List[Restaurant]) -> Tuple[Session, bool]:
        """Store the shared restaurant pool unless one is cached already. Returns (session, written)."""
        written = False

        def change(session: Session) -> Optional[Session]:
            nonlocal written
            if session.cached_restaurants is not None:
                return None
            written = True
            return session.model_copy(
                update={"cached_restaurants": [r.slim() for r in restaurants], "batch_offset": 0}
            )

        return self._mutate(session_id, change), written

    def advance_batch(self, session_id: str, offset: int) -> Session:
        """Move the active page forward to ``offset``; never backwards."""

        def change(session: Session) -> Optional[Session]:
            if offset <= session.batch_offset:
                return None
            return session.model_copy(update={"batch_offset": offset})

        return self._mutate(session_id, change)

    def lock_winner(self, session_id: str, winner: StoredRestaurant, *, now: int) -> Tuple[Session, bool]:
        """First writer wins: a frozen winner is never replaced. Returns (session, written)."""
        written = False

        def change(session: Session) -> Optional[Session]:
            nonlocal written
            if session.winner is not None:
                return None
            written = True
            status = SessionStatus.COMPLETED if session.status == SessionStatus.ACTIVE else session.status
            return session.model_copy(update={"winner": winner, "winner_locked_at": now, "status": status})

        return self._mutate(session_id, change), written

    def subscribe(self, session_id: str, callback: Callable[[Optional[Session]], None]) -> Callable[[], None]:
        def on_change(doc: Optional[Document]) -> None:
            callback(Session.model_validate(doc) if doc is not None else None)

        return self.store.subscribe_record(SESSIONS, session_id, on_change)

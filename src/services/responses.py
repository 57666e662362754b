from __future__ import annotations

from enum import Enum
from typing import Callable, List, Optional

from loguru import logger

from models import ParticipantResponse, response_id
from services.errors import InvalidInputError, NotFoundError
from services.store import Document, DocumentStore
from utils import now_ms

RESPONSES = "responses"


class EliminationKind(str, Enum):
    CUISINE = "cuisine"
    VENUE = "venue"
    RESTAURANT = "restaurant"

    @property
    def field_name(self) -> str:
        return {
            EliminationKind.CUISINE: "eliminated_cuisines",
            EliminationKind.VENUE: "eliminated_venues",
            EliminationKind.RESTAURANT: "eliminated_restaurants",
        }[self]


def _dump(resp: ParticipantResponse) -> Document:
    return resp.model_dump(mode="json")


class ResponseRepository:
    """Per-participant records. Every write touches only the caller's own record."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, session_id: str, user_id: str) -> Optional[ParticipantResponse]:
        doc = self.store.get(RESPONSES, response_id(session_id, user_id))
        return ParticipantResponse.model_validate(doc) if doc is not None else None

    def require(self, session_id: str, user_id: str) -> ParticipantResponse:
        resp = self.get(session_id, user_id)
        if resp is None:
            raise NotFoundError(f"no response for {user_id} in session {session_id}")
        return resp

    def list_for_session(self, session_id: str) -> List[ParticipantResponse]:
        docs = self.store.query(RESPONSES, "session_id", session_id)
        return sorted((ParticipantResponse.model_validate(d) for d in docs), key=lambda r: (r.created_at, r.user_id))

    def ensure(
        self, session_id: str, user_id: str, *, user_name: Optional[str] = None, now: Optional[int] = None
    ) -> ParticipantResponse:
        """Join: create the participant's record if missing, optionally renaming an existing one."""
        if not user_id:
            raise InvalidInputError("user_id is required")
        now = now if now is not None else now_ms()

        def mutator(doc: Optional[Document]) -> Optional[Document]:
            if doc is None:
                logger.info("participant {} joined session {}", user_id, session_id)
                return _dump(
                    ParticipantResponse(
                        id=response_id(session_id, user_id),
                        session_id=session_id,
                        user_id=user_id,
                        user_name=user_name,
                        created_at=now,
                        updated_at=now,
                    )
                )
            current = ParticipantResponse.model_validate(doc)
            if user_name and user_name != current.user_name:
                return _dump(current.model_copy(update={"user_name": user_name, "updated_at": max(now, current.created_at)}))
            return None

        result = self.store.update(RESPONSES, response_id(session_id, user_id), mutator)
        return ParticipantResponse.model_validate(result)

    def mutate(
        self,
        session_id: str,
        user_id: str,
        change: Callable[[ParticipantResponse], ParticipantResponse],
    ) -> ParticipantResponse:
        """Atomic read-modify-write of one participant's record; missing records raise NotFoundError."""

        def mutator(doc: Optional[Document]) -> Optional[Document]:
            if doc is None:
                return None
            current = ParticipantResponse.model_validate(doc)
            updated = change(current)
            if updated is current:
                return None
            return _dump(ParticipantResponse.model_validate(_dump(updated)))

        result = self.store.update(RESPONSES, response_id(session_id, user_id), mutator)
        if result is None:
            raise NotFoundError(f"no response for {user_id} in session {session_id}")
        return ParticipantResponse.model_validate(result)

    def set_elimination(
        self,
        session_id: str,
        user_id: str,
        kind: EliminationKind,
        key: str,
        eliminated: bool,
        *,
        now: Optional[int] = None,
    ) -> ParticipantResponse:
        """Add or remove one key. Adding a present key or removing an absent one is a no-op."""
        return self._apply(session_id, user_id, kind, key, lambda present: eliminated, now)

    def toggle(
        self, session_id: str, user_id: str, kind: EliminationKind, key: str, *, now: Optional[int] = None
    ) -> ParticipantResponse:
        """Flip one key, deciding the direction inside the atomic update."""
        return self._apply(session_id, user_id, kind, key, lambda present: not present, now)

    def _apply(
        self,
        session_id: str,
        user_id: str,
        kind: EliminationKind,
        key: str,
        target: Callable[[bool], bool],
        now: Optional[int],
    ) -> ParticipantResponse:
        if not key:
            raise InvalidInputError("elimination key is required")
        now = now if now is not None else now_ms()

        def change(resp: ParticipantResponse) -> ParticipantResponse:
            current: List[str] = getattr(resp, kind.field_name)
            present = key in current
            eliminated = target(present)
            if present == eliminated:
                return resp
            values = current + [key] if eliminated else [v for v in current if v != key]
            return resp.model_copy(update={kind.field_name: values, "updated_at": max(now, resp.created_at)})

        return self.mutate(session_id, user_id, change)

    def subscribe(
        self, session_id: str, callback: Callable[[List[ParticipantResponse]], None]
    ) -> Callable[[], None]:
        def on_change(docs: List[Document]) -> None:
            responses = [ParticipantResponse.model_validate(d) for d in docs]
            callback(sorted(responses, key=lambda r: (r.created_at, r.user_id)))

        return self.store.subscribe_query(RESPONSES, "session_id", session_id, on_change)

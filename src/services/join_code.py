from __future__ import annotations

import random
import re
from typing import Optional

from loguru import logger

from config import Configuration
from models import Session
from services.errors import InvalidInputError, JoinCodeExhaustedError
from services.store import Document, DocumentStore

# No 0/O or 1/I: codes get read aloud and typed on phones.
CHARACTERS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6

JOIN_CODES = "join_codes"
SESSIONS = "sessions"


def generate_join_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(CHARACTERS) for _ in range(CODE_LENGTH))


def clean_join_code(code: str) -> str:
    """Strip hyphens and whitespace and upper-case, so ``abc-def`` matches ``ABCDEF``."""
    return re.sub(r"[-\s]", "", code or "").upper()


def is_valid_join_code(code: str) -> bool:
    if not code or len(code) != CODE_LENGTH:
        return False
    return all(ch in CHARACTERS for ch in code.upper())


def format_join_code(code: str) -> str:
    if not code or len(code) != CODE_LENGTH:
        return code
    return f"{code[:3]}-{code[3:]}"


def require_join_code(raw: str) -> str:
    code = clean_join_code(raw)
    if not is_valid_join_code(code):
        raise InvalidInputError(f"invalid join code: {raw!r}")
    return code


class JoinCodeAllocator:
    """Hands out join codes unique among live sessions.

    A code is claimed with a conditional write on ``join_codes/<code>``; the
    write only lands when nobody holds the code or the holder's session is no
    longer active and unexpired. Two concurrent creators drawing the same code
    cannot both win the write, unlike a query-then-insert loop.
    """

    def __init__(self, store: DocumentStore, cfg: Configuration, rng: Optional[random.Random] = None) -> None:
        self.store = store
        self.max_attempts = max(1, cfg.join_code_max_attempts)
        self.rng = rng or random.SystemRandom()

    def _is_free(self, code: str, existing: Optional[Document], now: int) -> bool:
        # sessions written without going through the allocator still count
        for doc in self.store.query(SESSIONS, "join_code", code):
            if Session.model_validate(doc).is_live(now):
                return False
        if existing is None:
            return True
        if int(existing.get("expires_at", 0)) < now:
            return True
        holder = self.store.get(SESSIONS, existing.get("session_id", ""))
        if holder is None:
            # reserved but the session write has not landed yet
            return False
        return not Session.model_validate(holder).is_live(now)

    def allocate(self, session_id: str, expires_at: int, now: int) -> str:
        for attempt in range(1, self.max_attempts + 1):
            code = generate_join_code(self.rng)
            reservation = {"code": code, "session_id": session_id, "expires_at": expires_at}
            claimed = self.store.put_if(
                JOIN_CODES, code, reservation, lambda existing, c=code: self._is_free(c, existing, now)
            )
            if claimed:
                logger.debug("join code {} allocated on attempt {}", code, attempt)
                return code
            logger.info("join code collision on {} (attempt {}/{})", code, attempt, self.max_attempts)
        raise JoinCodeExhaustedError(f"no free join code after {self.max_attempts} attempts")

    def lookup(self, code: str) -> Optional[str]:
        """Session id currently holding ``code``, if any."""
        doc = self.store.get(JOIN_CODES, code)
        return doc.get("session_id") if doc else None

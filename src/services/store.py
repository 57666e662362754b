from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from services.errors import ConflictError

Document = Dict[str, Any]
Mutator = Callable[[Optional[Document]], Optional[Document]]


@dataclass
class _Subscription:
    collection: str
    key: Optional[str]
    field: Optional[str]
    value: Any
    callback: Callable[[Any], None]
    active: bool = True


class DocumentStore:
    """Thread-safe in-memory document store with snapshot subscriptions.

    Records are plain JSON-like dicts grouped by collection and keyed by id.
    Every write notifies subscribers with the *full* current snapshot of what
    they watch (a single record, or every record matching a field equality),
    never a delta. Callers own validation; the store only copies documents in
    and out so nobody can mutate stored state by reference.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._subs: List[_Subscription] = []
        self._lock = threading.RLock()

    def get(self, collection: str, key: str) -> Optional[Document]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def query(self, collection: str, field: str, value: Any) -> List[Document]:
        with self._lock:
            return [
                copy.deepcopy(doc)
                for doc in self._collections.get(collection, {}).values()
                if doc.get(field) == value
            ]

    def create(self, collection: str, key: str, doc: Document) -> Document:
        """Insert ``doc``; raise ConflictError if the key is taken."""
        written = self.put_if(collection, key, doc, lambda existing: existing is None)
        if not written:
            raise ConflictError(f"{collection}/{key} already exists")
        return copy.deepcopy(doc)

    def put_if(
        self,
        collection: str,
        key: str,
        doc: Document,
        predicate: Callable[[Optional[Document]], bool],
    ) -> bool:
        """Write ``doc`` only when ``predicate(current)`` holds. Atomic."""
        with self._lock:
            bucket = self._collections.setdefault(collection, {})
            current = bucket.get(key)
            if not predicate(copy.deepcopy(current) if current is not None else None):
                return False
            bucket[key] = copy.deepcopy(doc)
        self._notify(collection, key)
        return True

    def set(self, collection: str, key: str, doc: Document) -> None:
        self.put_if(collection, key, doc, lambda _existing: True)

    def update(self, collection: str, key: str, mutator: Mutator) -> Optional[Document]:
        """Atomically read-modify-write one record.

        ``mutator`` receives a copy of the current document (or None) and
        returns the replacement, or None to leave the record untouched. The
        stored document after the call is returned.
        """
        changed = False
        with self._lock:
            bucket = self._collections.setdefault(collection, {})
            current = bucket.get(key)
            replacement = mutator(copy.deepcopy(current) if current is not None else None)
            if replacement is not None and replacement != current:
                bucket[key] = copy.deepcopy(replacement)
                changed = True
            result = bucket.get(key)
            result = copy.deepcopy(result) if result is not None else None
        if changed:
            self._notify(collection, key)
        return result

    def subscribe_record(
        self, collection: str, key: str, callback: Callable[[Optional[Document]], None]
    ) -> Callable[[], None]:
        sub = _Subscription(collection=collection, key=key, field=None, value=None, callback=callback)
        return self._register(sub)

    def subscribe_query(
        self, collection: str, field: str, value: Any, callback: Callable[[List[Document]], None]
    ) -> Callable[[], None]:
        sub = _Subscription(collection=collection, key=None, field=field, value=value, callback=callback)
        return self._register(sub)

    def _register(self, sub: _Subscription) -> Callable[[], None]:
        with self._lock:
            self._subs.append(sub)
        self._deliver(sub)

        def unsubscribe() -> None:
            with self._lock:
                sub.active = False
                if sub in self._subs:
                    self._subs.remove(sub)

        return unsubscribe

    def _snapshot(self, sub: _Subscription) -> Any:
        if sub.key is not None:
            return self.get(sub.collection, sub.key)
        return self.query(sub.collection, sub.field or "", sub.value)

    def _deliver(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        snapshot = self._snapshot(sub)
        try:
            sub.callback(snapshot)
        except Exception as exc:
            logger.exception("subscriber for {} failed: {}", sub.collection, exc)

    def _notify(self, collection: str, key: str) -> None:
        with self._lock:
            targets = [
                s
                for s in self._subs
                if s.collection == collection and (s.key is None or s.key == key)
            ]
        for sub in targets:
            if sub.key is None:
                doc = self.get(collection, key)
                if doc is not None and doc.get(sub.field or "") != sub.value:
                    continue
            self._deliver(sub)

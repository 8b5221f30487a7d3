"""
auth/ledger.py -- Session ledger for user-project relations.

Each successful platform sign-in appends the platform's session id to the
relation's session_ids list on the remote store. The remote API only offers
"replace the whole list", so an append is read-modify-write:

    relation = GET /user-projects/{id}
    PUT /user-projects/{id} {session_ids: relation.session_ids + [sid]}

Two sign-ins for the same relation that interleave between the GET and the
PUT lose one session id (last write wins). Updates for the same relation
are therefore serialized inside this process with a per-relation lock; a
lock is dropped once no caller holds or waits on it.
Writers in other processes can still interleave; that race is accepted.
Duplicates are tolerated, so a retried append is harmless.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from auth.errors import NotFoundError
from auth.models import UserProjectRelation
from auth.platform import PlatformStore

logger = logging.getLogger("authgate.auth.ledger")


class SessionLedger:
    def __init__(self, store: PlatformStore) -> None:
        self.store = store
        # relation id -> (lock, number of callers holding or waiting on it)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _relation_lock(self, relation_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock, users = self._locks.get(relation_id, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[relation_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[relation_id]
                if users == 1:
                    del self._locks[relation_id]
                else:
                    self._locks[relation_id] = (lock, users - 1)

    def append_session(self, relation_id: str, session_id: str) -> UserProjectRelation:
        with self._relation_lock(relation_id):
            relation = self.store.get_relation(relation_id)
            if relation is None:
                raise NotFoundError("User not found in project", code="relation_not_found")
            session_ids = [*relation.session_ids, session_id]
            updated = self.store.update_relation(relation_id, session_ids=session_ids)
        if updated is None:
            raise NotFoundError("User not found in project", code="relation_not_found")
        logger.info("Relation %s: session appended (%d active)", relation_id, len(session_ids))
        return updated

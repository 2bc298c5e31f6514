from __future__ import annotations

import threading
from typing import Any, Callable, Optional

import structlog

from .models import PersistedSession, SessionKey


log = structlog.get_logger(__name__)

Mutation = Callable[[PersistedSession], None]


class OptimisticLockError(Exception):
    """Raised when a conditional write finds the stored record changed underneath it."""


class SessionStore:
    """
    Base class for durable session persistence.

    Holds the last committed `PersistedSession` snapshot in memory. Reads are
    lock-free and always observe a whole committed snapshot; writers are
    serialized and only publish the new snapshot once the backend has
    persisted it, so no reader ever sees a partially applied update.

    Subclasses implement `_load()` and `_persist(session)`. `_persist` may
    raise `OptimisticLockError` when another writer got there first; the edit
    is then re-applied on a freshly loaded snapshot.
    """

    max_conflict_retries = 3

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: Optional[PersistedSession] = None

    # -------- Backend hooks --------
    def _load(self) -> PersistedSession:
        raise NotImplementedError

    def _persist(self, session: PersistedSession) -> None:
        raise NotImplementedError

    # -------- Reads --------
    def _committed(self) -> PersistedSession:
        snap = self._snapshot
        if snap is None:
            with self._lock:
                if self._snapshot is None:
                    self._snapshot = self._load()
                snap = self._snapshot
        return snap

    def snapshot(self) -> PersistedSession:
        """Return a private copy of the last committed session."""
        return self._committed().model_copy(deep=True)

    def read(self, key: SessionKey) -> Any:
        return self.snapshot().get(key)

    # -------- Writes --------
    def edit(self, mutation: Mutation) -> PersistedSession:
        """Apply `mutation` to a copy of the session and commit it as one unit.

        The mutation receives a draft it may modify freely. If the mutation,
        validation or persistence fails, the committed snapshot is unchanged.
        Returns a copy of the newly committed session.
        """
        self._committed()
        with self._lock:
            attempt = 0
            while True:
                current = self._snapshot if self._snapshot is not None else self._load()
                draft = current.model_copy(deep=True)
                mutation(draft)
                updated = PersistedSession.model_validate(draft.model_dump())
                try:
                    self._persist(updated)
                except OptimisticLockError:
                    attempt += 1
                    if attempt > self.max_conflict_retries:
                        raise
                    log.warning("Session record changed concurrently; reloading", attempt=attempt)
                    self._snapshot = self._load()
                    continue
                self._snapshot = updated
                return updated.model_copy(deep=True)


class MemorySessionStore(SessionStore):
    """Process-local store; nothing survives a restart."""

    def __init__(self, initial: Optional[PersistedSession] = None) -> None:
        super().__init__()
        self._initial = initial or PersistedSession.empty()
        self.writes = 0

    def _load(self) -> PersistedSession:
        return self._initial.model_copy(deep=True)

    def _persist(self, session: PersistedSession) -> None:
        self.writes += 1

from __future__ import annotations

import threading

import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from state.file_store import EncryptedFileSessionStore
from state.models import Credential, PersistedSession, SessionKey
from state.store import MemorySessionStore, OptimisticLockError, SessionStore


def _set_user(s: PersistedSession) -> None:
    s.username = "alice"
    s.session_token = "tok1"


def test_memory_store_starts_empty():
    store = MemorySessionStore()
    assert store.read(SessionKey.USERNAME) is None
    assert store.read(SessionKey.CREDENTIALS) == []


def test_edit_commits_all_fields_together():
    store = MemorySessionStore()
    committed = store.edit(_set_user)

    assert committed.username == "alice"
    assert store.read(SessionKey.USERNAME) == "alice"
    assert store.read(SessionKey.SESSION_TOKEN) == "tok1"
    assert store.writes == 1


def test_failed_mutation_leaves_snapshot_untouched():
    store = MemorySessionStore(PersistedSession(username="alice", session_token="tok1"))

    def _boom(s: PersistedSession) -> None:
        s.session_token = "tok2"
        raise RuntimeError("interrupted")

    with pytest.raises(RuntimeError):
        store.edit(_boom)
    assert store.read(SessionKey.SESSION_TOKEN) == "tok1"
    assert store.writes == 0


def test_edit_violating_invariant_is_rejected():
    store = MemorySessionStore(PersistedSession(username="alice", session_token="tok1"))

    with pytest.raises(ValidationError):
        store.edit(lambda s: setattr(s, "username", None))
    assert store.read(SessionKey.USERNAME) == "alice"


def test_snapshot_is_a_private_copy():
    store = MemorySessionStore(PersistedSession(username="alice"))
    snap = store.snapshot()
    snap.username = "mallory"
    assert store.read(SessionKey.USERNAME) == "alice"


class _BlockingStore(SessionStore):
    """Store whose persistence step waits until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def _load(self) -> PersistedSession:
        return PersistedSession(username="alice", session_token="tok1")

    def _persist(self, session: PersistedSession) -> None:
        self.entered.set()
        assert self.release.wait(5)


def test_reads_during_inflight_edit_see_previous_snapshot():
    store = _BlockingStore()

    def _rotate(s: PersistedSession) -> None:
        s.username = "bob"
        s.session_token = "tok2"

    t = threading.Thread(target=store.edit, args=(_rotate,))
    t.start()
    assert store.entered.wait(5)

    snap = store.snapshot()
    assert (snap.username, snap.session_token) == ("alice", "tok1")

    store.release.set()
    t.join(5)
    snap = store.snapshot()
    assert (snap.username, snap.session_token) == ("bob", "tok2")


class _ConflictingStore(SessionStore):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.loads = 0
        self.persisted = []

    def _load(self) -> PersistedSession:
        self.loads += 1
        # Another writer keeps adding credentials between attempts
        return PersistedSession(
            username="alice",
            session_token="tok1",
            credentials=[Credential(id=f"c{i}", order=i) for i in range(self.loads)],
        )

    def _persist(self, session: PersistedSession) -> None:
        if self.conflicts > 0:
            self.conflicts -= 1
            raise OptimisticLockError("changed")
        self.persisted.append(session)


def test_conflict_reloads_and_reapplies_mutation():
    store = _ConflictingStore(conflicts=1)
    store.edit(lambda s: setattr(s, "session_token", "tok2"))

    assert len(store.persisted) == 1
    final = store.persisted[0]
    assert final.session_token == "tok2"
    # Mutation was applied on top of the reloaded record
    assert [c.id for c in final.credentials] == ["c0", "c1"]


def test_conflict_gives_up_after_retries():
    store = _ConflictingStore(conflicts=10)
    with pytest.raises(OptimisticLockError):
        store.edit(lambda s: setattr(s, "session_token", "tok2"))
    assert store.read(SessionKey.SESSION_TOKEN) == "tok1"


# -------- Encrypted file store --------

def test_file_store_survives_restart(tmp_path):
    key = Fernet.generate_key()
    path = tmp_path / "nested" / "session.bin"

    store = EncryptedFileSessionStore(path, fernet_key=key)
    store.edit(_set_user)
    store.edit(
        lambda s: setattr(
            s, "credentials", [Credential(id="A", order=0), Credential(id="B", order=1), Credential(id="C", order=2)]
        )
    )

    assert path.exists()
    assert b"alice" not in path.read_bytes()
    assert list(path.parent.iterdir()) == [path]

    reopened = EncryptedFileSessionStore(path, fernet_key=key.decode("ascii"))
    snap = reopened.snapshot()
    assert snap.username == "alice"
    assert snap.session_token == "tok1"
    assert [c.id for c in snap.credentials] == ["A", "B", "C"]


def test_file_store_missing_file_reads_empty(tmp_path):
    store = EncryptedFileSessionStore(tmp_path / "none.bin", fernet_key=Fernet.generate_key())
    assert store.snapshot() == PersistedSession.empty()


def test_file_store_wrong_key_raises_value_error(tmp_path):
    path = tmp_path / "session.bin"
    EncryptedFileSessionStore(path, fernet_key=Fernet.generate_key()).edit(_set_user)

    other = EncryptedFileSessionStore(path, fernet_key=Fernet.generate_key())
    with pytest.raises(ValueError):
        other.snapshot()


def test_file_store_from_env(monkeypatch, tmp_path):
    monkeypatch.delenv("AUTH_FERNET_KEY", raising=False)
    with pytest.raises(RuntimeError):
        EncryptedFileSessionStore.from_env()

    key = Fernet.generate_key().decode("ascii")
    env = {"AUTH_FERNET_KEY": key, "AUTH_SESSION_PATH": str(tmp_path / "s.bin")}
    store = EncryptedFileSessionStore.from_env(env)
    assert store.path == tmp_path / "s.bin"

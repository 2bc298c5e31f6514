from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from uuid import uuid4

from .codec import decrypt_session, encrypt_session, to_fernet
from .models import PersistedSession
from .store import SessionStore


ENV_SESSION_PATH = "AUTH_SESSION_PATH"
ENV_FERNET_KEY = "AUTH_FERNET_KEY"


def default_session_path() -> Path:
    return Path.home() / ".auth-session" / "session.bin"


class EncryptedFileSessionStore(SessionStore):
    """
    Local-file persistence for `PersistedSession`, encrypted at rest using Fernet.

    - A missing file reads as an empty session.
    - Writes go to a temporary sibling which is then renamed over the target,
      so a crash mid-write leaves the previous file intact.

    Environment variables (optional)
    - `AUTH_SESSION_PATH`: file location (default ~/.auth-session/session.bin)
    - `AUTH_FERNET_KEY`:   urlsafe base64-encoded key for Fernet
    """

    def __init__(self, path: os.PathLike[str] | str, *, fernet_key: str | bytes) -> None:
        super().__init__()
        self._path = Path(path)
        self._fernet = to_fernet(fernet_key)

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "EncryptedFileSessionStore":
        env = os.environ if env is None else env
        fkey = env.get(ENV_FERNET_KEY)
        if not fkey:
            raise RuntimeError(f"Missing required configuration: {ENV_FERNET_KEY}")
        path = env.get(ENV_SESSION_PATH) or default_session_path()
        return cls(path, fernet_key=fkey)

    def _load(self) -> PersistedSession:
        if not self._path.exists():
            return PersistedSession.empty()
        return decrypt_session(self._fernet, self._path.read_bytes())

    def _persist(self, session: PersistedSession) -> None:
        ciphertext = encrypt_session(self._fernet, session)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f"{self._path.name}.tmp-{uuid4().hex}")
        try:
            with tmp.open("wb") as f:
                f.write(ciphertext)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        finally:
            if tmp.exists():
                tmp.unlink()

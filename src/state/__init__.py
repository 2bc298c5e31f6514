"""
Durable sign-in session persistence.

The session record is a small JSON document, encrypted with Fernet and kept
either in a local file or in S3. All stores share the `SessionStore`
contract: lock-free point reads of the last committed snapshot and atomic
`edit()` batches.
"""

from .models import Credential, PersistedSession, SessionKey, ordered_credentials
from .store import MemorySessionStore, OptimisticLockError, SessionStore

__all__ = [
    "Credential",
    "MemorySessionStore",
    "OptimisticLockError",
    "PersistedSession",
    "SessionKey",
    "SessionStore",
    "ordered_credentials",
]

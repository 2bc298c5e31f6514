from __future__ import annotations

import json

from cryptography.fernet import Fernet, InvalidToken

from .models import PersistedSession


def to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def dump_session_json(session: PersistedSession) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(
        session.model_dump(mode="json"), separators=(",", ":"), sort_keys=True
    ).encode("utf-8")


def load_session_json(data: bytes) -> PersistedSession:
    raw = json.loads(data.decode("utf-8"))
    return PersistedSession.model_validate(raw)


def encrypt_session(fernet: Fernet, session: PersistedSession) -> bytes:
    return fernet.encrypt(dump_session_json(session))


def decrypt_session(fernet: Fernet, token: bytes) -> PersistedSession:
    """Decrypt and parse a stored session.

    Raises ValueError if the token cannot be decrypted or the payload is not
    a valid session document.
    """
    try:
        plaintext = fernet.decrypt(token)
    except InvalidToken as ex:
        raise ValueError("Failed to decrypt session: invalid Fernet token") from ex

    try:
        return load_session_json(plaintext)
    except Exception as ex:
        raise ValueError("Failed to parse decrypted session JSON") from ex

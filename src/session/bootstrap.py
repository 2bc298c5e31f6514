from __future__ import annotations

import os
from typing import Mapping, Optional

from common.auth_api import ENV_API_BASE_URL, HttpAuthApi
from common.logs import configure_logging
from state.file_store import ENV_SESSION_PATH, EncryptedFileSessionStore, default_session_path
from state.s3_store import DEFAULT_KEY, ENV_BUCKET, ENV_KEY, S3SessionStore
from state.store import SessionStore

from .manager import AuthSessionManager


ENV_FERNET_KEY = "AUTH_FERNET_KEY"
ENV_LOG_JSON = "AUTH_LOG_JSON"


def _getenv(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    v = env.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _parse_bool(raw: Optional[str]) -> Optional[bool]:
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


def build_store(env: Optional[Mapping[str, str]] = None) -> SessionStore:
    """Select the session store from configuration.

    - AUTH_STATE_BUCKET set: S3 store at AUTH_STATE_KEY (default: session.bin).
    - Otherwise: encrypted local file at AUTH_SESSION_PATH.
    Both require AUTH_FERNET_KEY.
    """
    env = os.environ if env is None else env
    fernet_key = _require(_getenv(env, ENV_FERNET_KEY), ENV_FERNET_KEY)

    bucket = _getenv(env, ENV_BUCKET)
    if bucket:
        key = _getenv(env, ENV_KEY, DEFAULT_KEY)
        return S3SessionStore(bucket=bucket, key=key, fernet_key=fernet_key)

    path = _getenv(env, ENV_SESSION_PATH) or default_session_path()
    return EncryptedFileSessionStore(path, fernet_key=fernet_key)


def build_session_manager(
    env: Optional[Mapping[str, str]] = None,
    *,
    setup_logging: bool = True,
) -> AuthSessionManager:
    """
    Wire an `AuthSessionManager` from environment configuration.

    Environment:
    - AUTH_API_BASE_URL (required), AUTH_FERNET_KEY (required)
    - AUTH_STATE_BUCKET, AUTH_STATE_KEY or AUTH_SESSION_PATH
    - AUTH_LOG_JSON: force JSON (1/true) or console (0/false) log output

    The returned manager is not yet initialized; call `initialize()` once.
    """
    env = os.environ if env is None else env
    base_url = _require(_getenv(env, ENV_API_BASE_URL), ENV_API_BASE_URL)

    if setup_logging:
        configure_logging(json_output=_parse_bool(_getenv(env, ENV_LOG_JSON)))

    store = build_store(env)
    return AuthSessionManager(HttpAuthApi(base_url), store)

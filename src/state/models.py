from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class SessionKey(str, Enum):
    """Names of the persisted session fields."""

    USERNAME = "username"
    SESSION_TOKEN = "session_token"
    CREDENTIALS = "credentials"
    LOCAL_CREDENTIAL_ID = "local_credential_id"


class Credential(BaseModel):
    """
    A public-key credential registered on the server for the signed-in user.

    `order` records the position in which the server listed the credential so
    that the list can be restored in registration order after a round-trip
    through persistence.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(..., validation_alias=AliasChoices("id", "credId"))
    public_key: str = Field(
        default="",
        validation_alias=AliasChoices("public_key", "publicKey"),
    )
    order: int = 0


def ordered_credentials(credentials: Iterable[Credential]) -> List[Credential]:
    """Stamp each credential with its index as listed."""
    return [c.model_copy(update={"order": i}) for i, c in enumerate(credentials)]


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


class PersistedSession(BaseModel):
    """
    Durable sign-in record, serialized to JSON and encrypted at rest.

    Fields
    - username: the username accepted by the server (None when signed out).
    - session_token: opaque server session identifier. Never present without
      a username.
    - credentials: the server's credential list for the user, ordered by
      `Credential.order`.
    - local_credential_id: id of the credential created on this device, if any.
    """

    username: Optional[str] = None
    session_token: Optional[str] = None
    credentials: List[Credential] = Field(default_factory=list)
    local_credential_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "PersistedSession":
        if _present(self.session_token) and not _present(self.username):
            raise ValueError("session_token cannot be stored without a username")
        self.credentials = sorted(self.credentials, key=lambda c: c.order)
        return self

    @classmethod
    def empty(cls) -> "PersistedSession":
        """Convenience constructor for a fresh, empty session."""
        return cls()

    def get(self, key: SessionKey) -> Any:
        return getattr(self, SessionKey(key).value)

    def has_username(self) -> bool:
        return _present(self.username)

    def has_session_token(self) -> bool:
        return _present(self.session_token)

    def clear_sign_in(self) -> None:
        """Drop username, token and cached credentials (restart required)."""
        self.username = None
        self.session_token = None
        self.credentials = []

    def clear_all(self) -> None:
        self.clear_sign_in()
        self.local_credential_id = None

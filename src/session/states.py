from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from state.models import PersistedSession


SIGNED_OUT_BY_SERVER = "Signed out by server"
INVALID_CREDENTIALS = "Invalid login credentials"


@dataclass(frozen=True)
class SignedOut:
    """No username on record."""


@dataclass(frozen=True)
class SigningIn:
    """Username accepted by the server; password or credential not yet verified."""

    username: str


@dataclass(frozen=True)
class SignedIn:
    username: str


@dataclass(frozen=True)
class SignInError:
    """The attempt failed; the flow restarts from username entry."""

    message: str


SignInState = Union[SignedOut, SigningIn, SignedIn, SignInError]


def derive_state(session: PersistedSession) -> SignInState:
    """Compute the sign-in state implied by what is on record."""
    if not session.has_username():
        return SignedOut()
    if not session.has_session_token():
        return SigningIn(session.username)
    return SignedIn(session.username)

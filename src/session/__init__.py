"""
Sign-in session state machine.

`AuthSessionManager` drives the username -> password -> signed-in flow,
keeps the durable session record consistent with the auth server, and
publishes every `SignInState` change to subscribers.
"""

from .broadcast import BroadcastClosed, StateBroadcast, Subscription
from .manager import AuthSessionManager, SessionNotInitializedError
from .provider import CredentialProvider, CredentialProviderError
from .states import SignedIn, SignedOut, SignInError, SignInState, SigningIn

__all__ = [
    "AuthSessionManager",
    "BroadcastClosed",
    "CredentialProvider",
    "CredentialProviderError",
    "SessionNotInitializedError",
    "SignInError",
    "SignInState",
    "SignedIn",
    "SignedOut",
    "SigningIn",
    "StateBroadcast",
    "Subscription",
]

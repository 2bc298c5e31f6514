from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import structlog

from common.auth_api import (
    AuthApi,
    AuthApiError,
    AuthApiTransportError,
    AuthApiValidationError,
    SignedOutFromServer,
)
from state.models import Credential, PersistedSession, ordered_credentials
from state.store import SessionStore

from .broadcast import StateBroadcast, Subscription
from .provider import CredentialProvider, CredentialProviderError
from .states import (
    INVALID_CREDENTIALS,
    SIGNED_OUT_BY_SERVER,
    SignedIn,
    SignedOut,
    SignInError,
    SignInState,
    SigningIn,
    derive_state,
)


log = structlog.get_logger(__name__)


class SessionNotInitializedError(RuntimeError):
    """Raised when an operation runs before `initialize()`, or `initialize()` runs twice."""


class AuthSessionManager:
    """
    Owns the sign-in flow: username -> password -> signed in, plus credential
    registration and removal.

    Every transition holds the session lock, calls the remote API, commits its
    changes to the store in one `edit()`, and publishes the resulting
    `SignInState` as its last step. Observers follow along via `subscribe()`.

    Operations return False (or None for the request operations) when they
    could not complete:
    - the server rejected the input: username, token and credentials are
      cleared and `SignInError` is published;
    - the server signed the session out: everything is cleared and
      `SignInError("Signed out by server")` is published;
    - a transport failure occurred: nothing changes, the call may be retried;
    - the flow is not in the state the operation requires: nothing changes.
    """

    def __init__(
        self,
        api: AuthApi,
        store: SessionStore,
        *,
        broadcast: Optional[StateBroadcast[SignInState]] = None,
    ) -> None:
        self._api = api
        self._store = store
        self._broadcast: StateBroadcast[SignInState] = broadcast or StateBroadcast()
        self._lock = threading.RLock()
        self._initialized = False

    # --------------- Observers ---------------
    @property
    def state(self) -> Optional[SignInState]:
        """Latest published state; None before `initialize()`."""
        return self._broadcast.value

    def subscribe(self) -> Subscription[SignInState]:
        return self._broadcast.subscribe()

    # --------------- Lifecycle ---------------
    def initialize(self) -> SignInState:
        """Publish the state implied by the stored session.

        A stored username and token means the user is still signed in, in
        which case the credential list is refreshed right away.
        """
        with self._lock:
            if self._initialized:
                raise SessionNotInitializedError("session manager is already initialized")
            state = derive_state(self._store.snapshot())
            self._initialized = True
            log.info("Session initialized", state=type(state).__name__)
            self._broadcast.publish(state)
            if isinstance(state, SignedIn):
                self._refresh_credentials()
            # The startup refresh may have forced a sign-out
            return self.state

    @contextmanager
    def _transition(self, operation: str) -> Iterator[None]:
        with self._lock:
            if not self._initialized:
                raise SessionNotInitializedError(f"{operation} called before initialize()")
            yield

    # --------------- Username / password ---------------
    def submit_username(self, username: str) -> bool:
        """
        Sends the username to the server. If it succeeds, the state proceeds
        to `SigningIn(username)`.
        """
        with self._transition("submit_username"):
            try:
                result = self._api.submit_username(username)
            except AuthApiValidationError as e:
                log.warning("Username rejected", username=username, error=str(e))
                self._fail_sign_in(str(e) or INVALID_CREDENTIALS)
                return False
            except AuthApiTransportError as e:
                log.error("Cannot submit username", error=str(e))
                return False

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return False

            token = result.session_token
            if not token:
                log.error("Server accepted username without issuing a session token")
                return False

            def _mutate(s: PersistedSession) -> None:
                s.username = username
                s.session_token = token

            self._store.edit(_mutate)
            self._publish(SigningIn(username))
            return True

    def submit_password(self, password: str) -> bool:
        """
        Signs in with a password. Only meaningful while a username and session
        token are on record (`SigningIn`). On success the state proceeds to
        `SignedIn` and the credential list is refreshed.
        """
        with self._transition("submit_password"):
            session = self._store.snapshot()
            if not session.has_username() or not session.has_session_token():
                log.warning("Password submitted without a pending username and session token")
                return False

            username = session.username
            try:
                result = self._api.submit_password(session.session_token, password)
            except AuthApiValidationError as e:
                log.warning("Invalid login credentials", username=username, error=str(e))
                self._fail_sign_in(str(e) or INVALID_CREDENTIALS)
                return False
            except AuthApiTransportError as e:
                log.error("Cannot submit password", error=str(e))
                return False

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return False

            if result.session_token:
                self._store.edit(lambda s: setattr(s, "session_token", result.session_token))
            self._publish(SignedIn(username))
            self._refresh_credentials()
            return True

    # --------------- Credentials ---------------
    def refresh_credentials(self) -> bool:
        """Fetch the server's credential list and store it in server order."""
        with self._transition("refresh_credentials"):
            return self._refresh_credentials()

    def _refresh_credentials(self) -> bool:
        token = self._store.snapshot().session_token
        if not token:
            log.warning("Cannot refresh credentials without a session token")
            return False

        try:
            result = self._api.list_credentials(token)
        except AuthApiError as e:
            log.error("Cannot refresh credentials", error=str(e))
            return False

        if isinstance(result, SignedOutFromServer):
            self._force_sign_out()
            return False

        credentials = ordered_credentials(result.data or [])

        def _mutate(s: PersistedSession) -> None:
            if result.session_token:
                s.session_token = result.session_token
            s.credentials = credentials

        self._store.edit(_mutate)
        log.info("Credentials refreshed", count=len(credentials))
        return True

    def clear_credentials(self) -> bool:
        """
        Drops the locally cached credential list, keeping the session. The
        state proceeds to `SigningIn(username)`.
        """
        with self._transition("clear_credentials"):
            session = self._store.snapshot()
            if not session.has_username():
                log.warning("Cannot clear credentials without a username on record")
                return False
            self._store.edit(lambda s: setattr(s, "credentials", []))
            self._publish(SigningIn(session.username))
            return True

    def remove_credential(self, credential_id: str) -> bool:
        """Removes a credential registered on the server, then refreshes the list."""
        with self._transition("remove_credential"):
            token = self._store.snapshot().session_token
            if not token:
                log.warning("Cannot remove a credential without a session token")
                return False

            try:
                result = self._api.remove_credential(token, credential_id)
            except AuthApiError as e:
                log.error("Cannot remove credential", credential_id=credential_id, error=str(e))
                return False

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return False

            if result.session_token:
                self._store.edit(lambda s: setattr(s, "session_token", result.session_token))
            return self._refresh_credentials()

    # --------------- Credential registration ---------------
    def register_request(self) -> Optional[Dict[str, Any]]:
        """
        Starts registering a new credential: returns the server's creation
        options for the credential provider. Only valid while `SignedIn`.
        """
        with self._transition("register_request"):
            token = self._store.snapshot().session_token
            if not isinstance(self.state, SignedIn) or not token:
                log.warning("Credential registration requires a signed-in session")
                return None

            try:
                result = self._api.register_request(token)
            except AuthApiError as e:
                log.error("Cannot start credential registration", error=str(e))
                return None

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return None

            if result.session_token:
                self._store.edit(lambda s: setattr(s, "session_token", result.session_token))
            return result.data

    def register_response(self, credential: Dict[str, Any]) -> bool:
        """
        Finishes registering a credential produced by the credential provider
        from the options returned by `register_request()`.
        """
        with self._transition("register_response"):
            token = self._store.snapshot().session_token
            if not isinstance(self.state, SignedIn) or not token:
                log.warning("Credential registration requires a signed-in session")
                return False

            try:
                result = self._api.register_response(token, credential)
            except AuthApiError as e:
                log.error("Cannot finish credential registration", error=str(e))
                return False

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return False

            def _mutate(s: PersistedSession) -> None:
                if result.session_token:
                    s.session_token = result.session_token
                s.local_credential_id = credential.get("id")

            self._store.edit(_mutate)
            log.info("Credential registered", credential_id=credential.get("id"))
            self._refresh_credentials()
            return True

    def register_with(self, provider: CredentialProvider) -> bool:
        """Runs the whole registration ceremony against `provider`."""
        with self._transition("register_with"):
            options = self.register_request()
            if options is None:
                return False
            try:
                credential = provider.create_credential(options)
            except CredentialProviderError as e:
                log.warning("Credential provider did not create a credential", error=str(e))
                return False
            return self.register_response(credential)

    # --------------- Credential sign-in ---------------
    def signin_request(self) -> Optional[Dict[str, Any]]:
        """
        Starts signing in with a credential: returns the server's request
        options for the credential provider. Only valid while `SigningIn`.
        """
        with self._transition("signin_request"):
            token = self._store.snapshot().session_token
            if not isinstance(self.state, SigningIn) or not token:
                log.warning("Credential sign-in requires a pending username")
                return None

            try:
                result = self._api.signin_request(token)
            except AuthApiError as e:
                log.error("Cannot start credential sign-in", error=str(e))
                return None

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return None

            if result.session_token:
                self._store.edit(lambda s: setattr(s, "session_token", result.session_token))
            return result.data

    def signin_response(self, credential: Dict[str, Any]) -> bool:
        """
        Finishes signing in with an assertion produced by the credential
        provider. On success the state proceeds to `SignedIn`.
        """
        with self._transition("signin_response"):
            session = self._store.snapshot()
            if not isinstance(self.state, SigningIn) or not session.has_session_token():
                log.warning("Credential sign-in requires a pending username")
                return False

            username = session.username
            try:
                result = self._api.signin_response(session.session_token, credential)
            except AuthApiValidationError as e:
                log.warning("Credential sign-in rejected", username=username, error=str(e))
                self._fail_sign_in(str(e) or INVALID_CREDENTIALS)
                return False
            except AuthApiTransportError as e:
                log.error("Cannot finish credential sign-in", error=str(e))
                return False

            if isinstance(result, SignedOutFromServer):
                self._force_sign_out()
                return False

            def _mutate(s: PersistedSession) -> None:
                if result.session_token:
                    s.session_token = result.session_token
                s.local_credential_id = credential.get("id")

            self._store.edit(_mutate)
            self._publish(SignedIn(username))
            self._refresh_credentials()
            return True

    def sign_in_with(self, provider: CredentialProvider) -> bool:
        """Runs the whole credential sign-in ceremony against `provider`."""
        with self._transition("sign_in_with"):
            options = self.signin_request()
            if options is None:
                return False
            try:
                credential = provider.get_credential(options)
            except CredentialProviderError as e:
                log.warning("Credential provider did not return a credential", error=str(e))
                return False
            return self.signin_response(credential)

    # --------------- Sign-out ---------------
    def sign_out(self) -> None:
        """Clears all sign-in information. The state proceeds to `SignedOut`."""
        with self._transition("sign_out"):
            self._store.edit(PersistedSession.clear_all)
            self._publish(SignedOut())

    def force_sign_out(self) -> None:
        """
        Same clearing as `sign_out()`, but publishes
        `SignInError("Signed out by server")` so observers can tell the user
        did not ask for it.
        """
        with self._transition("force_sign_out"):
            self._force_sign_out()

    def _force_sign_out(self) -> None:
        log.warning("Session revoked by server")
        self._store.edit(PersistedSession.clear_all)
        self._publish(SignInError(SIGNED_OUT_BY_SERVER))

    def _fail_sign_in(self, message: str) -> None:
        # start login over again
        self._store.edit(PersistedSession.clear_sign_in)
        self._publish(SignInError(message))

    def _publish(self, state: SignInState) -> None:
        log.info("Sign-in state changed", state=type(state).__name__)
        self._broadcast.publish(state)

    # --------------- Queries ---------------
    def is_signed_in(self) -> bool:
        session = self._store.snapshot()
        return session.has_username() and session.has_session_token()

    def current_username(self) -> Optional[str]:
        session = self._store.snapshot()
        return session.username if session.has_username() else None

    def credentials(self) -> List[Credential]:
        return self._store.snapshot().credentials

    def local_credential_id(self) -> Optional[str]:
        return self._store.snapshot().local_credential_id

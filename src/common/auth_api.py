from __future__ import annotations

import abc
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

import httpx
import structlog
from pydantic import ValidationError

from state.models import Credential, ordered_credentials


log = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 15.0
SESSION_COOKIE = "connect.sid"
ENV_API_BASE_URL = "AUTH_API_BASE_URL"

T = TypeVar("T")


class AuthApiError(RuntimeError):
    """Base error for the auth API client."""


class AuthApiValidationError(AuthApiError):
    """Server rejected the request, e.g. an unknown username or a wrong password."""


class AuthApiTransportError(AuthApiError):
    """Network, server-side or serialization failure; the same call may be retried."""


@dataclass(frozen=True)
class Success(Generic[T]):
    """Operation succeeded; `session_token` is set when the server rotated it."""

    session_token: Optional[str] = None
    data: Optional[T] = None


@dataclass(frozen=True)
class SignedOutFromServer:
    """Server invalidated the session; the caller must sign out locally."""


SIGNED_OUT_FROM_SERVER = SignedOutFromServer()

ApiResult = Union[Success[T], SignedOutFromServer]


class AuthApi(abc.ABC):
    """
    Contract for the remote authentication service.

    Every call returns `Success` or `SignedOutFromServer`; failures are raised
    as `AuthApiValidationError` or `AuthApiTransportError`.
    """

    @abc.abstractmethod
    def submit_username(self, username: str) -> ApiResult[None]:
        ...

    @abc.abstractmethod
    def submit_password(self, session_token: str, password: str) -> ApiResult[None]:
        ...

    @abc.abstractmethod
    def list_credentials(self, session_token: str) -> ApiResult[List[Credential]]:
        ...

    @abc.abstractmethod
    def remove_credential(self, session_token: str, credential_id: str) -> ApiResult[None]:
        ...

    @abc.abstractmethod
    def register_request(self, session_token: str) -> ApiResult[Dict[str, Any]]:
        """Fetch credential creation options (challenge, relying party, user)."""

    @abc.abstractmethod
    def register_response(self, session_token: str, credential: Dict[str, Any]) -> ApiResult[None]:
        """Submit the attestation produced by the credential provider."""

    @abc.abstractmethod
    def signin_request(self, session_token: str) -> ApiResult[Dict[str, Any]]:
        """Fetch credential request options (challenge, allowed credentials)."""

    @abc.abstractmethod
    def signin_response(self, session_token: str, credential: Dict[str, Any]) -> ApiResult[None]:
        """Submit the assertion produced by the credential provider."""


class HttpAuthApi(AuthApi):
    """
    JSON-over-HTTP client for a WebAuthn-style auth server.

    Notes
    - The session token is the `connect.sid` cookie. It is sent explicitly on
      each request and never kept in the client's cookie jar; a cookie set by
      a response is surfaced as `Success.session_token`.
    - HTTP 401 means the server no longer recognizes the session.
    - Network errors, 429 and 5xx are retried with exponential backoff. The
      session state machine itself never retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = 4,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)

    @classmethod
    def from_env(cls, env: Optional[dict] = None) -> "HttpAuthApi":
        env = os.environ if env is None else env
        base_url = env.get(ENV_API_BASE_URL)
        if not base_url:
            raise RuntimeError(f"Missing required configuration: {ENV_API_BASE_URL}")
        return cls(base_url)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpAuthApi":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def submit_username(self, username: str) -> ApiResult[None]:
        result = self._call("/auth/username", json_body={"username": username})
        if isinstance(result, SignedOutFromServer):
            return result
        token, _ = result
        if not token:
            raise AuthApiTransportError("Server did not issue a session cookie")
        return Success(session_token=token)

    def submit_password(self, session_token: str, password: str) -> ApiResult[None]:
        return self._simple("/auth/password", session_token, json_body={"password": password})

    def list_credentials(self, session_token: str) -> ApiResult[List[Credential]]:
        result = self._call("/auth/getKeys", session_token=session_token)
        if isinstance(result, SignedOutFromServer):
            return result
        token, body = result
        return Success(session_token=token, data=self._parse_credentials(body))

    def remove_credential(self, session_token: str, credential_id: str) -> ApiResult[None]:
        return self._simple(
            "/auth/removeKey", session_token, params={"credId": credential_id}
        )

    def register_request(self, session_token: str) -> ApiResult[Dict[str, Any]]:
        return self._options(
            "/auth/registerRequest",
            session_token,
            json_body={
                "attestation": "none",
                "authenticatorSelection": {
                    "authenticatorAttachment": "platform",
                    "residentKey": "required",
                    "userVerification": "required",
                },
            },
        )

    def register_response(self, session_token: str, credential: Dict[str, Any]) -> ApiResult[None]:
        return self._simple("/auth/registerResponse", session_token, json_body=credential)

    def signin_request(self, session_token: str) -> ApiResult[Dict[str, Any]]:
        return self._options("/auth/signinRequest", session_token, json_body={})

    def signin_response(self, session_token: str, credential: Dict[str, Any]) -> ApiResult[None]:
        return self._simple("/auth/signinResponse", session_token, json_body=credential)

    # --------------- Internal ---------------
    def _simple(self, path: str, session_token: str, **kwargs: Any) -> ApiResult[None]:
        result = self._call(path, session_token=session_token, **kwargs)
        if isinstance(result, SignedOutFromServer):
            return result
        token, _ = result
        return Success(session_token=token)

    def _options(self, path: str, session_token: str, **kwargs: Any) -> ApiResult[Dict[str, Any]]:
        result = self._call(path, session_token=session_token, **kwargs)
        if isinstance(result, SignedOutFromServer):
            return result
        token, body = result
        if not isinstance(body, dict):
            raise AuthApiTransportError(f"Expected a JSON object from {path}")
        return Success(session_token=token, data=body)

    def _call(
        self,
        path: str,
        *,
        session_token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Union[tuple, SignedOutFromServer]:
        """POST to `path`; returns (rotated_token, body) or SIGNED_OUT_FROM_SERVER."""
        headers = {"X-Requested-With": "XMLHttpRequest"}
        if session_token:
            headers["Cookie"] = f"{SESSION_COOKIE}={session_token}"

        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(
                    f"{self._base_url}{path}", json=json_body or {}, params=params, headers=headers
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                # Never let a session leak into the next call via the jar
                self._client.cookies.clear()

                if resp.status_code == 200:
                    token = resp.cookies.get(SESSION_COOKIE)
                    if not resp.content:
                        return (token, None)
                    try:
                        return (token, resp.json())
                    except ValueError as exc:
                        raise AuthApiTransportError(f"Failed to parse JSON from {path}") from exc

                if resp.status_code == 401:
                    return SIGNED_OUT_FROM_SERVER

                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = AuthApiTransportError(f"HTTP {resp.status_code} from {path}")
                else:
                    raise AuthApiValidationError(self._error_message(resp))

            attempt += 1
            if attempt < self._max_attempts:
                log.info("Retrying auth request", path=path, attempt=attempt, delay=backoff)
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        raise AuthApiTransportError(f"Failed request to {path} after {attempt} attempts") from last_exc

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
            return body["error"]
        text = resp.text[:200] if resp.text else ""
        return f"HTTP {resp.status_code}: {text}" if text else f"HTTP {resp.status_code}"

    @staticmethod
    def _parse_credentials(body: Any) -> List[Credential]:
        # Server replies with { username, credentials: [{credId, publicKey}, ...] }
        if isinstance(body, dict):
            items = body.get("credentials", [])
        else:
            items = body
        if not isinstance(items, list):
            raise AuthApiTransportError("Credential list missing in payload")
        try:
            return ordered_credentials(Credential.model_validate(item) for item in items)
        except ValidationError as ve:
            raise AuthApiTransportError(f"Failed to parse credential list: {ve}") from ve


__all__ = [
    "ApiResult",
    "AuthApi",
    "AuthApiError",
    "AuthApiTransportError",
    "AuthApiValidationError",
    "HttpAuthApi",
    "SIGNED_OUT_FROM_SERVER",
    "SignedOutFromServer",
    "Success",
]

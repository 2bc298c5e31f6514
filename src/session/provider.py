from __future__ import annotations

from typing import Any, Dict, Protocol


class CredentialProviderError(RuntimeError):
    """The provider could not produce a credential (user cancelled, no authenticator, ...)."""


class CredentialProvider(Protocol):
    """
    Platform capability that creates and exercises public-key credentials.

    Both calls receive the options payload exactly as the server produced it
    and return the provider's credential artifact as a JSON-compatible dict
    (WebAuthn `PublicKeyCredential` shape, `id` required). The session core
    passes the artifact through to the server without interpreting it.
    """

    def create_credential(self, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def get_credential(self, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

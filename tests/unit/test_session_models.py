from __future__ import annotations

import pytest
from pydantic import ValidationError

from state.models import Credential, PersistedSession, SessionKey, ordered_credentials
from session.states import SignedIn, SignedOut, SigningIn, derive_state


def test_token_without_username_is_rejected():
    with pytest.raises(ValidationError):
        PersistedSession(session_token="tok")


def test_credentials_sorted_by_order_on_load():
    raw = {
        "username": "alice",
        "session_token": "tok",
        "credentials": [
            {"id": "c", "public_key": "pk-c", "order": 2},
            {"id": "a", "public_key": "pk-a", "order": 0},
            {"id": "b", "public_key": "pk-b", "order": 1},
        ],
    }
    session = PersistedSession.model_validate(raw)
    assert [c.id for c in session.credentials] == ["a", "b", "c"]


def test_credential_accepts_server_field_names():
    cred = Credential.model_validate({"credId": "c1", "publicKey": "pk"})
    assert cred.id == "c1"
    assert cred.public_key == "pk"


def test_ordered_credentials_stamps_listing_position():
    creds = ordered_credentials([Credential(id="x", order=9), Credential(id="y", order=3)])
    assert [(c.id, c.order) for c in creds] == [("x", 0), ("y", 1)]


def test_get_by_session_key():
    session = PersistedSession(username="alice", local_credential_id="c1")
    assert session.get(SessionKey.USERNAME) == "alice"
    assert session.get(SessionKey.SESSION_TOKEN) is None
    assert session.get(SessionKey.LOCAL_CREDENTIAL_ID) == "c1"
    assert session.get(SessionKey.CREDENTIALS) == []


@pytest.mark.parametrize(
    "session, expected",
    [
        (PersistedSession(), SignedOut()),
        (PersistedSession(username="   "), SignedOut()),
        (PersistedSession(username="alice"), SigningIn("alice")),
        (PersistedSession(username="alice", session_token=""), SigningIn("alice")),
        (PersistedSession(username="alice", session_token="tok"), SignedIn("alice")),
    ],
)
def test_derive_state(session, expected):
    assert derive_state(session) == expected


def test_clear_sign_in_keeps_local_credential_id():
    session = PersistedSession(
        username="alice",
        session_token="tok",
        credentials=[Credential(id="c1")],
        local_credential_id="c1",
    )
    session.clear_sign_in()
    assert session.username is None
    assert session.session_token is None
    assert session.credentials == []
    assert session.local_credential_id == "c1"

    session.clear_all()
    assert session.local_credential_id is None

import pytest
from jose import jwt

from app.core.exceptions import UnauthorizedError
from app.core.security import (
    bearer_token,
    create_access_token,
    create_session_token,
    decode_access_token,
    hash_password,
    load_session_token,
    verify_password,
)


def test_access_token_round_trip_claims():
    issued = create_access_token("u1", "u1@example.com", "admin")
    assert issued["expires_in"] == "30m"
    payload = decode_access_token(issued["token"])
    assert payload["sub"] == "u1"
    assert payload["role"] == "admin"
    assert payload["exp"] - payload["iat"] == 30 * 60


def test_expired_token_rejected_unless_allowed(expired_token):
    token = expired_token()
    with pytest.raises(UnauthorizedError, match="expired"):
        decode_access_token(token)
    assert decode_access_token(token, allow_expired=True)["sub"] == "u1"


def test_foreign_signature_rejected_even_when_expiry_ignored():
    forged = jwt.encode({"sub": "u1", "type": "access"}, "some-other-key", algorithm="HS256")
    with pytest.raises(UnauthorizedError):
        decode_access_token(forged, allow_expired=True)


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None


def test_password_hash_verify():
    stored = hash_password("s3cret!")
    assert stored.startswith("pbkdf2_sha256$")
    assert verify_password("s3cret!", stored)
    assert not verify_password("wrong", stored)
    assert not verify_password("s3cret!", None)
    assert not verify_password("s3cret!", "garbage")


def test_password_hash_is_salted():
    assert hash_password("same") != hash_password("same")


def test_session_token_round_trip_and_tamper():
    value = create_session_token({"uid": "u1", "session_version": 2})
    assert load_session_token(value) == {"uid": "u1", "session_version": 2}
    assert load_session_token(value + "x") is None

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from paywall.app.access import (
    CredentialClaims,
    InvalidCredentialError,
    JWTCredentialDecoder,
    create_access_token,
    parse_bearer_token,
    resolve_claims,
)
from paywall.app.purchases import UserRole

SECRET = "test-secret"


def test_decoder_reads_subject_and_role():
    token = create_access_token(subject="42", role=UserRole.ADMIN, secret_key=SECRET)

    claims = JWTCredentialDecoder(SECRET).decode(token)

    assert claims == CredentialClaims(subject_user_id="42", role=UserRole.ADMIN)
    assert claims.is_admin


def test_decoder_accepts_prefixed_role_names():
    token = jwt.encode({"sub": "7", "role": "ROLE_USER"}, SECRET, algorithm="HS256")

    assert JWTCredentialDecoder(SECRET).decode(token).role == UserRole.USER


@pytest.mark.parametrize(
    "payload",
    [
        {"role": "user"},
        {"sub": "", "role": "user"},
        {"sub": "7"},
        {"sub": "7", "role": "superuser"},
    ],
)
def test_decoder_rejects_incomplete_claims(payload):
    token = jwt.encode(payload, SECRET, algorithm="HS256")

    with pytest.raises(InvalidCredentialError):
        JWTCredentialDecoder(SECRET).decode(token)


def test_resolve_claims_fails_closed():
    decoder = JWTCredentialDecoder(SECRET)
    expired = create_access_token(
        subject="1", role=UserRole.USER, secret_key=SECRET, expires_delta=timedelta(seconds=-5)
    )
    forged = create_access_token(subject="1", role=UserRole.ADMIN, secret_key="other-secret")

    assert resolve_claims(decoder, None) is None
    assert resolve_claims(decoder, "") is None
    assert resolve_claims(decoder, "not-a-jwt") is None
    assert resolve_claims(decoder, expired) is None
    assert resolve_claims(decoder, forged) is None


def test_resolve_claims_treats_unexpected_errors_as_unauthenticated():
    class ExplodingDecoder:
        def decode(self, token: str) -> CredentialClaims:
            raise RuntimeError("boom")

    assert resolve_claims(ExplodingDecoder(), "token") is None


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc.def", "abc.def"),
        ("bearer   abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_bearer_token(header, expected):
    assert parse_bearer_token(header) == expected


def test_decoder_requires_secret():
    with pytest.raises(ValueError):
        JWTCredentialDecoder("")

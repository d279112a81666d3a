"""Decoding bearer credentials into trusted claims."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict

from ..purchases.models import UserRole

logger = logging.getLogger("paywall.access")


class InvalidCredentialError(Exception):
    """The presented credential could not be decoded into claims."""


class CredentialClaims(BaseModel):
    """Decoded, trusted attributes of the caller."""

    subject_user_id: str
    role: UserRole

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class CredentialDecoder(Protocol):
    def decode(self, token: str) -> CredentialClaims:
        ...


class JWTCredentialDecoder:
    """Validates JWTs issued by the credential service."""

    def __init__(self, secret_key: str, *, algorithm: str = "HS256") -> None:
        if not secret_key:
            raise ValueError("secret_key must be provided")
        self._secret_key = secret_key
        self._algorithm = algorithm

    def decode(self, token: str) -> CredentialClaims:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise InvalidCredentialError("Credential signature or expiry is invalid") from exc

        subject = payload.get("sub")
        if subject is None or str(subject).strip() == "":
            raise InvalidCredentialError("Credential has no subject")
        try:
            role = UserRole.parse(payload.get("role"))
        except ValueError as exc:
            raise InvalidCredentialError("Credential carries an unknown role") from exc
        return CredentialClaims(subject_user_id=str(subject), role=role)


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer`` header value."""

    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_claims(decoder: CredentialDecoder, token: Optional[str]) -> Optional[CredentialClaims]:
    """Return claims for ``token`` or ``None``; any failure counts as unauthenticated."""

    if not token:
        return None
    try:
        return decoder.decode(token)
    except InvalidCredentialError as exc:
        logger.debug("Rejected credential: %s", exc)
        return None
    except Exception:
        logger.exception("Unexpected error while decoding credential")
        return None


def create_access_token(
    *,
    subject: str,
    role: UserRole,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Issue a token in the credential service's format (development and tests only)."""

    if expires_delta is None:
        expires_delta = timedelta(hours=1)
    payload = {
        "sub": subject,
        "role": role.value,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


__all__ = [
    "CredentialClaims",
    "CredentialDecoder",
    "InvalidCredentialError",
    "JWTCredentialDecoder",
    "create_access_token",
    "parse_bearer_token",
    "resolve_claims",
]

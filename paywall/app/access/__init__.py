"""Credential claims and the access control gate."""
from .cache import InMemoryOwnershipCache, OwnershipCache, OwnershipReader
from .context import OPERATION_CLASSES, AccessContext, Operation, OperationClass
from .credentials import (
    CredentialClaims,
    CredentialDecoder,
    InvalidCredentialError,
    JWTCredentialDecoder,
    create_access_token,
    parse_bearer_token,
    resolve_claims,
)
from .gate import AccessControlGate, AccessDecision, DenialReason

__all__ = [
    "AccessContext",
    "AccessControlGate",
    "AccessDecision",
    "CredentialClaims",
    "CredentialDecoder",
    "DenialReason",
    "InMemoryOwnershipCache",
    "InvalidCredentialError",
    "JWTCredentialDecoder",
    "OPERATION_CLASSES",
    "Operation",
    "OperationClass",
    "OwnershipCache",
    "OwnershipReader",
    "create_access_token",
    "parse_bearer_token",
    "resolve_claims",
]

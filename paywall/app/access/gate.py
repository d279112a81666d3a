"""Access control decisions for protected operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..purchases.errors import ForbiddenError, UnauthenticatedError
from .cache import OwnershipLookup
from .context import AccessContext, OperationClass

logger = logging.getLogger("paywall.access")


class DenialReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NOT_OWNED = "not_owned"
    ADMIN_REQUIRED = "admin_required"
    MISSING_RESOURCE = "missing_resource"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[DenialReason] = None

    @classmethod
    def allow(cls) -> "AccessDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenialReason) -> "AccessDecision":
        return cls(allowed=False, reason=reason)


class AccessControlGate:
    """Evaluates the role/ownership decision table for one request.

    | role    | operation class  | rule                                |
    |---------|------------------|-------------------------------------|
    | ADMIN   | any              | allow                               |
    | USER    | role only        | allow                               |
    | USER    | ownership gated  | allow iff the user owns the material |
    | USER    | admin only       | forbidden                           |
    | (none)  | any              | unauthenticated                     |

    Ownership is read through ``ownership`` on every call.
    """

    def __init__(self, ownership: OwnershipLookup) -> None:
        self._ownership = ownership

    def evaluate(self, context: AccessContext) -> AccessDecision:
        claims = context.claims
        if claims is None:
            return AccessDecision.deny(DenialReason.UNAUTHENTICATED)
        if claims.is_admin:
            return AccessDecision.allow()

        operation_class = context.operation.operation_class
        if operation_class == OperationClass.ROLE_ONLY:
            return AccessDecision.allow()
        if operation_class == OperationClass.ADMIN_ONLY:
            return AccessDecision.deny(DenialReason.ADMIN_REQUIRED)

        if not context.material_id:
            return AccessDecision.deny(DenialReason.MISSING_RESOURCE)
        if self._ownership.is_owned(claims.subject_user_id, context.material_id):
            return AccessDecision.allow()
        return AccessDecision.deny(DenialReason.NOT_OWNED)

    def authorize(self, context: AccessContext) -> None:
        """Raise unless ``context`` is allowed."""

        decision = self.evaluate(context)
        if decision.allowed:
            return
        if decision.reason == DenialReason.UNAUTHENTICATED:
            raise UnauthenticatedError("Not authenticated")

        subject = context.claims.subject_user_id if context.claims else None
        logger.info(
            "Denied %s for user=%s material=%s reason=%s",
            context.operation.value,
            subject,
            context.material_id,
            decision.reason.value,
        )
        if decision.reason == DenialReason.NOT_OWNED:
            message = "Material must be purchased before it can be downloaded"
        elif decision.reason == DenialReason.ADMIN_REQUIRED:
            message = "Administrator role required"
        else:
            message = "Access denied"
        raise ForbiddenError(message, detail={"reason": decision.reason.value})


__all__ = ["AccessControlGate", "AccessDecision", "DenialReason"]

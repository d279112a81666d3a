"""Domain errors raised by the purchase, gateway, and access layers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status

if TYPE_CHECKING:  # pragma: no cover
    from .models import Purchase


@dataclass(eq=False)
class PaywallError(Exception):
    """Base class for actionable failures surfaced to API callers."""

    message: str
    detail: Optional[Mapping[str, Any]] = None

    code: ClassVar[str] = "paywall_error"
    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        return base_detail

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass(eq=False)
class NotFoundError(PaywallError):
    """A user, material, purchase, or gateway transaction does not exist."""

    code: ClassVar[str] = "not_found"
    status_code: ClassVar[int] = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class AlreadyOwnedError(PaywallError):
    code: ClassVar[str] = "already_owned"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class AlreadyPendingError(PaywallError):
    code: ClassVar[str] = "already_pending"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class GatewayError(PaywallError):
    """The payment gateway rejected or failed a request.

    ``retryable`` is ``True`` for transient conditions (network failures,
    timeouts, rate limiting, 5xx responses) where the client may retry the
    purchase, and ``False`` for requests the gateway will keep rejecting.
    """

    retryable: bool = False

    code: ClassVar[str] = "gateway_error"
    status_code: ClassVar[int] = status.HTTP_502_BAD_GATEWAY

    @property
    def payload(self) -> Mapping[str, Any]:
        base_detail = dict(super().payload)
        base_detail["retryable"] = self.retryable
        return base_detail


@dataclass(eq=False)
class PaymentFailedError(PaywallError):
    """The gateway reported the payment as failed or canceled."""

    purchase: Optional["Purchase"] = None

    code: ClassVar[str] = "payment_failed"
    status_code: ClassVar[int] = status.HTTP_402_PAYMENT_REQUIRED


@dataclass(eq=False)
class UnauthenticatedError(PaywallError):
    code: ClassVar[str] = "unauthenticated"
    status_code: ClassVar[int] = status.HTTP_401_UNAUTHORIZED


@dataclass(eq=False)
class ForbiddenError(PaywallError):
    code: ClassVar[str] = "forbidden"
    status_code: ClassVar[int] = status.HTTP_403_FORBIDDEN


@dataclass(eq=False)
class InconsistentStateError(PaywallError):
    """A status change would move a purchase backwards in its lifecycle."""

    code: ClassVar[str] = "inconsistent_state"
    status_code: ClassVar[int] = status.HTTP_409_CONFLICT


__all__ = [
    "AlreadyOwnedError",
    "AlreadyPendingError",
    "ForbiddenError",
    "GatewayError",
    "InconsistentStateError",
    "NotFoundError",
    "PaymentFailedError",
    "PaywallError",
    "UnauthenticatedError",
]

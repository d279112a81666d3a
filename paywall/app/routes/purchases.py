"""API routes for purchasing materials and purchase history."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status

from ... import app_context
from ..access import AccessContext, CredentialClaims, Operation
from ..purchases import NotFoundError, PaywallError
from ..schemas.purchases import (
    ConfirmPurchaseRequest,
    ConfirmPurchaseResponse,
    InitiatedPurchaseResponse,
    PurchaseListResponse,
    PurchaseRequest,
    PurchaseSummary,
)
from ..services.purchases import get_access_gate, get_purchase_orchestrator


def _get_claims(authorization: Optional[str] = Header(None)) -> Optional[CredentialClaims]:
    return app_context.get_credential_claims(authorization=authorization)


router = APIRouter(prefix="/api", tags=["purchases"])


@router.post("/purchases", response_model=InitiatedPurchaseResponse, status_code=status.HTTP_201_CREATED)
def initiate_purchase(
    payload: PurchaseRequest,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> InitiatedPurchaseResponse:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.INITIATE_PURCHASE))
        purchase = orchestrator.initiate(claims.subject_user_id, payload.material_id)
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return InitiatedPurchaseResponse.from_purchase(purchase)


@router.post("/purchases/confirm", response_model=ConfirmPurchaseResponse)
def confirm_purchase(
    payload: ConfirmPurchaseRequest,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> ConfirmPurchaseResponse:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.CONFIRM_PURCHASE))
        owner = None if claims.is_admin else claims.subject_user_id
        result = orchestrator.confirm(payload.transaction_id, user_id=owner)
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return ConfirmPurchaseResponse.from_result(result)


@router.get("/purchases", response_model=PurchaseListResponse)
def list_my_purchases(
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> PurchaseListResponse:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.LIST_OWN_PURCHASES))
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseListResponse.from_purchases(orchestrator.list_user_purchases(claims.subject_user_id))


@router.get("/purchases/{purchase_id}", response_model=PurchaseSummary)
def get_purchase(
    purchase_id: str,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> PurchaseSummary:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.VIEW_PURCHASE))
        purchase = orchestrator.get_purchase(purchase_id)
        if not claims.is_admin and purchase.user_id != claims.subject_user_id:
            raise NotFoundError(f"Purchase {purchase_id} not found", detail={"purchase_id": purchase_id})
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseSummary.from_purchase(purchase)


@router.get("/admin/purchases", response_model=PurchaseListResponse)
def list_all_purchases(
    limit: int = Query(500, ge=1, le=5000),
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> PurchaseListResponse:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.LIST_ALL_PURCHASES))
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseListResponse.from_purchases(orchestrator.list_all_purchases(limit=limit))


@router.post("/admin/purchases/expire-pending", response_model=PurchaseListResponse)
def expire_pending_purchases(
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> PurchaseListResponse:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.EXPIRE_PENDING))
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseListResponse.from_purchases(orchestrator.expire_stale_pending())


@router.post("/admin/purchases/{purchase_id}/refund", response_model=PurchaseSummary)
def refund_purchase(
    purchase_id: str,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> PurchaseSummary:
    gate = get_access_gate()
    orchestrator = get_purchase_orchestrator()
    try:
        gate.authorize(AccessContext(claims, Operation.REFUND_PURCHASE))
        purchase = orchestrator.refund(purchase_id)
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseSummary.from_purchase(purchase)

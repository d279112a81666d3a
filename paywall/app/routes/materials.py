"""API routes for browsing materials and downloading owned content."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from ... import app_context
from ..access import AccessContext, CredentialClaims, Operation
from ..purchases import NotFoundError, PaywallError
from ..schemas.purchases import MaterialListResponse, MaterialSummary, OwnershipResponse
from ..services.purchases import (
    get_access_gate,
    get_content_store,
    get_material_catalog,
    get_purchase_orchestrator,
)

logger = logging.getLogger("paywall.access")


def _get_claims(authorization: Optional[str] = Header(None)) -> Optional[CredentialClaims]:
    return app_context.get_credential_claims(authorization=authorization)


router = APIRouter(prefix="/api/materials", tags=["materials"])


@router.get("", response_model=MaterialListResponse)
def browse_materials(
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> MaterialListResponse:
    gate = get_access_gate()
    try:
        gate.authorize(AccessContext(claims, Operation.LIST_MATERIALS))
    except PaywallError as exc:
        raise exc.to_http_exception() from exc

    orchestrator = get_purchase_orchestrator()
    materials = get_material_catalog().list_materials()
    return MaterialListResponse(
        materials=[
            MaterialSummary.from_material(
                material,
                owned=orchestrator.is_owned(claims.subject_user_id, material.material_id),
            )
            for material in materials
        ]
    )


@router.get("/{material_id}/owned", response_model=OwnershipResponse)
def check_ownership(
    material_id: str,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> OwnershipResponse:
    gate = get_access_gate()
    try:
        gate.authorize(AccessContext(claims, Operation.CHECK_OWNERSHIP, material_id))
    except PaywallError as exc:
        raise exc.to_http_exception() from exc
    owned = get_purchase_orchestrator().is_owned(claims.subject_user_id, material_id)
    return OwnershipResponse(material_id=material_id, owned=owned)


@router.get("/{material_id}/content")
def download_content(
    material_id: str,
    *,
    claims: Optional[CredentialClaims] = Depends(_get_claims),
) -> Response:
    gate = get_access_gate()
    try:
        gate.authorize(AccessContext(claims, Operation.DOWNLOAD_CONTENT, material_id))
        material = get_material_catalog().get_material(material_id)
        if material is None:
            raise NotFoundError(f"Material {material_id} not found", detail={"material_id": material_id})
    except PaywallError as exc:
        raise exc.to_http_exception() from exc

    try:
        content = get_content_store().read(material.content_ref)
    except (FileNotFoundError, ValueError) as exc:
        logger.error("Content for material %s is unavailable: %s", material_id, exc)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Material content is unavailable"},
        ) from exc

    return Response(
        content=content,
        media_type=material.content_type,
        headers={"Content-Disposition": f'attachment; filename="{material.download_name}"'},
    )

"""API schemas for purchase, material, and payment endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..purchases import ConfirmationOutcome, ConfirmationResult, Material, Purchase, PurchaseStatus


class PurchaseRequest(BaseModel):
    material_id: str = Field(alias="materialId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ConfirmPurchaseRequest(BaseModel):
    transaction_id: str = Field(alias="transactionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PurchaseSummary(BaseModel):
    purchase_id: str = Field(alias="purchaseId")
    user_id: str = Field(alias="userId")
    material_id: str = Field(alias="materialId")
    amount: Decimal
    currency: str
    status: PurchaseStatus
    transaction_id: Optional[str] = Field(alias="transactionId", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_purchase(cls, purchase: Purchase) -> "PurchaseSummary":
        return cls(
            purchase_id=purchase.purchase_id,
            user_id=purchase.user_id,
            material_id=purchase.material_id,
            amount=purchase.price_charged,
            currency=purchase.currency,
            status=purchase.status,
            transaction_id=purchase.external_transaction_id,
            created_at=purchase.created_at,
            updated_at=purchase.updated_at,
        )


class InitiatedPurchaseResponse(PurchaseSummary):
    """Returned once; carries the secret the client needs to pay the gateway directly."""

    client_secret: Optional[str] = Field(alias="clientSecret", default=None)

    @classmethod
    def from_purchase(cls, purchase: Purchase) -> "InitiatedPurchaseResponse":
        summary = PurchaseSummary.from_purchase(purchase)
        return cls(**summary.model_dump(), client_secret=purchase.external_client_secret)


class ConfirmPurchaseResponse(BaseModel):
    purchase: PurchaseSummary
    outcome: ConfirmationOutcome
    replayed: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ConfirmationResult) -> "ConfirmPurchaseResponse":
        return cls(
            purchase=PurchaseSummary.from_purchase(result.purchase),
            outcome=result.outcome,
            replayed=result.replayed,
        )


class PurchaseListResponse(BaseModel):
    purchases: List[PurchaseSummary]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_purchases(cls, purchases) -> "PurchaseListResponse":
        return cls(purchases=[PurchaseSummary.from_purchase(p) for p in purchases])


class OwnershipResponse(BaseModel):
    material_id: str = Field(alias="materialId")
    owned: bool

    model_config = ConfigDict(populate_by_name=True)


class MaterialSummary(BaseModel):
    material_id: str = Field(alias="materialId")
    title: str
    price: Decimal
    owned: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_material(cls, material: Material, *, owned: bool) -> "MaterialSummary":
        return cls(material_id=material.material_id, title=material.title, price=material.price, owned=owned)


class MaterialListResponse(BaseModel):
    materials: List[MaterialSummary]

    model_config = ConfigDict(populate_by_name=True)


class PaymentConfigResponse(BaseModel):
    publishable_key: Optional[str] = Field(alias="publishableKey", default=None)
    currency: str
    gateway: str

    model_config = ConfigDict(populate_by_name=True)

"""Payment gateway facing routes: client configuration and webhooks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from ...app_context import get_config
from ..purchases import GatewayError, NotFoundError, PaymentFailedError
from ..schemas.purchases import PaymentConfigResponse
from ..services.purchases import get_purchase_orchestrator, get_webhook_verifier

logger = logging.getLogger("paywall.gateway")

router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.get("/config", response_model=PaymentConfigResponse)
def read_payment_config() -> PaymentConfigResponse:
    config = get_config()
    return PaymentConfigResponse(
        publishable_key=config.stripe_publishable_key,
        currency=config.currency,
        gateway=config.payment_gateway,
    )


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> Response:
    verifier = get_webhook_verifier()
    if verifier is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhooks are not configured")

    payload = await request.body()
    try:
        transaction_id = verifier.transaction_id_from(payload, stripe_signature)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if transaction_id is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    orchestrator = get_purchase_orchestrator()
    try:
        result = await run_in_threadpool(orchestrator.confirm, transaction_id)
    except NotFoundError:
        logger.info("Webhook for unknown transaction %s ignored", transaction_id)
    except PaymentFailedError:
        logger.info("Webhook recorded failed payment for transaction %s", transaction_id)
    except GatewayError as exc:
        if exc.retryable:
            # Non-2xx makes the gateway redeliver later.
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message) from exc
        logger.warning("Webhook reconciliation for %s failed: %s", transaction_id, exc.message)
    else:
        logger.info(
            "Webhook reconciled transaction %s outcome=%s replayed=%s",
            transaction_id,
            result.outcome.value,
            result.replayed,
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)

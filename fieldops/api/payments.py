"""Payment authorization API."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from fieldops.dependencies import get_payment_manager, require_service_key
from fieldops.schemas import (
    PaymentAuthorizationRead, PaymentAuthorizeRequest, PaymentAuthorizeResponse,
    PaymentCancelResponse, PaymentCaptureRequest, PaymentIncrementRequest, PaymentIncrementResponse,
    PaymentStatusRead,
)
from fieldops.services.payments import PaymentAuthorizationManager

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/authorize", response_model=PaymentAuthorizeResponse)
async def authorize_payment(
    body: PaymentAuthorizeRequest,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    result = await payments.authorize(body.intervention_id, body.amount, body.currency, body.customer_email)
    return PaymentAuthorizeResponse(
        authorization=PaymentAuthorizationRead.model_validate(result.authorization),
        client_secret=result.client_secret,
    )


@router.post("/{intervention_id}/cancel", response_model=PaymentCancelResponse)
async def cancel_payment(
    intervention_id: str,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    result = await payments.cancel(intervention_id)
    return PaymentCancelResponse(
        cancelled=result.cancelled,
        authorization_id=result.authorization_id,
        provider_cancelled=result.provider_cancelled,
        message=result.message,
    )


@router.post(
    "/{intervention_id}/capture",
    response_model=PaymentAuthorizationRead,
    dependencies=[Depends(require_service_key)],
)
async def capture_payment(
    intervention_id: str,
    body: PaymentCaptureRequest | None = None,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    return await payments.capture(intervention_id, body.amount if body else None)


@router.post(
    "/{intervention_id}/increment",
    response_model=PaymentIncrementResponse,
    dependencies=[Depends(require_service_key)],
)
async def increment_payment(
    intervention_id: str,
    body: PaymentIncrementRequest,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    result = await payments.increment(intervention_id, body.amount)
    return PaymentIncrementResponse(
        method=result.method,
        authorization=PaymentAuthorizationRead.model_validate(result.authorization),
        message=result.message,
    )


@router.get("/{intervention_id}/status", response_model=PaymentStatusRead)
async def payment_status(
    intervention_id: str,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    result = await payments.sync_status(intervention_id)
    return PaymentStatusRead(
        authorization=PaymentAuthorizationRead.model_validate(result.authorization),
        provider_status=result.provider_status,
        provider_authorized=result.provider_authorized,
        changed=result.changed,
    )


@router.get("/{intervention_id}", response_model=PaymentAuthorizationRead)
async def get_payment(
    intervention_id: str,
    payments: PaymentAuthorizationManager = Depends(get_payment_manager),
):
    return await payments.latest(intervention_id)

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any
from pydantic import BaseModel, Field


class PaymentAuthorizeRequest(BaseModel):
    intervention_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    customer_email: str = Field(min_length=3)


class PaymentCaptureRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)


class PaymentAuthorizationRead(BaseModel):
    id: str
    intervention_id: str
    amount: Decimal
    currency: str
    status: str  # pending | authorized | captured | cancelled | failed
    provider_payment_id: str | None = None
    provider_customer_id: str | None = None
    captured_amount: Decimal | None = None
    details: dict[str, Any] = {}
    created_at: datetime
    authorized_at: datetime | None = None
    captured_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class PaymentAuthorizeResponse(BaseModel):
    authorization: PaymentAuthorizationRead
    client_secret: str | None = None


class PaymentCancelResponse(BaseModel):
    success: bool = True
    cancelled: bool
    authorization_id: str | None = None
    provider_cancelled: bool = False
    message: str = ""


class PaymentIncrementRequest(BaseModel):
    amount: Decimal = Field(gt=0)


class PaymentIncrementResponse(BaseModel):
    success: bool = True
    method: str  # increment | deferred
    authorization: PaymentAuthorizationRead
    message: str = ""


class PaymentStatusRead(BaseModel):
    authorization: PaymentAuthorizationRead
    provider_status: str | None = None
    provider_authorized: bool = False
    changed: bool = False

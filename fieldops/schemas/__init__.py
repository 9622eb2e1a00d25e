"""Pydantic request/response schemas."""

from fieldops.schemas.events import ChangeEvent
from fieldops.schemas.technician import TechnicianCreate, TechnicianRead
from fieldops.schemas.intervention import (
    InterventionCreate, InterventionRead, InterventionCancel, InterventionStatusUpdate,
)
from fieldops.schemas.dispatch import (
    TechnicianAction, DispatchAttemptRead, DispatchResultRead, ScanResultRead, ScanReportRead,
)
from fieldops.schemas.payment import (
    PaymentAuthorizeRequest, PaymentCaptureRequest, PaymentAuthorizationRead,
    PaymentAuthorizeResponse, PaymentCancelResponse, PaymentIncrementRequest, PaymentIncrementResponse,
    PaymentStatusRead,
)

__all__ = [
    "ChangeEvent",
    "TechnicianCreate", "TechnicianRead",
    "InterventionCreate", "InterventionRead", "InterventionCancel", "InterventionStatusUpdate",
    "TechnicianAction", "DispatchAttemptRead", "DispatchResultRead", "ScanResultRead", "ScanReportRead",
    "PaymentAuthorizeRequest", "PaymentCaptureRequest", "PaymentAuthorizationRead",
    "PaymentAuthorizeResponse", "PaymentCancelResponse", "PaymentIncrementRequest", "PaymentIncrementResponse",
    "PaymentStatusRead",
]

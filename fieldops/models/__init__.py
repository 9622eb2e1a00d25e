"""SQLAlchemy ORM models.

Intervention is the aggregate root; dispatch attempts and payment
authorizations are owned by it but persisted independently for history.
"""

from fieldops.models.base import Base
from fieldops.models.technician import Technician
from fieldops.models.intervention import Intervention
from fieldops.models.dispatch_attempt import DispatchAttempt
from fieldops.models.payment_authorization import PaymentAuthorization

__all__ = [
    "Base", "Technician", "Intervention", "DispatchAttempt", "PaymentAuthorization",
]

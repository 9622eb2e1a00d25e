"""Payment provider abstraction with a Stripe adapter.

Holds are PaymentIntents created with ``capture_method="manual"``: funds
are reserved on the card and only move when the intent is captured.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

import stripe

from fieldops.config import PaymentConfig, get_settings
from fieldops.errors import ProviderError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Euros to cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class ProviderAuthorization:
    provider_payment_id: str
    client_secret: str | None = None
    status: str | None = None
    amount_minor: int | None = None


def _from_intent(intent) -> ProviderAuthorization:
    return ProviderAuthorization(
        provider_payment_id=intent.id,
        client_secret=getattr(intent, "client_secret", None),
        status=intent.status,
        amount_minor=getattr(intent, "amount", None),
    )


class PaymentProvider(ABC):
    """Interface the payment authorization manager depends on."""

    @abstractmethod
    async def find_customer_by_email(self, email: str) -> str | None:
        ...

    @abstractmethod
    async def create_customer(self, email: str) -> str:
        ...

    @abstractmethod
    async def create_authorization(
        self, customer_id: str, amount_minor: int, currency: str, metadata: dict[str, str]
    ) -> ProviderAuthorization:
        ...

    @abstractmethod
    async def cancel_authorization(self, provider_payment_id: str) -> None:
        """Release a hold. May raise if the hold is already terminal."""
        ...

    @abstractmethod
    async def capture_authorization(self, provider_payment_id: str, amount_minor: int) -> None:
        ...

    @abstractmethod
    async def retrieve_authorization(self, provider_payment_id: str) -> ProviderAuthorization:
        ...

    @abstractmethod
    async def increment_authorization(self, provider_payment_id: str, amount_minor: int) -> ProviderAuthorization:
        """Raise the held total to ``amount_minor``. Not every card supports this."""
        ...


class StripeProvider(PaymentProvider):
    """Stripe PaymentIntents. SDK calls are blocking, so they run in a worker thread."""

    _TRANSIENT = (stripe.APIConnectionError, stripe.RateLimitError)

    def __init__(self, config: PaymentConfig | None = None):
        self.config = config or get_settings().payments

    async def _call(self, fn, *args, **kwargs) -> Any:
        if not self.config.stripe_secret_key:
            raise ProviderError("STRIPE_SECRET_KEY is not set")

        attempts = max(1, self.config.provider_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(fn, *args, api_key=self.config.stripe_secret_key, **kwargs)
            except self._TRANSIENT as e:
                if attempt == attempts:
                    raise ProviderError(f"Stripe unavailable: {e}") from e
                delay = self.config.provider_retry_base_delay * 2 ** (attempt - 1)
                logger.warning("Transient Stripe error (attempt %d/%d), retrying in %.1fs: %s",
                               attempt, attempts, delay, e)
                await asyncio.sleep(delay)
            except stripe.StripeError as e:
                raise ProviderError(f"Stripe error: {e}") from e

    async def find_customer_by_email(self, email: str) -> str | None:
        customers = await self._call(stripe.Customer.list, email=email, limit=1)
        if customers.data:
            return customers.data[0].id
        return None

    async def create_customer(self, email: str) -> str:
        customer = await self._call(stripe.Customer.create, email=email)
        return customer.id

    async def create_authorization(
        self, customer_id: str, amount_minor: int, currency: str, metadata: dict[str, str]
    ) -> ProviderAuthorization:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=amount_minor,
            currency=currency,
            customer=customer_id,
            capture_method="manual",
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
            description="Payment authorization - Intervention",
        )
        return _from_intent(intent)

    async def cancel_authorization(self, provider_payment_id: str) -> None:
        await self._call(stripe.PaymentIntent.cancel, provider_payment_id)

    async def capture_authorization(self, provider_payment_id: str, amount_minor: int) -> None:
        await self._call(stripe.PaymentIntent.capture, provider_payment_id, amount_to_capture=amount_minor)

    async def retrieve_authorization(self, provider_payment_id: str) -> ProviderAuthorization:
        intent = await self._call(stripe.PaymentIntent.retrieve, provider_payment_id)
        return _from_intent(intent)

    async def increment_authorization(self, provider_payment_id: str, amount_minor: int) -> ProviderAuthorization:
        intent = await self._call(
            stripe.PaymentIntent.increment_authorization, provider_payment_id, amount=amount_minor,
        )
        return _from_intent(intent)


def get_payment_provider() -> PaymentProvider:
    return StripeProvider()

"""Payment authorization manager.

Lifecycle of a hold: a ``pending`` row is written first, the provider hold
is created, then the row moves to ``authorized`` with the provider
reference. It ends ``captured`` on completion or ``cancelled`` when the
intervention is abandoned. While authorized the hold can be increased,
and ``sync_status`` reconciles the row with the provider's intent. Status
changes are compare-and-swap updates and at most one row per intervention
is ever active.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.config import PaymentConfig, get_settings
from fieldops.db import crud
from fieldops.errors import ConcurrencyConflict, NotFoundError, ProviderError, ValidationError
from fieldops.models import PaymentAuthorization
from fieldops.models import intervention as intervention_status
from fieldops.models import payment_authorization as auth_status
from fieldops.models.base import utcnow
from fieldops.services.change_feed import ChangeFeed, change_feed
from fieldops.services.payment_provider import PaymentProvider, get_payment_provider, to_minor_units

logger = logging.getLogger(__name__)

# Bounded re-reads when a cancel races an in-flight authorize.
_MAX_CANCEL_PASSES = 3

# Provider intent states in which the funds are held or already taken.
_PROVIDER_AUTHORIZED = ("requires_capture", "succeeded")

INCREMENTED = "increment"
DEFERRED = "deferred"


@dataclass
class AuthorizationResult:
    authorization: PaymentAuthorization
    client_secret: str | None = None


@dataclass
class CancelResult:
    cancelled: bool
    authorization_id: str | None = None
    provider_cancelled: bool = False
    message: str = ""


@dataclass
class IncrementResult:
    authorization: PaymentAuthorization
    method: str
    message: str = ""


@dataclass
class SyncResult:
    authorization: PaymentAuthorization
    provider_status: str | None = None
    provider_authorized: bool = False
    changed: bool = False


def _parse_amount(amount) -> Decimal:
    if amount is None or amount == "":
        raise ValidationError("amount is required")
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError("amount must be positive")
    value = value.quantize(Decimal("0.01"))
    if value <= 0:
        raise ValidationError("amount must be positive")
    return value


class PaymentAuthorizationManager:
    def __init__(
        self,
        db: AsyncSession,
        provider: PaymentProvider | None = None,
        feed: ChangeFeed | None = None,
        config: PaymentConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.provider = provider or get_payment_provider()
        self.feed = feed or change_feed
        self.config = config or get_settings().payments
        self.clock = clock

    async def authorize(
        self,
        intervention_id: str,
        amount,
        currency: str | None,
        customer_email: str,
    ) -> AuthorizationResult:
        """Place a manual-capture hold for an intervention.

        Raises ValidationError for missing input, NotFoundError for an unknown
        intervention, ConcurrencyConflict if an active hold already exists, and
        ProviderError if the provider call fails. In the last case the row stays
        ``pending`` without a provider reference; a later authorize() supersedes it.
        """
        if not intervention_id:
            raise ValidationError("intervention_id is required")
        value = _parse_amount(amount)
        customer_email = (customer_email or "").strip()
        if not customer_email or "@" not in customer_email:
            raise ValidationError("A valid customer email is required")
        currency = (currency or self.config.default_currency).lower()

        intervention = await crud.get_intervention(self.db, intervention_id)
        if intervention is None:
            raise NotFoundError(f"Intervention not found: {intervention_id}")
        if intervention.status in intervention_status.TERMINAL_STATUSES:
            raise ValidationError(f"Intervention is {intervention.status}")

        existing = await crud.get_latest_payment_authorization(
            self.db, intervention_id, auth_status.ACTIVE_STATUSES
        )
        if existing is not None and existing.provider_payment_id:
            raise ConcurrencyConflict("Intervention already has an active payment authorization")

        try:
            if existing is not None:
                # Leftover from a failed provider call.
                await crud.transition_payment_authorization(
                    self.db, existing.id, auth_status.PENDING, auth_status.FAILED,
                    details={**(existing.details or {}), "superseded": True},
                )
                logger.info("Superseded stale pending authorization %s", existing.id)
            auth = await crud.create_payment_authorization(
                self.db, intervention_id, value, currency, customer_email,
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConcurrencyConflict("Intervention already has an active payment authorization")
        auth_id = auth.id
        logger.info("Authorization %s created for intervention %s (%s %s)",
                    auth.id, intervention_id, value, currency)

        try:
            customer_id = await self.provider.find_customer_by_email(customer_email)
            if customer_id:
                logger.info("Found existing customer %s", customer_id)
            else:
                customer_id = await self.provider.create_customer(customer_email)
                logger.info("Created new customer %s", customer_id)

            hold = await self.provider.create_authorization(
                customer_id,
                to_minor_units(value),
                currency,
                metadata={"intervention_id": intervention_id, "authorization_id": auth.id},
            )
        except ProviderError:
            logger.error("Provider authorization failed for %s; record %s left pending",
                         intervention_id, auth_id, exc_info=True)
            raise

        if not await crud.transition_payment_authorization(
            self.db, auth_id, auth_status.PENDING, auth_status.AUTHORIZED,
            provider_payment_id=hold.provider_payment_id,
            provider_customer_id=customer_id,
            authorized_at=self.clock(),
        ):
            await self.db.rollback()
            # Cancelled while the provider call was in flight: release the orphaned hold.
            logger.warning("Authorization %s finalized during provider call; releasing hold %s",
                           auth_id, hold.provider_payment_id)
            try:
                await self.provider.cancel_authorization(hold.provider_payment_id)
            except Exception:
                logger.warning("Could not release orphaned hold %s", hold.provider_payment_id, exc_info=True)
            raise ConcurrencyConflict("Payment authorization was cancelled during authorization")
        await self.db.commit()

        auth = await crud.get_payment_authorization(self.db, auth_id)
        logger.info("Authorization %s authorized (payment %s)", auth.id, hold.provider_payment_id)
        await self.feed.publish("payment_authorization", auth.id, "authorized", {
            "intervention_id": intervention_id,
        })
        return AuthorizationResult(authorization=auth, client_secret=hold.client_secret)

    async def cancel(self, intervention_id: str) -> CancelResult:
        """Release the intervention's active hold, if any.

        Provider failures are logged and swallowed: the local record always ends
        ``cancelled``. No active hold is a successful no-op.
        """
        if not intervention_id:
            raise ValidationError("intervention_id is required")

        provider_cancelled = False
        released: set[str] = set()
        for _ in range(_MAX_CANCEL_PASSES):
            auth = await crud.get_latest_payment_authorization(
                self.db, intervention_id, auth_status.ACTIVE_STATUSES
            )
            if auth is None:
                logger.info("No payment authorization to cancel for %s", intervention_id)
                return CancelResult(cancelled=False, provider_cancelled=provider_cancelled,
                                    message="No payment to cancel")

            ref = auth.provider_payment_id
            if ref and ref not in released:
                try:
                    await self.provider.cancel_authorization(ref)
                    provider_cancelled = True
                    logger.info("Provider hold %s released", ref)
                except Exception:
                    logger.warning("Error releasing provider hold %s; finalizing locally", ref, exc_info=True)
                released.add(ref)

            if await crud.transition_payment_authorization(
                self.db, auth.id, auth.status, auth_status.CANCELLED, cancelled_at=self.clock(),
            ):
                await self.db.commit()
                logger.info("Payment authorization %s cancelled", auth.id)
                await self.feed.publish("payment_authorization", auth.id, "cancelled", {
                    "intervention_id": intervention_id,
                })
                return CancelResult(cancelled=True, authorization_id=auth.id,
                                    provider_cancelled=provider_cancelled, message="Payment cancelled")

            # Status moved underneath us; re-read and try again.
            await self.db.rollback()

        raise ConcurrencyConflict("Payment authorization kept changing during cancellation")

    async def capture(self, intervention_id: str, amount=None) -> PaymentAuthorization:
        """Capture the authorized hold. Any excess over the hold is recorded as pending.

        Once the provider has taken the money the row ends ``captured``, even if
        a concurrent cancel finalized it in the meantime.
        """
        auth = await crud.get_latest_payment_authorization(
            self.db, intervention_id, (auth_status.AUTHORIZED,)
        )
        if auth is None:
            raise NotFoundError("No authorized payment found for this intervention")
        if not auth.provider_payment_id:
            raise ValidationError("No provider payment reference on the authorization")

        auth_id = auth.id
        requested = _parse_amount(amount) if amount is not None else auth.amount
        to_capture = min(requested, auth.amount)
        details = dict(auth.details or {})
        details["captured_amount"] = str(to_capture)
        if requested > auth.amount:
            details["additional_amount_pending"] = str(requested - auth.amount)
            logger.warning("Capture of %s exceeds authorized %s for %s; capturing the hold only",
                           requested, auth.amount, intervention_id)

        await self.provider.capture_authorization(auth.provider_payment_id, to_minor_units(to_capture))
        captured_at = self.clock()

        if not await crud.transition_payment_authorization(
            self.db, auth_id, auth_status.AUTHORIZED, auth_status.CAPTURED,
            captured_at=captured_at, captured_amount=to_capture, details=details,
        ):
            await self.db.rollback()
            # A cancel won the row while the provider was capturing; the money moved anyway.
            logger.error("Authorization %s was finalized during capture; recording the provider capture",
                         auth_id)
            if not await crud.transition_payment_authorization(
                self.db, auth_id, auth_status.CANCELLED, auth_status.CAPTURED,
                captured_at=captured_at, captured_amount=to_capture,
                details={**details, "captured_after_cancel": True},
            ):
                await self.db.rollback()
                raise ConcurrencyConflict("Payment authorization changed during capture")
        await self.db.commit()

        auth = await crud.get_payment_authorization(self.db, auth_id)
        logger.info("Payment %s captured (%s %s)", auth.id, to_capture, auth.currency)
        await self.feed.publish("payment_authorization", auth.id, "captured", {
            "intervention_id": intervention_id, "amount": str(to_capture),
        })
        return auth

    async def increment(self, intervention_id: str, additional_amount) -> IncrementResult:
        """Raise the held amount, e.g. after an on-site quote.

        Cards that refuse an incremental authorization leave the hold as is;
        the extra amount is recorded as pending and the method is ``deferred``.
        """
        additional = _parse_amount(additional_amount)
        auth = await crud.get_latest_payment_authorization(
            self.db, intervention_id, (auth_status.AUTHORIZED,)
        )
        if auth is None:
            raise NotFoundError("No authorized payment found for this intervention")
        if not auth.provider_payment_id:
            raise ValidationError("No provider payment reference on the authorization")

        auth_id, ref, previous = auth.id, auth.provider_payment_id, auth.amount
        details = dict(auth.details or {})
        intent = await self.provider.retrieve_authorization(ref)
        if intent.status != "requires_capture":
            raise ValidationError(f"Cannot increase a hold whose payment is {intent.status}")

        new_amount = previous + additional
        now = self.clock()
        try:
            await self.provider.increment_authorization(ref, to_minor_units(new_amount))
        except ProviderError as e:
            logger.warning("Provider refused to increase hold %s by %s; recording it as pending", ref, additional)
            pending = Decimal(details.get("pending_additional_amount", "0")) + additional
            details.update({
                "pending_additional_amount": str(pending),
                "increment_attempted_at": now.isoformat(),
                "increment_error": str(e),
            })
            method, values = DEFERRED, {"details": details}
        else:
            details["increment_history"] = [*details.get("increment_history", []), {
                "at": now.isoformat(),
                "previous_amount": str(previous),
                "additional_amount": str(additional),
                "new_amount": str(new_amount),
            }]
            method, values = INCREMENTED, {"amount": new_amount, "details": details}

        if not await crud.transition_payment_authorization(
            self.db, auth_id, auth_status.AUTHORIZED, auth_status.AUTHORIZED, **values,
        ):
            await self.db.rollback()
            raise ConcurrencyConflict("Payment authorization changed during increment")
        await self.db.commit()

        auth = await crud.get_payment_authorization(self.db, auth_id)
        if method == INCREMENTED:
            logger.info("Hold %s increased from %s to %s", auth_id, previous, new_amount)
            message = "Authorization increased"
        else:
            message = "Increment not supported; additional amount recorded as pending"
        await self.feed.publish("payment_authorization", auth_id, "incremented", {
            "intervention_id": intervention_id, "method": method, "amount": str(auth.amount),
        })
        return IncrementResult(authorization=auth, method=method, message=message)

    async def sync_status(self, intervention_id: str) -> SyncResult:
        """Reconcile the latest record with the provider's view of the hold."""
        auth = await crud.get_latest_payment_authorization(self.db, intervention_id)
        if auth is None:
            raise NotFoundError("No payment authorization for this intervention")
        if not auth.provider_payment_id:
            return SyncResult(authorization=auth)

        auth_id, current = auth.id, auth.status
        intent = await self.provider.retrieve_authorization(auth.provider_payment_id)
        held = intent.status in _PROVIDER_AUTHORIZED
        now = self.clock()
        details = {**(auth.details or {}), "provider_status": intent.status, "synced_at": now.isoformat()}

        if current == auth_status.AUTHORIZED and not held:
            new_status = auth_status.FAILED
            details["sync_note"] = f"Provider reports {intent.status}"
            values = {"details": details}
        elif current in (auth_status.PENDING, auth_status.FAILED) and held:
            new_status = auth_status.AUTHORIZED
            values = {"details": details, "authorized_at": auth.authorized_at or now}
        else:
            return SyncResult(authorization=auth, provider_status=intent.status, provider_authorized=held)

        try:
            changed = await crud.transition_payment_authorization(self.db, auth_id, current, new_status, **values)
            await self.db.commit()
        except IntegrityError:
            # Another hold became active for this intervention in the meantime.
            await self.db.rollback()
            raise ConcurrencyConflict("Intervention already has an active payment authorization")

        auth = await crud.get_payment_authorization(self.db, auth_id)
        if changed:
            logger.warning("Authorization %s resynced: %s -> %s (provider %s)",
                           auth_id, current, new_status, intent.status)
            await self.feed.publish("payment_authorization", auth_id, "synced", {
                "intervention_id": intervention_id, "status": new_status, "provider_status": intent.status,
            })
        return SyncResult(authorization=auth, provider_status=intent.status, provider_authorized=held,
                          changed=changed)

    async def latest(self, intervention_id: str) -> PaymentAuthorization:
        auth = await crud.get_latest_payment_authorization(self.db, intervention_id)
        if auth is None:
            raise NotFoundError("No payment authorization for this intervention")
        return auth

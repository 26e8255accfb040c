"""Stripe payment service - the only module that talks to the Stripe SDK."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import stripe
from stripe import StripeError

from billing.config import settings

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key and bounded outbound calls
stripe.api_key = settings.stripe_secret_key
stripe.max_network_retries = settings.stripe_max_network_retries
stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


class PaymentProviderError(Exception):
    """A provider call failed. Retryable from the caller's point of view."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class WebhookSignatureError(ValueError):
    """The webhook payload or its signature did not verify."""


@dataclass(frozen=True)
class CheckoutLineItem:
    """One recurring monthly line on a checkout session."""

    name: str
    monthly_amount: Decimal
    quantity: int = 1
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents for the Stripe API."""
    return int((amount * 100).quantize(Decimal(1)))


class PaymentProvider(Protocol):
    """Operations the billing engine needs from a payment provider."""

    def create_customer(self, payer_id: str, email: str | None, name: str | None) -> str: ...

    def create_checkout_session(
        self,
        customer_id: str,
        line_items: list[CheckoutLineItem],
        currency: str,
        trial_end: datetime | None,
        metadata: dict[str, str],
    ) -> CheckoutSession: ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str: ...

    def end_trial_now(self, provider_subscription_id: str) -> None: ...

    def set_cancel_at_period_end(self, provider_subscription_id: str, cancel: bool) -> None: ...

    def create_invoice_item(
        self,
        customer_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str: ...

    def construct_webhook_event(self, payload: bytes, signature: str) -> dict[str, Any]: ...


class StripeService:
    """
    Handles all Stripe API interactions.

    All methods are static and stateless. Stripe SDK handles connection pooling.
    StripeError is wrapped in PaymentProviderError so callers never import
    the SDK; whether a failure is fatal is the caller's decision.
    """

    @staticmethod
    def create_customer(payer_id: str, email: str | None, name: str | None) -> str:
        """
        Create a Stripe customer for a payer.

        Returns the Stripe customer ID (cus_...).
        """
        try:
            customer = stripe.Customer.create(
                email=email or "",
                name=name or "",
                metadata={
                    "payer_id": payer_id,
                    "environment": "production" if "live" in (settings.stripe_secret_key or "") else "test",
                },
            )
            logger.info(f"Created Stripe customer {customer.id} for payer {payer_id}")
            return customer.id
        except StripeError as e:
            logger.error(f"Failed to create Stripe customer: {e}")
            raise PaymentProviderError("create_customer", str(e)) from e

    @staticmethod
    def create_checkout_session(
        customer_id: str,
        line_items: list[CheckoutLineItem],
        currency: str,
        trial_end: datetime | None,
        metadata: dict[str, str],
    ) -> CheckoutSession:
        """
        Create a Stripe Checkout session that collects a payment method.

        One recurring line per organization. When ``trial_end`` is given the
        provider subscription starts in trialing and first charges then.
        """
        stripe_items = [
            {
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(item.monthly_amount),
                    "recurring": {"interval": "month"},
                    "product_data": {"name": item.name, "metadata": item.metadata},
                },
                "quantity": item.quantity,
            }
            for item in line_items
        ]

        subscription_data: dict[str, object] = {"metadata": metadata}
        if trial_end is not None:
            subscription_data["trial_end"] = int(trial_end.timestamp())

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="subscription",
                line_items=stripe_items,  # type: ignore[arg-type]
                success_url=settings.checkout_success_url,
                cancel_url=settings.checkout_cancel_url,
                subscription_data=subscription_data,  # type: ignore[arg-type]
                metadata=metadata,
            )
            logger.info(
                f"Created checkout session {session.id} for customer {customer_id}, "
                f"{len(stripe_items)} line items, trial={trial_end is not None}"
            )
            return CheckoutSession(id=session.id, url=session.url or "")
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise PaymentProviderError("create_checkout_session", str(e)) from e

    @staticmethod
    def create_portal_session(customer_id: str, return_url: str) -> str:
        """
        Create a Stripe Customer Portal session for self-service billing.

        Returns the portal session URL.
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except StripeError as e:
            logger.error(f"Failed to create portal session: {e}")
            raise PaymentProviderError("create_portal_session", str(e)) from e

    @staticmethod
    def end_trial_now(provider_subscription_id: str) -> None:
        """End the trial immediately so the first invoice is issued now."""
        try:
            stripe.Subscription.modify(provider_subscription_id, trial_end="now")
            logger.info(f"Ended trial for Stripe subscription {provider_subscription_id}")
        except StripeError as e:
            logger.error(f"Failed to end trial: {e}")
            raise PaymentProviderError("end_trial_now", str(e)) from e

    @staticmethod
    def set_cancel_at_period_end(provider_subscription_id: str, cancel: bool) -> None:
        """Schedule (or unschedule) cancellation at the end of the current period."""
        try:
            stripe.Subscription.modify(
                provider_subscription_id,
                cancel_at_period_end=cancel,
            )
            logger.info(
                f"Set cancel_at_period_end={cancel} on Stripe subscription {provider_subscription_id}"
            )
        except StripeError as e:
            logger.error(f"Failed to update cancel_at_period_end: {e}")
            raise PaymentProviderError("set_cancel_at_period_end", str(e)) from e

    @staticmethod
    def create_invoice_item(
        customer_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        """
        Attach a one-off line to a draft invoice.

        The idempotency key makes a retried sync of the same usage row
        return the original item instead of charging twice.
        """
        try:
            item = stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice_id,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                description=description,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
            return item.id
        except StripeError as e:
            logger.error(f"Failed to create invoice item on {invoice_id}: {e}")
            raise PaymentProviderError("create_invoice_item", str(e)) from e

    @staticmethod
    def construct_webhook_event(payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and construct a webhook event from Stripe.

        Returns the verified payload as plain JSON (nested dicts, not
        StripeObjects) so it can be stored and planned without the SDK.
        Raises WebhookSignatureError if signature verification fails.
        """
        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload,
                signature,
                settings.stripe_webhook_secret,
            )
            return json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature") from None
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise WebhookSignatureError("Invalid webhook payload") from None


stripe_service = StripeService()

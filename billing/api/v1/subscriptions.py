"""Subscription lifecycle endpoints for payers."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter
from pydantic import BaseModel, Field

from billing.api.deps import CurrentPayer, DbSession
from billing.core.exceptions import ProviderUnavailableError, unwrap
from billing.domain.pricing import PriceBreakdown, ResourceQuantity, SubscriptionItem
from billing.models.subscription import CancelReason, Subscription
from billing.services.stripe_service import PaymentProviderError
from billing.services.subscription_lifecycle import ProratedChargeOutcome, subscription_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class ResourceQuantityIn(BaseModel):
    resource_type: str
    quantity: int = Field(gt=0, le=1000)


class SubscriptionItemIn(BaseModel):
    """One organization to subscribe, with optional add-ons."""

    organization_id: UUID
    additional_modules: list[str] = []
    additional_resources: list[ResourceQuantityIn] = []

    def to_item(self) -> SubscriptionItem:
        return SubscriptionItem(
            organization_id=self.organization_id,
            additional_modules=list(self.additional_modules),
            additional_resources=[
                ResourceQuantity(r.resource_type, r.quantity) for r in self.additional_resources
            ],
        )


class CreateSubscriptionRequest(BaseModel):
    items: list[SubscriptionItemIn] = Field(min_length=1, max_length=50)


class OrganizationRequest(BaseModel):
    organization_id: UUID


class CancelRequest(BaseModel):
    organization_id: UUID
    reason: CancelReason
    other_reason: str | None = Field(default=None, max_length=500)


class AddModuleRequest(BaseModel):
    organization_id: UUID
    module_key: str


class AddResourceRequest(BaseModel):
    organization_id: UUID
    resource_type: str
    quantity: int = Field(default=1, gt=0, le=1000)


class SmsBudgetRequest(BaseModel):
    organization_id: UUID
    monthly_budget: Decimal | None = None  # None means unlimited
    notify_by_email: bool | None = None
    notify_by_sms: bool | None = None


class SubscriptionSummary(BaseModel):
    id: UUID
    organization_id: UUID
    status: str
    currency: str
    started_at: datetime
    renews_at: datetime
    trial_ends_at: datetime | None
    cancelled_at: datetime | None

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionSummary":
        return cls(
            id=subscription.id,
            organization_id=subscription.organization_id,
            status=subscription.status,
            currency=subscription.currency,
            started_at=subscription.started_at,
            renews_at=subscription.renews_at,
            trial_ends_at=subscription.trial_ends_at,
            cancelled_at=subscription.cancelled_at,
        )


class CreateSubscriptionResponse(BaseModel):
    subscriptions: list[SubscriptionSummary]
    checkout_url: str
    checkout_session_id: str
    pricing: list[dict[str, Any]]
    total_monthly_price: Decimal
    currency: str
    is_trial: bool
    trial_ends_at: datetime | None


class PriceQuoteResponse(BaseModel):
    pricing: list[dict[str, Any]]
    total_monthly_price: Decimal
    currency: str
    trial_eligible: bool
    trial_days: int


class ActivateResponse(BaseModel):
    subscription_id: UUID
    status: str
    renews_at: datetime


class CancelResponse(BaseModel):
    subscription_id: UUID
    status: str
    effective_date: datetime
    remaining_days: int
    cancel_reason: str


class ReactivateResponse(BaseModel):
    subscription_id: UUID
    status: str
    restored_configuration: dict[str, Any]


class ProratedChargeResponse(BaseModel):
    subscription_id: UUID
    prorated_charge: Decimal
    remaining_days: int
    next_billing_date: datetime
    usage_id: UUID
    details: dict[str, Any]


class SmsBudgetResponse(BaseModel):
    monthly_budget: Decimal | None
    current_spending: Decimal
    remaining_budget: Decimal | None
    usage_percentage: Decimal | None
    notify_by_email: bool
    notify_by_sms: bool


class PortalResponse(BaseModel):
    portal_url: str


def _pricing(breakdowns: list[PriceBreakdown]) -> list[dict[str, Any]]:
    return [b.as_dict() for b in breakdowns]


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.post("", response_model=CreateSubscriptionResponse, status_code=201)
async def create_subscriptions(
    data: CreateSubscriptionRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> CreateSubscriptionResponse:
    """
    Subscribe one or more organizations and open a checkout session.

    First-time payers start a trial; the checkout collects the payment
    method that is charged when the trial ends.
    """
    try:
        result = await subscription_lifecycle.create_subscriptions(
            db,
            payer.payer_id,
            payer.organizations,
            [item.to_item() for item in data.items],
            payer_email=payer.email,
        )
    except PaymentProviderError as e:
        raise ProviderUnavailableError(f"Could not start checkout: {e.message}") from None

    outcome = unwrap(result)
    return CreateSubscriptionResponse(
        subscriptions=[SubscriptionSummary.from_model(s) for s in outcome.subscriptions],
        checkout_url=outcome.checkout_url,
        checkout_session_id=outcome.checkout_session_id,
        pricing=_pricing(outcome.pricing),
        total_monthly_price=outcome.total_monthly_price,
        currency=outcome.currency,
        is_trial=outcome.is_trial,
        trial_ends_at=outcome.trial_ends_at,
    )


@router.post("/calculate", response_model=PriceQuoteResponse)
async def calculate_price(
    data: CreateSubscriptionRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> PriceQuoteResponse:
    """Price preview for a create request. Nothing is written."""
    quote = unwrap(
        await subscription_lifecycle.calculate_price(db, payer.payer_id, [item.to_item() for item in data.items])
    )
    return PriceQuoteResponse(
        pricing=_pricing(quote.pricing),
        total_monthly_price=quote.total_monthly_price,
        currency=quote.currency,
        trial_eligible=quote.trial_eligible,
        trial_days=quote.trial_days,
    )


@router.post("/activate", response_model=ActivateResponse)
async def activate_subscription(
    data: OrganizationRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> ActivateResponse:
    """End the trial now and start paid billing."""
    try:
        result = await subscription_lifecycle.activate_subscription(db, data.organization_id, payer.payer_id)
    except PaymentProviderError as e:
        raise ProviderUnavailableError(f"Could not end trial: {e.message}") from None

    outcome = unwrap(result)
    return ActivateResponse(
        subscription_id=outcome.subscription.id,
        status=outcome.status,
        renews_at=outcome.renews_at,
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    data: CancelRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> CancelResponse:
    """Cancel at the end of the current period. Access continues until then."""
    outcome = unwrap(
        await subscription_lifecycle.cancel_subscription(
            db, data.organization_id, payer.payer_id, data.reason, data.other_reason
        )
    )
    return CancelResponse(
        subscription_id=outcome.subscription.id,
        status=outcome.subscription.status,
        effective_date=outcome.effective_date,
        remaining_days=outcome.remaining_days,
        cancel_reason=outcome.cancel_reason,
    )


@router.post("/reactivate", response_model=ReactivateResponse)
async def reactivate_subscription(
    data: OrganizationRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> ReactivateResponse:
    """Undo a scheduled cancellation before the period ends."""
    outcome = unwrap(
        await subscription_lifecycle.reactivate_subscription(db, data.organization_id, payer.payer_id)
    )
    return ReactivateResponse(
        subscription_id=outcome.subscription.id,
        status=outcome.subscription.status,
        restored_configuration=outcome.restored_configuration,
    )


@router.post("/modules", response_model=ProratedChargeResponse)
async def add_module(
    data: AddModuleRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> ProratedChargeResponse:
    """Enable an add-on module, charged pro rata for the rest of the period."""
    outcome = unwrap(
        await subscription_lifecycle.add_module(db, data.organization_id, payer.payer_id, data.module_key)
    )
    return _prorated_response(outcome)


@router.post("/resources", response_model=ProratedChargeResponse)
async def add_resource(
    data: AddResourceRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> ProratedChargeResponse:
    """Add devices or staff accounts, charged pro rata for the rest of the period."""
    outcome = unwrap(
        await subscription_lifecycle.add_resource(
            db, data.organization_id, payer.payer_id, data.resource_type, data.quantity
        )
    )
    return _prorated_response(outcome)


@router.put("/sms-budget", response_model=SmsBudgetResponse)
async def update_sms_budget(
    data: SmsBudgetRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> SmsBudgetResponse:
    """Set the monthly SMS/Email spending budget and alert channels."""
    outcome = unwrap(
        await subscription_lifecycle.update_sms_budget(
            db,
            data.organization_id,
            payer.payer_id,
            data.monthly_budget,
            notify_by_email=data.notify_by_email,
            notify_by_sms=data.notify_by_sms,
        )
    )
    return SmsBudgetResponse(
        monthly_budget=outcome.monthly_budget,
        current_spending=outcome.current_spending,
        remaining_budget=outcome.remaining_budget,
        usage_percentage=outcome.usage_percentage,
        notify_by_email=outcome.notify_by_email,
        notify_by_sms=outcome.notify_by_sms,
    )


@router.post("/payment-method", response_model=PortalResponse)
async def open_billing_portal(
    data: OrganizationRequest,
    payer: CurrentPayer,
    db: DbSession,
) -> PortalResponse:
    """Return a provider-hosted page for updating the payment method."""
    try:
        result = await subscription_lifecycle.open_billing_portal(db, data.organization_id, payer.payer_id)
    except PaymentProviderError as e:
        raise ProviderUnavailableError(f"Could not open billing portal: {e.message}") from None
    return PortalResponse(portal_url=unwrap(result))


def _prorated_response(outcome: ProratedChargeOutcome) -> ProratedChargeResponse:
    return ProratedChargeResponse(
        subscription_id=outcome.subscription.id,
        prorated_charge=outcome.prorated_charge,
        remaining_days=outcome.remaining_days,
        next_billing_date=outcome.next_billing_date,
        usage_id=outcome.usage_id,
        details=outcome.details,
    )

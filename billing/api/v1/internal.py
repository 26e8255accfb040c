"""Internal API endpoints, protected by a shared service token rather than user identity.

Called by sibling services: the notification service records SMS/email
usage after sending, and the auth service checks access at sign-in and
resource quotas before adding a device or account.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from billing.api.deps import DbSession, verify_service_token
from billing.core.exceptions import unwrap
from billing.services.usage_service import UsageEntry, usage_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(verify_service_token)],
)


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class RecordUsageRequest(BaseModel):
    organization_id: UUID
    usage_type: str
    quantity: int = Field(default=1, gt=0, le=10000)
    provider_record_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] = {}


class BudgetWarningOut(BaseModel):
    current_spending: Decimal
    budget: Decimal
    percentage: Decimal
    triggered_alerts: list[int]
    notify_by_email: bool
    notify_by_sms: bool


class RecordUsageResponse(BaseModel):
    recorded: bool
    usage_id: UUID
    is_free: bool
    unit_price: Decimal
    amount: Decimal
    budget_warning: BudgetWarningOut | None = None
    reason: str | None = None


class UsageEntryIn(BaseModel):
    usage_type: str
    quantity: int = Field(default=1, gt=0, le=10000)
    provider_record_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] = {}


class BatchRecordUsageRequest(BaseModel):
    organization_id: UUID
    records: list[UsageEntryIn] = Field(min_length=1, max_length=500)


class BatchFailureOut(BaseModel):
    index: int
    code: str
    message: str


class BatchRecordUsageResponse(BaseModel):
    recorded: int
    failed: int
    total_amount: Decimal
    budget_warning: BudgetWarningOut | None = None
    failures: list[BatchFailureOut]


class CheckQuotaRequest(BaseModel):
    organization_id: UUID
    resource_type: str
    quantity: int = Field(default=1, gt=0)
    used: int = Field(default=0, ge=0)


class QuotaInfo(BaseModel):
    total: int
    used: int
    available: int


class QuotaResponse(BaseModel):
    allowed: bool
    quota: QuotaInfo
    subscription_status: str
    reason: str | None = None


class AccessResponse(BaseModel):
    allowed: bool
    reason: str | None
    subscription_status: str | None
    grace_period_ends_at: datetime | None


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/usage", response_model=RecordUsageResponse)
async def record_usage(
    data: RecordUsageRequest,
    db: DbSession,
) -> RecordUsageResponse:
    """
    Record a metered usage event (one SMS batch, one email batch).

    Idempotent on provider_record_id: a repeat returns the stored record
    with recorded=false.
    """
    outcome = unwrap(
        await usage_service.record_usage(
            db,
            data.organization_id,
            data.usage_type,
            data.quantity,
            provider_record_id=data.provider_record_id,
            metadata=data.metadata,
        )
    )
    warning = outcome.budget_warning
    return RecordUsageResponse(
        recorded=outcome.recorded,
        usage_id=outcome.usage_id,
        is_free=outcome.is_free,
        unit_price=outcome.unit_price,
        amount=outcome.amount,
        budget_warning=BudgetWarningOut(**vars(warning)) if warning else None,
        reason=outcome.reason,
    )


@router.get("/access", response_model=AccessResponse)
async def check_access(
    db: DbSession,
    organization_id: UUID = Query(...),
    module_key: str | None = Query(default=None),
) -> AccessResponse:
    """Whether an organization may use the product (optionally a specific module) right now."""
    decision = await usage_service.check_access(db, organization_id, module_key)
    if not decision.allowed:
        logger.info(f"Access denied for org {organization_id}: {decision.reason}")
    return AccessResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        subscription_status=decision.subscription_status,
        grace_period_ends_at=decision.grace_period_ends_at,
    )


@router.post("/usage/batch", response_model=BatchRecordUsageResponse)
async def batch_record_usage(
    data: BatchRecordUsageRequest,
    db: DbSession,
) -> BatchRecordUsageResponse:
    """
    Record several usage events for one organization.

    Rejected entries are reported per index; the others still record.
    """
    outcome = await usage_service.batch_record_usage(
        db,
        data.organization_id,
        [
            UsageEntry(
                usage_type=record.usage_type,
                quantity=record.quantity,
                provider_record_id=record.provider_record_id,
                metadata=record.metadata,
            )
            for record in data.records
        ],
    )
    warning = outcome.budget_warning
    return BatchRecordUsageResponse(
        recorded=outcome.recorded,
        failed=outcome.failed,
        total_amount=outcome.total_amount,
        budget_warning=BudgetWarningOut(**vars(warning)) if warning else None,
        failures=[BatchFailureOut(**vars(f)) for f in outcome.failures],
    )


@router.post("/quota", response_model=QuotaResponse)
async def check_quota(
    data: CheckQuotaRequest,
    db: DbSession,
) -> QuotaResponse:
    """Whether the organization may add ``quantity`` more of a device or account type."""
    decision = unwrap(
        await usage_service.check_quota(
            db,
            data.organization_id,
            data.resource_type,
            quantity=data.quantity,
            used=data.used,
        )
    )
    if not decision.allowed:
        logger.info(f"Quota denied for org {data.organization_id} ({data.resource_type}): {decision.reason}")
    return QuotaResponse(
        allowed=decision.allowed,
        quota=QuotaInfo(total=decision.total, used=decision.used, available=decision.available),
        subscription_status=decision.subscription_status,
        reason=decision.reason,
    )

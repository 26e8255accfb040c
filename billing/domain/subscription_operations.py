"""Domain operations for Subscription and its attachments."""

import uuid as uuid_pkg
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.domain.results import Conflict, Ok, Result
from billing.models.ledger import SubscriptionAction, SubscriptionLog
from billing.models.subscription import Subscription, SubscriptionModule, SubscriptionResource, SubscriptionStatus


class SubscriptionOperations:
    """Reads, versioned writes and audit logging for subscriptions."""

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    async def get(
        self,
        db: AsyncSession,
        id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """Get a subscription by ID, re-read from the database."""
        statement = (
            select(Subscription)
            .where(Subscription.id == id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_org(
        self,
        db: AsyncSession,
        organization_id: uuid_pkg.UUID,
    ) -> Subscription | None:
        """
        Get the subscription for an organization.

        Always re-reads the row (``populate_existing``) so a retry after an
        optimistic-lock conflict sees the winner's version.
        """
        statement = (
            select(Subscription)
            .where(Subscription.organization_id == organization_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_orgs(
        self,
        db: AsyncSession,
        organization_ids: list[uuid_pkg.UUID],
    ) -> list[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.organization_id.in_(organization_ids))  # type: ignore[attr-defined]
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def get_by_provider_subscription(
        self,
        db: AsyncSession,
        provider_subscription_id: str,
    ) -> list[Subscription]:
        """All local subscriptions billed through one provider subscription, oldest first."""
        statement = (
            select(Subscription)
            .where(Subscription.provider_subscription_id == provider_subscription_id)
            .order_by(Subscription.created_at)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def get_by_provider_customer(
        self,
        db: AsyncSession,
        provider_customer_id: str,
    ) -> list[Subscription]:
        """All local subscriptions for a provider customer, oldest first."""
        statement = (
            select(Subscription)
            .where(Subscription.provider_customer_id == provider_customer_id)
            .order_by(Subscription.created_at)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def get_by_checkout_session(
        self,
        db: AsyncSession,
        checkout_session_id: str,
    ) -> list[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.provider_metadata["checkout_session_id"].astext == checkout_session_id)  # type: ignore[index]
            .order_by(Subscription.created_at)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def find_customer_id_for_payer(
        self,
        db: AsyncSession,
        payer_id: uuid_pkg.UUID,
    ) -> str | None:
        """Reuse the provider customer from any earlier subscription of this payer."""
        statement = (
            select(Subscription.provider_customer_id)
            .where(
                Subscription.payer_id == payer_id,
                Subscription.provider_customer_id.is_not(None),  # type: ignore[union-attr]
            )
            .order_by(Subscription.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none()

    async def list_sweep_candidates(
        self,
        db: AsyncSession,
        now: datetime,
    ) -> list[Subscription]:
        """
        Subscriptions that may have a time-driven transition due.

        Cancelled TRIAL/ACTIVE rows past renews_at or trial end, SUSPENDED rows
        past their grace period, and TRIAL rows past trial end. The caller
        decides per row.
        """
        statement = (
            select(Subscription)
            .where(
                or_(
                    and_(
                        Subscription.status.in_([SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value]),  # type: ignore[attr-defined]
                        Subscription.cancelled_at.is_not(None),  # type: ignore[union-attr]
                        Subscription.renews_at <= now,
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.SUSPENDED.value,
                        Subscription.grace_period_ends_at <= now,  # type: ignore[operator]
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.TRIAL.value,
                        Subscription.trial_ends_at <= now,  # type: ignore[operator]
                    ),
                )
            )
            .order_by(Subscription.renews_at)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    # ─────────────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────────────

    async def create(
        self,
        db: AsyncSession,
        **fields: Any,
    ) -> Subscription:
        """
        Insert a new subscription at version 1.

        The unique constraint on organization_id raises IntegrityError when
        another request created one first.
        """
        subscription = Subscription(**fields)
        db.add(subscription)
        await db.flush()
        await db.refresh(subscription)
        return subscription

    async def apply_changes(
        self,
        db: AsyncSession,
        subscription: Subscription,
        changes: dict[str, Any],
    ) -> Result[Subscription]:
        """
        Versioned write: UPDATE ... WHERE id = :id AND version = :v.

        Returns Conflict if the row moved on since it was read, otherwise
        refreshes ``subscription`` (now at v + 1) and returns Ok.
        """
        statement = (
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.version == subscription.version,
            )
            .values(**changes, version=Subscription.version + 1)
            .returning(Subscription.version)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(statement)
        new_version = result.scalar_one_or_none()
        if new_version is None:
            return Conflict(
                resource="Subscription",
                detail=f"{subscription.id} is no longer at version {subscription.version}",
            )
        await db.refresh(subscription)
        return Ok(subscription)

    async def log_event(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        action: SubscriptionAction,
        details: dict[str, Any] | None = None,
        actor_id: uuid_pkg.UUID | None = None,
        provider_event_id: str | None = None,
    ) -> SubscriptionLog:
        """Append an audit row for a subscription."""
        entry = SubscriptionLog(
            subscription_id=subscription_id,
            action=action.value,
            actor_id=actor_id,
            provider_event_id=provider_event_id,
            details=details or {},
        )
        db.add(entry)
        await db.flush()
        return entry

    # ─────────────────────────────────────────────────────────────────────────
    # Modules & resources
    # ─────────────────────────────────────────────────────────────────────────

    async def get_modules(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
    ) -> list[SubscriptionModule]:
        """Active module attachments for a subscription."""
        statement = select(SubscriptionModule).where(
            SubscriptionModule.subscription_id == subscription_id,
            SubscriptionModule.is_active.is_(True),  # type: ignore[attr-defined]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def has_active_module(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        module_keys: list[str],
    ) -> bool:
        statement = (
            select(SubscriptionModule.id)
            .where(
                SubscriptionModule.subscription_id == subscription_id,
                SubscriptionModule.module_key.in_(module_keys),  # type: ignore[attr-defined]
                SubscriptionModule.is_active.is_(True),  # type: ignore[attr-defined]
            )
            .limit(1)
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def get_resources(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
    ) -> list[SubscriptionResource]:
        """Resource attachments that have not been removed."""
        statement = select(SubscriptionResource).where(
            SubscriptionResource.subscription_id == subscription_id,
            SubscriptionResource.removed_at.is_(None),  # type: ignore[union-attr]
        )
        result = await db.execute(statement)
        return list(result.scalars().all())

    async def add_module(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        module_key: str,
        monthly_price: Decimal,
    ) -> SubscriptionModule:
        attachment = SubscriptionModule(
            subscription_id=subscription_id,
            module_key=module_key,
            monthly_price=monthly_price,
        )
        db.add(attachment)
        await db.flush()
        return attachment

    async def add_resource(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
        resource_type: str,
        quantity: int,
        unit_price: Decimal,
    ) -> SubscriptionResource:
        attachment = SubscriptionResource(
            subscription_id=subscription_id,
            resource_type=resource_type,
            quantity=quantity,
            unit_price=unit_price,
        )
        db.add(attachment)
        await db.flush()
        return attachment

    async def increase_resource_quantity(
        self,
        db: AsyncSession,
        attachment: SubscriptionResource,
        quantity: int,
    ) -> SubscriptionResource:
        attachment.quantity = attachment.quantity + quantity
        db.add(attachment)
        await db.flush()
        return attachment

    async def deactivate_attachments(
        self,
        db: AsyncSession,
        subscription_id: uuid_pkg.UUID,
    ) -> None:
        """Detach all modules and resources (used when a subscription is restarted)."""
        await db.execute(
            update(SubscriptionModule)
            .where(
                SubscriptionModule.subscription_id == subscription_id,
                SubscriptionModule.is_active.is_(True),  # type: ignore[attr-defined]
            )
            .values(is_active=False, removed_at=func.now())
        )
        await db.execute(
            update(SubscriptionResource)
            .where(
                SubscriptionResource.subscription_id == subscription_id,
                SubscriptionResource.removed_at.is_(None),  # type: ignore[union-attr]
            )
            .values(removed_at=func.now())
        )


subscription_ops = SubscriptionOperations()

# Services package

from billing.services.effect_applier import EffectApplier
from billing.services.invoice_sync import InvoiceUsageSync
from billing.services.lifecycle_sweep import LifecycleSweep
from billing.services.stripe_service import PaymentProvider, PaymentProviderError, StripeService
from billing.services.subscription_lifecycle import SubscriptionLifecycleService
from billing.services.usage_service import UsageService
from billing.services.webhook_reconciler import WebhookReconciler, WebhookStatus

__all__ = [
    # Payment provider
    "PaymentProvider",
    "PaymentProviderError",
    "StripeService",
    # Lifecycle
    "SubscriptionLifecycleService",
    "LifecycleSweep",
    "UsageService",
    # Reconciliation
    "WebhookReconciler",
    "WebhookStatus",
    "EffectApplier",
    "InvoiceUsageSync",
]

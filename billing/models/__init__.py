from billing.models.invoice import Invoice, InvoiceStatus, PaymentMethod
from billing.models.ledger import (
    ProcessedWebhookEvent,
    SubscriptionAction,
    SubscriptionLog,
    UserTrialStatus,
)
from billing.models.subscription import (
    CancelReason,
    CheckoutSessionStatus,
    Subscription,
    SubscriptionModule,
    SubscriptionResource,
    SubscriptionStatus,
)
from billing.models.usage import Usage, UsageType

__all__ = [
    "CancelReason",
    "CheckoutSessionStatus",
    "Invoice",
    "InvoiceStatus",
    "PaymentMethod",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionAction",
    "SubscriptionLog",
    "SubscriptionModule",
    "SubscriptionResource",
    "SubscriptionStatus",
    "Usage",
    "UsageType",
    "UserTrialStatus",
]

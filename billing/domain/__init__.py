from billing.domain.invoice_operations import invoice_ops, payment_method_ops
from billing.domain.subscription_operations import subscription_ops
from billing.domain.trial_operations import trial_ops
from billing.domain.usage_operations import usage_ops
from billing.domain.webhook_event_operations import webhook_event_ops

__all__ = [
    "invoice_ops",
    "payment_method_ops",
    "subscription_ops",
    "trial_ops",
    "usage_ops",
    "webhook_event_ops",
]

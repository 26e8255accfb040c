from billing.api.v1 import internal, subscriptions, webhooks

__all__ = [
    "subscriptions",
    "webhooks",
    "internal",
]

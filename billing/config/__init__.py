"""Configuration package."""

from billing.config.catalog import (
    MODULES,
    RESOURCES,
    STANDARD_PLAN,
    USAGE_PRICING,
    ModuleConfig,
    ResourceConfig,
    StandardPlanConfig,
    currency_for_region,
    get_module,
    get_resource,
    get_usage_pricing,
)
from billing.config.settings import Settings, settings

__all__ = [
    "MODULES",
    "ModuleConfig",
    "RESOURCES",
    "ResourceConfig",
    "STANDARD_PLAN",
    "StandardPlanConfig",
    "USAGE_PRICING",
    "currency_for_region",
    "get_module",
    "get_resource",
    "get_usage_pricing",
    "Settings",
    "settings",
]

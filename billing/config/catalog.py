"""Catalog configuration - standard plan, add-on modules, resources and usage pricing.

Prices are monthly, in the billing currency, as Decimal dollars.
"""

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class StandardPlanConfig:
    """The single plan every organization subscribes to."""

    name: str
    monthly_price: Decimal
    trial_duration_days: int
    # Modules bundled into the plan price (never charged as add-ons)
    included_module_keys: tuple[str, ...]
    # Free SMS messages while in TRIAL (requires trial_sms_enabled)
    trial_sms_quota: int


@dataclass(frozen=True)
class ModuleConfig:
    """An add-on module that can be attached to a subscription."""

    key: str
    name: str
    monthly_price: Decimal
    is_active: bool = True


@dataclass(frozen=True)
class ResourceConfig:
    """A per-unit billable resource (devices and staff accounts)."""

    resource_type: str
    name: str
    category: str  # 'device' or 'account'
    monthly_price: Decimal
    # Units every subscription gets with the plan; purchased units add to it
    included_quantity: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class UsagePricingConfig:
    """Unit price for metered usage."""

    usage_type: str
    unit_price: Decimal
    unit: str = "message"


STANDARD_PLAN = StandardPlanConfig(
    name="Standard",
    monthly_price=Decimal("49.00"),
    trial_duration_days=30,
    included_module_keys=("appointments", "customers", "services"),
    trial_sms_quota=100,
)


MODULES: dict[str, ModuleConfig] = {
    module.key: module
    for module in (
        ModuleConfig(key="appointments", name="Appointments", monthly_price=Decimal("0.00")),
        ModuleConfig(key="customers", name="Customer Management", monthly_price=Decimal("0.00")),
        ModuleConfig(key="services", name="Service Catalog", monthly_price=Decimal("0.00")),
        ModuleConfig(key="staff_scheduling", name="Staff Scheduling", monthly_price=Decimal("15.00")),
        ModuleConfig(key="inventory", name="Inventory", monthly_price=Decimal("20.00")),
        ModuleConfig(key="analytics", name="Analytics & Reports", monthly_price=Decimal("25.00")),
        ModuleConfig(key="online_booking", name="Online Booking", monthly_price=Decimal("19.00")),
        ModuleConfig(key="sms", name="SMS Notifications", monthly_price=Decimal("10.00")),
        ModuleConfig(key="email", name="Email Notifications", monthly_price=Decimal("5.00")),
        # Retired: kept so existing attachments still resolve a name
        ModuleConfig(
            key="loyalty_legacy",
            name="Loyalty (legacy)",
            monthly_price=Decimal("12.00"),
            is_active=False,
        ),
    )
}


RESOURCES: dict[str, ResourceConfig] = {
    resource.resource_type: resource
    for resource in (
        ResourceConfig(
            resource_type="pos",
            name="POS Terminal",
            category="device",
            monthly_price=Decimal("30.00"),
            included_quantity=1,
        ),
        ResourceConfig(
            resource_type="kiosk",
            name="Self-Service Kiosk",
            category="device",
            monthly_price=Decimal("25.00"),
        ),
        ResourceConfig(
            resource_type="tablet",
            name="Staff Tablet",
            category="device",
            monthly_price=Decimal("10.00"),
            included_quantity=1,
        ),
        ResourceConfig(
            resource_type="manager",
            name="Manager Account",
            category="account",
            monthly_price=Decimal("8.00"),
            included_quantity=1,
        ),
        ResourceConfig(
            resource_type="staff",
            name="Staff Account",
            category="account",
            monthly_price=Decimal("4.00"),
            included_quantity=2,
        ),
    )
}


USAGE_PRICING: dict[str, UsagePricingConfig] = {
    "sms": UsagePricingConfig(usage_type="sms", unit_price=Decimal("0.0100")),
    "email": UsagePricingConfig(usage_type="email", unit_price=Decimal("0.0010")),
}


# Usage types a metering client may report; prorated types are written internally
METERED_USAGE_TYPES = frozenset(USAGE_PRICING)

# Fraction-of-budget thresholds (percent) that raise a budget warning once per period
BUDGET_ALERT_THRESHOLDS: tuple[int, ...] = (50, 80, 95, 100)


@dataclass(frozen=True)
class RegionConfig:
    code: str
    currency: str


REGIONS: dict[str, RegionConfig] = {
    "CA": RegionConfig(code="CA", currency="CAD"),
    "US": RegionConfig(code="US", currency="USD"),
    "EU": RegionConfig(code="EU", currency="EUR"),
    "GB": RegionConfig(code="GB", currency="GBP"),
    "AU": RegionConfig(code="AU", currency="AUD"),
}

DEFAULT_REGION = "CA"


def get_module(module_key: str) -> ModuleConfig | None:
    """Get module config by key, or None if unknown."""
    return MODULES.get(module_key)


def get_resource(resource_type: str) -> ResourceConfig | None:
    """Get resource config by type, or None if unknown."""
    return RESOURCES.get(resource_type)


def get_usage_pricing(usage_type: str) -> UsagePricingConfig | None:
    return USAGE_PRICING.get(usage_type)


def currency_for_region(region: str | None) -> str:
    """Map a region code to its billing currency, falling back to the default region."""
    config = REGIONS.get((region or "").upper()) or REGIONS[DEFAULT_REGION]
    return config.currency

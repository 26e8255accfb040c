"""Subscription price composition and catalog validation."""

import uuid as uuid_pkg
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from billing.config.catalog import MODULES, RESOURCES, STANDARD_PLAN, get_module, get_resource
from billing.domain.proration import round_money
from billing.domain.results import ErrorCode, Invalid


@dataclass(frozen=True)
class ResourceQuantity:
    resource_type: str
    quantity: int


@dataclass(frozen=True)
class SubscriptionItem:
    """One organization in a create / price-preview request."""

    organization_id: uuid_pkg.UUID
    additional_modules: list[str] = field(default_factory=list)
    additional_resources: list[ResourceQuantity] = field(default_factory=list)


@dataclass(frozen=True)
class ModuleLine:
    key: str
    name: str
    monthly_price: Decimal


@dataclass(frozen=True)
class ResourceLine:
    resource_type: str
    name: str
    quantity: int
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class PriceBreakdown:
    """Monthly price of one subscription: plan + add-on modules + resources."""

    organization_id: uuid_pkg.UUID | None
    standard_price: Decimal
    modules: list[ModuleLine]
    resources: list[ResourceLine]

    @property
    def modules_total(self) -> Decimal:
        return round_money(sum((m.monthly_price for m in self.modules), Decimal("0")))

    @property
    def resources_total(self) -> Decimal:
        return round_money(sum((r.total for r in self.resources), Decimal("0")))

    @property
    def total(self) -> Decimal:
        return round_money(self.standard_price + self.modules_total + self.resources_total)

    def as_dict(self) -> dict[str, Any]:
        return {
            "organization_id": str(self.organization_id) if self.organization_id else None,
            "standard_price": self.standard_price,
            "modules": [
                {"key": m.key, "name": m.name, "monthly_price": m.monthly_price} for m in self.modules
            ],
            "resources": [
                {
                    "resource_type": r.resource_type,
                    "name": r.name,
                    "quantity": r.quantity,
                    "unit_price": r.unit_price,
                    "total": r.total,
                }
                for r in self.resources
            ],
            "modules_total": self.modules_total,
            "resources_total": self.resources_total,
            "total": self.total,
        }


def validate_catalog_keys(items: list[SubscriptionItem]) -> Invalid | None:
    """Reject unknown or retired module keys and resource types across all items."""
    invalid_modules = sorted(
        {
            key
            for item in items
            for key in item.additional_modules
            if (module := get_module(key)) is None or not module.is_active
        }
    )
    if invalid_modules:
        return Invalid(
            ErrorCode.INVALID_MODULE_KEYS,
            f"Unknown or unavailable modules: {', '.join(invalid_modules)}",
            {"module_keys": invalid_modules},
        )

    invalid_resources = sorted(
        {
            r.resource_type
            for item in items
            for r in item.additional_resources
            if (resource := get_resource(r.resource_type)) is None or not resource.is_active
        }
    )
    if invalid_resources:
        return Invalid(
            ErrorCode.INVALID_RESOURCE_TYPES,
            f"Unknown or unavailable resource types: {', '.join(invalid_resources)}",
            {"resource_types": invalid_resources},
        )
    return None


def price_item(item: SubscriptionItem) -> PriceBreakdown:
    """
    Price one item. Keys must already be validated.

    Modules bundled into the standard plan are never charged twice, and a
    module listed more than once is charged once.
    """
    modules: list[ModuleLine] = []
    seen: set[str] = set()
    for key in item.additional_modules:
        if key in STANDARD_PLAN.included_module_keys or key in seen:
            continue
        seen.add(key)
        module = MODULES[key]
        modules.append(ModuleLine(key=module.key, name=module.name, monthly_price=module.monthly_price))

    quantities: dict[str, int] = {}
    for requested in item.additional_resources:
        quantities[requested.resource_type] = quantities.get(requested.resource_type, 0) + requested.quantity

    resources: list[ResourceLine] = []
    for resource_type, quantity in quantities.items():
        resource = RESOURCES[resource_type]
        resources.append(
            ResourceLine(
                resource_type=resource_type,
                name=resource.name,
                quantity=quantity,
                unit_price=resource.monthly_price,
                total=round_money(resource.monthly_price * quantity),
            )
        )

    return PriceBreakdown(
        organization_id=item.organization_id,
        standard_price=STANDARD_PLAN.monthly_price,
        modules=modules,
        resources=resources,
    )

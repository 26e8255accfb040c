"""Unit tests for subscription price composition and catalog validation."""

import uuid
from decimal import Decimal

from billing.domain.pricing import ResourceQuantity, SubscriptionItem, price_item, validate_catalog_keys
from billing.domain.results import ErrorCode


def _item(modules=None, resources=None) -> SubscriptionItem:
    return SubscriptionItem(
        organization_id=uuid.uuid4(),
        additional_modules=modules or [],
        additional_resources=resources or [],
    )


class TestPriceItem:
    def test_plan_only(self):
        breakdown = price_item(_item())
        assert breakdown.standard_price == Decimal("49.00")
        assert breakdown.modules == []
        assert breakdown.total == Decimal("49.00")

    def test_bundled_modules_are_not_charged(self):
        breakdown = price_item(_item(modules=["appointments", "customers"]))
        assert breakdown.modules == []
        assert breakdown.modules_total == Decimal("0.00")

    def test_repeated_module_charged_once(self):
        breakdown = price_item(_item(modules=["inventory", "inventory", "sms"]))
        assert [m.key for m in breakdown.modules] == ["inventory", "sms"]
        assert breakdown.modules_total == Decimal("30.00")
        assert breakdown.total == Decimal("79.00")

    def test_resources_of_one_type_are_merged(self):
        breakdown = price_item(
            _item(resources=[ResourceQuantity("pos", 2), ResourceQuantity("staff", 3), ResourceQuantity("pos", 1)])
        )
        by_type = {r.resource_type: r for r in breakdown.resources}
        assert by_type["pos"].quantity == 3
        assert by_type["pos"].total == Decimal("90.00")
        assert by_type["staff"].total == Decimal("12.00")
        assert breakdown.total == Decimal("151.00")

    def test_as_dict_serializes_organization_id(self):
        item = _item(modules=["analytics"])
        data = price_item(item).as_dict()
        assert data["organization_id"] == str(item.organization_id)
        assert data["modules"][0]["key"] == "analytics"
        assert data["total"] == Decimal("74.00")


class TestValidateCatalogKeys:
    def test_valid_items(self):
        assert validate_catalog_keys([_item(modules=["inventory"], resources=[ResourceQuantity("kiosk", 1)])]) is None

    def test_unknown_module(self):
        invalid = validate_catalog_keys([_item(modules=["teleportation"])])
        assert invalid is not None
        assert invalid.code == ErrorCode.INVALID_MODULE_KEYS
        assert invalid.data["module_keys"] == ["teleportation"]

    def test_retired_module(self):
        invalid = validate_catalog_keys([_item(modules=["loyalty_legacy"])])
        assert invalid is not None
        assert invalid.code == ErrorCode.INVALID_MODULE_KEYS

    def test_invalid_keys_collected_across_items(self):
        invalid = validate_catalog_keys([_item(modules=["zzz"]), _item(modules=["aaa", "inventory"])])
        assert invalid is not None
        assert invalid.data["module_keys"] == ["aaa", "zzz"]

    def test_unknown_resource(self):
        invalid = validate_catalog_keys([_item(resources=[ResourceQuantity("drone", 1)])])
        assert invalid is not None
        assert invalid.code == ErrorCode.INVALID_RESOURCE_TYPES
        assert invalid.status_code == 400

"""Unit tests for catalog configuration lookups."""

from decimal import Decimal

from billing.config.catalog import (
    MODULES,
    STANDARD_PLAN,
    currency_for_region,
    get_module,
    get_resource,
    get_usage_pricing,
)


class TestStandardPlan:
    def test_bundled_modules_are_free_and_active(self):
        for key in STANDARD_PLAN.included_module_keys:
            module = MODULES[key]
            assert module.monthly_price == Decimal("0.00")
            assert module.is_active

    def test_trial_settings(self):
        assert STANDARD_PLAN.trial_duration_days == 30
        assert STANDARD_PLAN.trial_sms_quota == 100


class TestLookups:
    def test_known_module(self):
        module = get_module("inventory")
        assert module is not None
        assert module.monthly_price == Decimal("20.00")

    def test_unknown_module(self):
        assert get_module("nope") is None

    def test_resource(self):
        resource = get_resource("pos")
        assert resource is not None
        assert resource.category == "device"

    def test_usage_pricing(self):
        assert get_usage_pricing("sms").unit_price == Decimal("0.0100")
        assert get_usage_pricing("module_prorated") is None


class TestCurrencyForRegion:
    def test_known_region(self):
        assert currency_for_region("US") == "USD"
        assert currency_for_region("gb") == "GBP"

    def test_unknown_region_falls_back(self):
        assert currency_for_region("ZZ") == "CAD"
        assert currency_for_region(None) == "CAD"

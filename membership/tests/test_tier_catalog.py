"""
Tests for the tier catalog.

Verifies:
- Default catalog grants (boolean and metered)
- Tier monotonicity
- Load-time validation of malformed tables
- Unknown tiers/features deny instead of raising
"""
import copy
from decimal import Decimal

import pytest

from membership.core.errors import ValidationError
from membership.features.catalog.service import (
    DEFAULT_CAPABILITIES,
    DEFAULT_TIERS,
    UNLIMITED,
    CatalogConfigError,
    TierCatalog,
    parse_capability,
    parse_tier,
)
from membership.models.tier import Capability, Tier


def test_default_boolean_grants(catalog):
    assert catalog.is_allowed("free", "basic-troubleshooting")
    assert not catalog.is_allowed("free", "advanced-troubleshooting")
    assert catalog.is_allowed("premium", "advanced-troubleshooting")
    assert catalog.is_allowed("premium", "ai-assistant")
    assert not catalog.is_allowed("premium", "csv-import")
    assert catalog.is_allowed(Tier.PRO, Capability.CSV_IMPORT)


def test_default_metered_limits(catalog):
    assert catalog.limit_for("free", "monthly-flows") == 10
    assert catalog.limit_for("premium", "monthly-flows") == 100
    assert catalog.limit_for("pro", "monthly-flows") == UNLIMITED
    assert catalog.limit_for("free", "monthly-ai-requests") == 0
    assert catalog.limit_for("premium", "monthly-ai-requests") == 50
    assert catalog.limit_for("pro", "monthly-ai-requests") == 200


def test_non_metered_limit_is_unlimited_or_zero(catalog):
    assert catalog.limit_for("premium", "ai-assistant") == UNLIMITED
    assert catalog.limit_for("free", "ai-assistant") == 0
    assert not catalog.is_metered("ai-assistant")
    assert catalog.is_metered("monthly-flows")


def test_ranks_and_prices(catalog):
    assert [d.tier for d in catalog.tiers()] == [Tier.FREE, Tier.PREMIUM, Tier.PRO]
    assert catalog.rank_of("free") < catalog.rank_of("premium") < catalog.rank_of("pro")
    assert catalog.price_of("premium") == Decimal("9.99")
    assert catalog.price_of("pro") == Decimal("19.99")


def test_default_catalog_is_monotonic(catalog):
    """Every capability of a lower tier is present (with at least the same limit) on higher tiers."""
    assert catalog.monotonicity_exceptions() == []
    ordered = [d.tier for d in catalog.tiers()]
    for capability in Capability:
        for lower, higher in zip(ordered, ordered[1:]):
            if catalog.is_allowed(lower, capability):
                assert catalog.is_allowed(higher, capability)


def test_monotonicity_exception_reported():
    capabilities = copy.deepcopy(DEFAULT_CAPABILITIES)
    capabilities["monthly-flows"]["limits"]["pro"] = 5
    custom = TierCatalog(DEFAULT_TIERS, capabilities)
    assert custom.monotonicity_exceptions() == [Capability.MONTHLY_FLOWS]


def test_unknown_lookups_deny_without_raising(catalog):
    assert catalog.is_allowed("platinum", "ai-assistant") is False
    assert catalog.is_allowed("pro", "teleportation") is False
    assert catalog.limit_for("pro", "teleportation") == 0
    assert catalog.rank_of("platinum") == -1
    assert catalog.price_of("platinum") == Decimal("0")


def test_missing_allowed_flag_fails_load():
    capabilities = copy.deepcopy(DEFAULT_CAPABILITIES)
    del capabilities["analytics"]["allowed"]["premium"]
    with pytest.raises(CatalogConfigError):
        TierCatalog(DEFAULT_TIERS, capabilities)


def test_missing_capability_fails_load():
    capabilities = copy.deepcopy(DEFAULT_CAPABILITIES)
    del capabilities["csv-import"]
    with pytest.raises(CatalogConfigError):
        TierCatalog(DEFAULT_TIERS, capabilities)


def test_invalid_limit_fails_load():
    capabilities = copy.deepcopy(DEFAULT_CAPABILITIES)
    capabilities["monthly-flows"]["limits"]["free"] = -5
    with pytest.raises(CatalogConfigError):
        TierCatalog(DEFAULT_TIERS, capabilities)


def test_non_increasing_ranks_fail_load():
    tiers = copy.deepcopy(DEFAULT_TIERS)
    tiers["pro"]["rank"] = 1
    with pytest.raises(CatalogConfigError):
        TierCatalog(tiers, DEFAULT_CAPABILITIES)


def test_unknown_tier_in_table_fails_load():
    tiers = copy.deepcopy(DEFAULT_TIERS)
    tiers["platinum"] = {"name": "Platinum", "rank": 3, "monthly_price": "49.99"}
    with pytest.raises(CatalogConfigError):
        TierCatalog(tiers, DEFAULT_CAPABILITIES)


def test_parse_external_input():
    assert parse_tier("pro") == Tier.PRO
    assert parse_capability("analytics") == Capability.ANALYTICS

    with pytest.raises(ValidationError) as exc:
        parse_tier("platinum")
    assert exc.value.code == "unknown_tier"

    with pytest.raises(ValidationError) as exc:
        parse_capability("teleportation")
    assert exc.value.code == "unknown_feature"


def test_describe_lists_plans(catalog):
    plans = catalog.describe()
    assert [p["tier"] for p in plans] == ["free", "premium", "pro"]
    pro = plans[2]
    assert pro["monthly_price"] == "19.99"
    assert pro["features"]["monthly-flows"] == {"allowed": True, "limit": None}
    assert plans[0]["features"]["monthly-flows"] == {"allowed": True, "limit": 10}
    assert plans[0]["features"]["analytics"] == {"allowed": False}

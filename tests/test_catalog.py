"""Tests for the provider & plan catalog."""

from decimal import Decimal

import pytest

from catalog import ProviderKind, parse_kind
from errors import NotFound, ProviderInactive, ProviderNotFound, ValidationError


class TestProviders:
    def test_add_encrypts_token(self, catalog):
        p = catalog.add_provider("Linode", "linode", "tok-1")
        assert p.api_token_encrypted != "tok-1"
        stored = catalog.get_provider(p.provider_id)
        assert stored.api_token == "tok-1"
        assert stored.has_credentials

    def test_to_dict_hides_token(self, catalog):
        p = catalog.add_provider("Linode", "linode", "tok-1")
        d = p.to_dict()
        assert "api_token_encrypted" not in d
        assert "api_token" not in d
        assert d["has_credentials"] is True

    def test_to_dict_shows_masked_token_hint(self, catalog):
        assert catalog.add_provider("L", "linode", "lin-abcdef-123456").to_dict()["token_hint"] == "lin-…3456"
        assert catalog.add_provider("L", "linode", "short").to_dict()["token_hint"] == "*****"
        assert catalog.add_provider("L", "linode", "").to_dict()["token_hint"] == ""

    def test_unknown_kind_rejected(self, catalog):
        with pytest.raises(ValidationError):
            catalog.add_provider("Vultr", "vultr", "x")

    def test_parse_kind_case_insensitive(self):
        assert parse_kind("LINODE") == ProviderKind.LINODE
        assert parse_kind(ProviderKind.DIGITALOCEAN) == ProviderKind.DIGITALOCEAN

    def test_require_active_provider(self, catalog):
        p = catalog.add_provider("DO", "digitalocean", "tok")
        assert catalog.require_active_provider(p.provider_id).provider_id == p.provider_id
        catalog.set_provider_active(p.provider_id, False)
        with pytest.raises(ProviderInactive):
            catalog.require_active_provider(p.provider_id)

    def test_require_missing_provider(self, catalog):
        with pytest.raises(ProviderNotFound):
            catalog.require_active_provider("prov-nope")

    def test_first_active_provider_of_kind(self, catalog):
        first = catalog.add_provider("L1", "linode", "a")
        catalog.add_provider("L2", "linode", "b")
        assert catalog.first_active_provider("linode").provider_id == first.provider_id
        catalog.set_provider_active(first.provider_id, False)
        assert catalog.first_active_provider("linode").name == "L2"
        assert catalog.first_active_provider("digitalocean") is None

    def test_region_allow_list(self, catalog):
        p = catalog.add_provider("L", "linode", "a", allowed_regions=["us-east"])
        assert p.allows_region("us-east")
        assert not p.allows_region("eu-west")
        open_p = catalog.add_provider("L2", "linode", "a")
        assert open_p.allows_region("anywhere")

    def test_deactivation_keeps_plans(self, catalog):
        p = catalog.add_provider("L", "linode", "a")
        plan = catalog.add_plan(p.provider_id, "g6-nanode-1", "0.0075")
        catalog.set_provider_active(p.provider_id, False)
        assert catalog.get_plan(plan.plan_id) is not None

    def test_set_token(self, catalog):
        p = catalog.add_provider("L", "linode", "")
        assert not p.has_credentials
        updated = catalog.set_provider_token(p.provider_id, "new-token")
        assert updated.api_token == "new-token"


class TestPlans:
    def test_hourly_rate_is_base_plus_markup(self, catalog, linode_provider):
        plan = catalog.add_plan(linode_provider.provider_id, "g6-standard-1",
                                "0.0270", "0.0030")
        assert plan.hourly_rate == Decimal("0.0300")
        assert catalog.get_plan(plan.plan_id).hourly_rate == Decimal("0.0300")

    def test_negative_prices_rejected(self, catalog, linode_provider):
        with pytest.raises(ValidationError):
            catalog.add_plan(linode_provider.provider_id, "x", "-0.01")
        with pytest.raises(ValidationError):
            catalog.add_plan(linode_provider.provider_id, "x", "0.01", "-1")

    def test_stopped_rate_factor_bounds(self, catalog, linode_provider):
        with pytest.raises(ValidationError):
            catalog.add_plan(linode_provider.provider_id, "x", "0.01", stopped_rate_factor="1.5")

    def test_rate_for_status(self, catalog, linode_provider):
        plan = catalog.add_plan(linode_provider.provider_id, "x", "0.10",
                                stopped_rate_factor="0.5")
        assert plan.rate_for_status("running") == Decimal("0.1000")
        assert plan.rate_for_status("stopped") == Decimal("0.0500")

    def test_plan_requires_provider(self, catalog):
        with pytest.raises(ProviderNotFound):
            catalog.add_plan("prov-missing", "x", "0.01")

    def test_require_plan(self, catalog):
        with pytest.raises(NotFound):
            catalog.require_plan("plan-missing")

    def test_list_and_deactivate(self, catalog, linode_provider, do_provider):
        a = catalog.add_plan(linode_provider.provider_id, "a", "0.01")
        catalog.add_plan(do_provider.provider_id, "b", "0.02")
        assert [p.plan_id for p in catalog.list_plans(linode_provider.provider_id)] == [a.plan_id]
        assert len(catalog.list_plans()) == 2
        assert catalog.set_plan_active(a.plan_id, False).active is False

    def test_to_dict_money_as_strings(self, catalog, linode_provider):
        d = catalog.add_plan(linode_provider.provider_id, "a", "0.01", "0.005").to_dict()
        assert d["hourly_rate"] == "0.0150"
        assert d["base_hourly"] == "0.0100"

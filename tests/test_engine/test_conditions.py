"""Tests for the condition catalog (src/engine/conditions.py)."""

import pytest

from src.core.exceptions import ValidationError
from src.db.models import ConfigType
from src.engine.conditions import (
    DEFAULT_CATALOG,
    ConditionCatalog,
    DaysAgoCondition,
    DaysThresholdCondition,
    FlagCondition,
    NumberCompareCondition,
    SelectCondition,
    TextCondition,
    build_condition,
    get_condition,
    list_conditions,
)

# ===========================================================================
# Default catalog
# ===========================================================================


class TestDefaultCatalog:
    """The built-in conditions."""

    def test_ids_are_unique_and_present(self):
        ids = [d.id for d in DEFAULT_CATALOG.list_conditions()]
        assert len(ids) == len(set(ids)) == len(DEFAULT_CATALOG)
        for expected in ("has_policy_type", "policy_count", "policy_expiration", "no_activity"):
            assert expected in DEFAULT_CATALOG

    def test_has_policy_type_is_multi_valued_select(self):
        definition = get_condition("has_policy_type")
        assert isinstance(definition, SelectCondition)
        assert definition.multi_valued is True
        assert definition.field == "active_policy_types"
        assert definition.config_type is ConfigType.SELECT

    def test_policy_count_requires_operator(self):
        definition = get_condition("policy_count")
        assert isinstance(definition, NumberCompareCondition)
        assert definition.requires_operator
        assert definition.max == 20
        assert set(definition.operators) == {
            "equals",
            "at_least",
            "at_most",
            "greater_than",
            "less_than",
        }

    def test_flag_needs_no_value(self):
        definition = get_condition("is_new_customer")
        assert isinstance(definition, FlagCondition)
        assert definition.requires_value is False
        assert definition.requires_operator is False

    def test_unknown_condition(self):
        assert get_condition("favorite_color") is None
        assert get_condition(None) is None

    def test_list_by_category(self):
        timing = list_conditions("Timing")
        assert {d.id for d in timing} == {
            "policy_expiration",
            "policy_effective",
            "customer_since",
            "account_created",
        }

    def test_categories_in_registration_order(self):
        assert DEFAULT_CATALOG.categories()[:2] == ["Account", "Policy"]

    def test_option_label_falls_back_to_value(self):
        definition = get_condition("account_status")
        assert definition.option_label("prior_customer") == "Prior Customer"
        assert definition.option_label("vip") == "vip"

    def test_select_defaults_to_is(self):
        definition = get_condition("account_status")
        assert definition.requires_operator is False
        assert definition.resolve_operator(None) == "is"
        assert definition.accepts("is_not_any")
        assert not definition.accepts("more_than")

    def test_day_offsets_default_to_exact_offset(self):
        assert get_condition("policy_expiration").resolve_operator(None) == "equals_days_from_now"
        assert get_condition("customer_since").resolve_operator(None) == "equals_days_ago"
        assert get_condition("policy_expiration").accepts("more_than_days_future")
        assert not get_condition("customer_since").accepts("between")

    def test_text_conditions_need_operator(self):
        definition = get_condition("email_domain")
        assert isinstance(definition, TextCondition)
        assert definition.config_type is ConfigType.TEXT
        assert definition.requires_operator
        assert not definition.accepts(None)
        assert definition.needs_value("contains")
        assert not definition.needs_value("is_empty")

    def test_aliases_resolve_to_condition(self):
        assert get_condition("active_policy_type").id == "has_policy_type"
        assert get_condition("policy_expiration_date").id == "policy_expiration"
        assert get_condition("policy_effective_date").id == "policy_effective"
        assert "active_policy_type" in DEFAULT_CATALOG

    def test_added_policy_and_account_fields(self):
        for condition_id in (
            "policy_type",
            "policy_term",
            "account_type",
            "last_email_sent",
            "city",
            "zip_code",
        ):
            assert condition_id in DEFAULT_CATALOG
        assert get_condition("policy_term").option_label("12") == "12 Months"
        assert isinstance(get_condition("last_email_sent"), DaysAgoCondition)


# ===========================================================================
# Building from JSON
# ===========================================================================


class TestBuildCondition:
    """Typed construction from the JSON shape."""

    def test_builds_select_with_options(self):
        definition = build_condition(
            {
                "id": "carrier",
                "category": "Policy",
                "label": "Carrier",
                "field": "carrier",
                "configType": "select",
                "options": ["Acme", {"value": "nw", "label": "Northwind"}],
            }
        )
        assert isinstance(definition, SelectCondition)
        assert [o.value for o in definition.options] == ["Acme", "nw"]
        assert definition.option_label("nw") == "Northwind"

    def test_builds_days_threshold(self):
        definition = build_condition(
            {"id": "no_call", "field": "last_call_at", "configType": "days_threshold"}
        )
        assert isinstance(definition, DaysThresholdCondition)
        assert definition.label == "no_call"

    def test_unknown_config_type_rejected(self):
        with pytest.raises(ValidationError, match="configType"):
            build_condition({"id": "x", "field": "x", "configType": "regex"})

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            build_condition({"id": "x", "configType": "none"})

    def test_to_dict_round_trip(self):
        definition = get_condition("policy_count")
        assert build_condition(definition.to_dict()) == definition


class TestConditionCatalog:
    def test_duplicate_ids_rejected(self):
        flag = FlagCondition(id="vip", category="Account", label="VIP", field="vip")
        with pytest.raises(ValidationError, match="Duplicate"):
            ConditionCatalog.from_definitions([flag, flag])

    def test_from_dicts(self):
        catalog = ConditionCatalog.from_dicts(
            [{"id": "vip", "field": "vip", "configType": "none", "category": "Account"}]
        )
        assert "vip" in catalog
        assert len(catalog) == 1

    def test_duplicate_alias_rejected(self):
        vip = FlagCondition(id="vip", category="Account", label="VIP", field="vip")
        gold = FlagCondition(
            id="gold", category="Account", label="Gold", field="gold", aliases=("vip",)
        )
        with pytest.raises(ValidationError, match="Duplicate"):
            ConditionCatalog.from_definitions([vip, gold])

    def test_aliases_survive_to_dict(self):
        definition = get_condition("has_policy_type")
        assert definition.to_dict()["aliases"] == ["active_policy_type"]
        assert build_condition(definition.to_dict()).aliases == ("active_policy_type",)

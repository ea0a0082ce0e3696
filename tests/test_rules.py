"""Tests for the vulnerability rule catalog."""

import json
import logging

import pytest

from certwarden.lib.errors import CatalogError, MissingAttributeError
from certwarden.lib.objects import CertificateTemplate
from certwarden.lib.rules import (
    Condition,
    RuleCatalog,
    VulnerabilityRule,
    render_template,
)

TEMPLATE_DN = "CN=User,CN=Certificate Templates,CN=Public Key Services,CN=Services,CN=Configuration,DC=corp,DC=local"


def config_rule(**overrides):
    rule = {
        "id": "ESC99",
        "technique": "ESC99",
        "object_class": "template",
        "shape": "configuration",
        "conditions": [
            {"field": "enrollee_supplies_subject", "operator": "equals", "value": True}
        ],
        "issue": "{{ObjectName}} is vulnerable",
    }
    rule.update(overrides)
    return rule


class TestDefaultCatalog:
    def test_loads_every_technique(self, rule_catalog):
        assert rule_catalog.errors == {}
        assert rule_catalog.techniques() == [
            "ESC1",
            "ESC2",
            "ESC3",
            "ESC4",
            "ESC5",
            "ESC6",
            "ESC7",
            "ESC8",
            "ESC9",
            "ESC11",
            "ESC13",
            "ESC15",
            "ESC16",
        ]

    def test_multi_line_texts_are_joined(self, rule_catalog):
        rule = rule_catalog.for_technique("ESC1")[0]

        assert "\n" in rule.fix
        assert "{{DistinguishedName}}" in rule.fix

    def test_select_is_case_insensitive(self, rule_catalog):
        selected = rule_catalog.select(["esc4", "ESC8"])

        assert selected.techniques() == ["ESC4", "ESC8"]
        assert len(selected) == 4

    def test_select_nothing_keeps_everything(self, rule_catalog):
        assert rule_catalog.select(None) is rule_catalog


class TestRuleValidation:
    def test_valid_rule(self):
        rule = VulnerabilityRule.from_dict(config_rule())

        assert rule.shape == "configuration"
        assert rule.conditions == (
            Condition("enrollee_supplies_subject", "equals", True),
        )

    @pytest.mark.parametrize(
        "overrides",
        [
            {"technique": ""},
            {"object_class": "printer"},
            {"shape": "graph"},
            {"conditions": [{"field": "no_such_field", "value": True}]},
            {"conditions": [{"field": "enabled", "operator": "like", "value": True}]},
            {"conditions": [{"field": "enabled", "operator": "equals"}]},
            {"principal_lists": ["dangerous_enrollees"]},
            {"shape": "principal"},
            {"shape": "principal", "principal_lists": ["enabled"]},
            {"issue": 42},
        ],
    )
    def test_malformed_rule(self, overrides):
        with pytest.raises(CatalogError):
            VulnerabilityRule.from_dict(config_rule(**overrides))

    def test_unknown_ace_selector(self):
        data = config_rule(
            shape="principal",
            principal_lists=["low_privilege_enrollees"],
            ace_match="ManageEverything",
        )

        with pytest.raises(CatalogError):
            VulnerabilityRule.from_dict(data, permission_names=["GenericAll"])

    def test_permission_name_as_ace_selector(self):
        data = config_rule(
            shape="principal",
            principal_lists=["low_privilege_enrollees"],
            ace_match="GenericAll",
        )

        rule = VulnerabilityRule.from_dict(data, permission_names=["GenericAll"])

        assert rule.ace_match == "GenericAll"

    def test_unary_operator_needs_no_value(self):
        data = config_rule(
            conditions=[{"field": "issuance_policy_linked_groups", "operator": "not_empty"}]
        )

        rule = VulnerabilityRule.from_dict(data)

        assert str(rule.conditions[0]) == "issuance_policy_linked_groups not_empty"


class TestCatalogLoading:
    def test_malformed_rule_disables_its_technique(self, caplog):
        data = [
            config_rule(id="ESC99-a"),
            config_rule(id="ESC99-b", object_class="printer"),
            config_rule(id="ESC1", technique="ESC1"),
        ]

        with caplog.at_level(logging.ERROR, logger="certwarden"):
            catalog = RuleCatalog.from_list(data)

        assert catalog.techniques() == ["ESC1"]
        assert "ESC99" in catalog.errors
        assert "Technique 'ESC99' disabled" in caplog.text

    def test_duplicate_rule_id(self):
        catalog = RuleCatalog.from_list({"rules": [config_rule(), config_rule()]})

        assert len(catalog) == 0
        assert "ESC99" in catalog.errors

    def test_not_a_catalog(self):
        with pytest.raises(CatalogError):
            RuleCatalog.from_list("ESC1")

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(CatalogError):
            RuleCatalog.load(str(tmp_path / "missing.json"))

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": [config_rule()]}))

        catalog = RuleCatalog.load(str(path))

        assert catalog.techniques() == ["ESC99"]


class TestConditions:
    def template(self, **kwargs):
        return CertificateTemplate(name="User", distinguished_name=TEMPLATE_DN, **kwargs)

    def test_missing_attribute(self):
        condition = Condition("authentication_eku", "equals", True)

        with pytest.raises(MissingAttributeError):
            condition.evaluate(self.template())

    def test_contains_is_case_insensitive(self):
        template = self.template(extended_key_usage=("Client Authentication",))

        assert Condition("extended_key_usage", "contains", "client authentication").evaluate(
            template
        )
        assert Condition("extended_key_usage", "not_contains", "Code Signing").evaluate(
            template
        )

    def test_comparisons(self):
        template = self.template(schema_version=2)

        assert Condition("schema_version", "greater_than", 1).evaluate(template)
        assert not Condition("schema_version", "less_than", 2).evaluate(template)
        assert Condition("schema_version", "in", [1, 2]).evaluate(template)

    def test_empty(self):
        template = self.template()

        assert Condition("issuance_policy_linked_groups", "empty").evaluate(template)


def test_render_template():
    text = render_template(
        "{{IdentityReference}} can enroll in {{ObjectName}} ({{Unknown}})",
        {"IdentityReference": "CORP\\alice", "ObjectName": "User"},
    )

    assert text == "CORP\\alice can enroll in User ({{Unknown}})"

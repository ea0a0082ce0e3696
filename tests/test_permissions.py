"""Tests for the permission catalog and classifier."""

import pytest
from conftest import ALICE, DOMAIN_ADMINS, DOMAIN_USERS

from certwarden.lib.constants import (
    EXTENDED_RIGHTS_NAME_MAP,
    AccessControlType,
    ActiveDirectoryRights,
    CertificateAuthorityRights,
)
from certwarden.lib.errors import CatalogError
from certwarden.lib.identity import IdentityResolver, WellKnownStrategy
from certwarden.lib.objects import AccessControlEntry
from certwarden.lib.permissions import (
    PermissionCatalog,
    PermissionClassifier,
    PermissionRule,
)

NAME_FLAG_GUID = "ea1dddc4-60ff-416e-8cc0-17cee534bce7"
UNRELATED_GUID = "bf9679c0-0de6-11d0-a285-00aa003049e2"


def ace(rights, identity=ALICE, deny=False, object_type=None):
    kwargs = {}
    if object_type is not None:
        kwargs["object_type"] = object_type
    return AccessControlEntry(
        identity=identity,
        rights=int(rights),
        access_type=AccessControlType.DENY if deny else AccessControlType.ALLOW,
        **kwargs,
    )


class TestPermissionCatalog:
    def test_default_catalog(self, permission_catalog):
        names = [rule.name for rule in permission_catalog.rules_for("template")]

        assert names[0] == "GenericAll"
        assert "WriteCertificateNameFlag" in names
        assert "ManageCA" not in names
        assert [rule.name for rule in permission_catalog.rules_for("authority")] == [
            "ManageCA",
            "ManageCertificates",
        ]

    def test_property_type_by_name(self, permission_catalog):
        rule = permission_catalog.get("WriteCertificateNameFlag")

        assert rule.property_type == NAME_FLAG_GUID

    @pytest.mark.parametrize(
        "entry",
        [
            {"object_classes": ["template"], "rights": 32},
            {"name": "X", "object_classes": [], "rights": 32},
            {"name": "X", "object_classes": ["printer"], "rights": 32},
            {"name": "X", "object_classes": ["template"], "rights": 0},
            {"name": "X", "object_classes": ["template"], "rights": "32"},
            {
                "name": "X",
                "object_classes": ["template"],
                "rights": 32,
                "property_type": "notAnAttribute",
            },
        ],
    )
    def test_malformed_entry(self, entry):
        with pytest.raises(CatalogError):
            PermissionRule.from_dict(entry)

    def test_duplicate_names(self):
        entry = {"name": "X", "object_classes": ["template"], "rights": 32}

        with pytest.raises(CatalogError):
            PermissionCatalog.from_list([entry, entry])

    def test_not_a_list(self):
        with pytest.raises(CatalogError):
            PermissionCatalog.from_list({"rules": []})

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError):
            PermissionCatalog.load(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "permissions.json"
        path.write_text("{not json")

        with pytest.raises(CatalogError):
            PermissionCatalog.load(str(path))


class TestClassifyAce:
    def test_generic_all_is_dangerous(self, classifier):
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.GENERIC_ALL), "template"
        )

        assert result.dangerous
        assert result.permission == "GenericAll"

    def test_deny_is_never_dangerous(self, classifier):
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.GENERIC_ALL, deny=True), "template"
        )

        assert not result.dangerous
        assert result.permission is None

    def test_first_matching_rule_wins(self, classifier):
        rights = ActiveDirectoryRights.WRITE_DACL | ActiveDirectoryRights.WRITE_OWNER

        result = classifier.classify_ace(ace(rights), "container")

        assert result.permission == "WriteOwner"

    def test_rules_are_scoped_to_object_class(self, classifier):
        manage = ace(CertificateAuthorityRights.MANAGE_CA)

        assert classifier.classify_ace(manage, "authority").permission == "ManageCA"
        assert not classifier.classify_ace(manage, "template").dangerous

    def test_write_property_on_unrelated_attribute(self, classifier):
        """A write to a property no catalog entry names is not dangerous."""
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.WRITE_PROPERTY, object_type=UNRELATED_GUID),
            "template",
        )

        assert not result.dangerous

    @pytest.mark.parametrize(
        "rights",
        [ActiveDirectoryRights.GENERIC_WRITE, ActiveDirectoryRights.GENERIC_ALL],
    )
    def test_generic_rights_scoped_to_unrelated_attribute(self, classifier, rights):
        result = classifier.classify_ace(
            ace(rights, object_type=UNRELATED_GUID), "template"
        )

        assert not result.dangerous
        assert result.permission is None

    def test_generic_write_on_whole_object(self, classifier):
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.GENERIC_WRITE), "template"
        )

        assert result.permission == "GenericWrite"

    def test_write_property_on_named_attribute(self, classifier):
        write_flag = ace(ActiveDirectoryRights.WRITE_PROPERTY, object_type=NAME_FLAG_GUID)

        assert (
            classifier.classify_ace(write_flag, "template").permission
            == "WriteCertificateNameFlag"
        )
        assert not classifier.classify_ace(write_flag, "container").dangerous

    def test_write_all_properties(self, classifier):
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.WRITE_PROPERTY), "computer"
        )

        assert result.permission == "WriteProperty"

    def test_read_is_not_dangerous(self, classifier):
        result = classifier.classify_ace(
            ace(ActiveDirectoryRights.GENERIC_READ), "template"
        )

        assert not result.dangerous


class TestClassifyOwner:
    def test_domain_admins(self, classifier):
        assert classifier.classify_owner(DOMAIN_ADMINS)

    def test_builtin_administrators_by_name(self, classifier):
        assert classifier.classify_owner("BUILTIN\\Administrators")

    def test_regular_user(self, classifier):
        assert not classifier.classify_owner(ALICE)
        assert not classifier.classify_owner("CORP\\alice")

    def test_unresolvable_owner(self, classifier):
        assert not classifier.classify_owner("CORP\\nobody")
        assert not classifier.classify_owner(None)

    def test_without_resolver(self, permission_catalog):
        classifier = PermissionClassifier(permission_catalog)

        assert not classifier.classify_owner("BUILTIN\\Administrators")
        assert classifier.classify_owner("S-1-5-18")

    def test_custom_patterns(self, permission_catalog):
        resolver = IdentityResolver(None, strategies=[WellKnownStrategy()])
        classifier = PermissionClassifier(permission_catalog, resolver)

        assert classifier.classify_owner(ALICE, patterns=["-1104"])
        assert not classifier.classify_owner(DOMAIN_ADMINS, patterns=["-1104"])


class TestTiers:
    def test_split_by_tier(self, classifier):
        dangerous, low_privilege = classifier.split_by_tier(
            [DOMAIN_ADMINS, "S-1-5-11", DOMAIN_USERS, ALICE, ALICE]
        )

        assert dangerous == ("S-1-5-11", DOMAIN_USERS)
        assert low_privilege == (ALICE,)

    def test_privilege_tier(self, classifier):
        assert classifier.privilege_tier("S-1-5-18") == "safe"
        assert classifier.privilege_tier("S-1-1-0") == "dangerous"
        assert classifier.privilege_tier(ALICE) == "low_privilege"


class TestEnrollment:
    def test_enroll_extended_right(self, classifier):
        enroll = ace(
            ActiveDirectoryRights.EXTENDED_RIGHT,
            object_type=EXTENDED_RIGHTS_NAME_MAP["Enroll"],
        )

        assert classifier.grants_enrollment(enroll, "template")

    def test_all_extended_rights(self, classifier):
        assert classifier.grants_enrollment(
            ace(ActiveDirectoryRights.EXTENDED_RIGHT), "template"
        )

    def test_generic_all(self, classifier):
        assert classifier.grants_enrollment(
            ace(ActiveDirectoryRights.GENERIC_ALL), "template"
        )

    def test_other_extended_right(self, classifier):
        assert not classifier.grants_enrollment(
            ace(ActiveDirectoryRights.EXTENDED_RIGHT, object_type=UNRELATED_GUID),
            "template",
        )

    def test_deny(self, classifier):
        enroll = ace(
            ActiveDirectoryRights.EXTENDED_RIGHT,
            deny=True,
            object_type=EXTENDED_RIGHTS_NAME_MAP["Enroll"],
        )

        assert not classifier.grants_enrollment(enroll, "template")

    def test_authority(self, classifier):
        assert classifier.grants_enrollment(
            ace(CertificateAuthorityRights.ENROLL), "authority"
        )
        assert not classifier.grants_enrollment(
            ace(CertificateAuthorityRights.MANAGE_CA), "authority"
        )

    def test_enrollees_in_acl_order(self, classifier):
        aces = [
            ace(ActiveDirectoryRights.GENERIC_READ, identity=DOMAIN_ADMINS),
            ace(ActiveDirectoryRights.GENERIC_ALL, identity=DOMAIN_USERS),
            ace(ActiveDirectoryRights.EXTENDED_RIGHT, identity=ALICE),
            ace(ActiveDirectoryRights.GENERIC_ALL, identity=DOMAIN_USERS),
        ]

        assert classifier.enrollees(aces, "template") == [DOMAIN_USERS, ALICE]
        assert classifier.dangerous_principals(aces, "template") == [DOMAIN_USERS]

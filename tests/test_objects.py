"""Tests for the data model and snapshot loading."""

import pytest

from certwarden.lib.constants import (
    ALL_PROPERTIES_GUID,
    AccessControlType,
    ActiveDirectoryRights,
)
from certwarden.lib.objects import (
    AccessControlEntry,
    CertificateTemplate,
    CertificationAuthority,
    Finding,
    PkiObject,
    load_objects,
)

ENROLL = "0e10c968-78fb-11d2-90d4-00c04f79dc55"


class TestFromDict:
    def test_template(self):
        template = PkiObject.from_dict(
            {
                "object_class": "template",
                "name": "User",
                "distinguished_name": "CN=User",
                "enrollee_supplies_subject": True,
                "enabled_on": ["corp-CA"],
                "security": {
                    "owner": "S-1-5-18",
                    "aces": [{"identity": "S-1-5-11", "rights": 256, "object_type": ENROLL.upper()}],
                },
                "comment": "ignored",
            }
        )

        assert isinstance(template, CertificateTemplate)
        assert template.enabled_on == ("corp-CA",)
        assert template.enrollee_supplies_subject is True
        assert template.authentication_eku is None
        assert template.owner == "S-1-5-18"
        assert template.security.aces[0].object_type == ENROLL

    def test_authority(self):
        (ca,) = load_objects(
            [
                {
                    "object_class": "authority",
                    "name": "corp-CA",
                    "distinguished_name": "CN=corp-CA",
                    "san_flag_enabled": False,
                }
            ]
        )

        assert isinstance(ca, CertificationAuthority)
        assert ca.object_class == "authority"
        assert ca.security is None
        assert ca.owner is None

    def test_unknown_object_class(self):
        with pytest.raises(ValueError):
            PkiObject.from_dict({"object_class": "printer", "name": "x"})

    def test_missing_name(self):
        with pytest.raises(TypeError):
            PkiObject.from_dict({"object_class": "container"})


class TestAccessControlEntry:
    def test_defaults(self):
        ace = AccessControlEntry.from_dict({"identity": "S-1-5-11", "rights": "32"})

        assert ace.rights == 32
        assert ace.access_type == AccessControlType.ALLOW
        assert ace.object_type == ALL_PROPERTIES_GUID
        assert not ace.inherited

    def test_deny(self):
        assert AccessControlEntry.from_dict(
            {"identity": "S-1-5-11", "rights": 32, "access_type": "deny"}
        ).is_deny
        assert AccessControlEntry.from_dict(
            {"identity": "S-1-5-11", "rights": 32, "access_type": 1}
        ).is_deny


class TestFinding:
    def finding(self, **kwargs):
        fields = dict(
            technique="ESC1",
            name="User",
            distinguished_name="CN=User,DC=corp,DC=local",
            object_class="template",
            issue="issue",
            identity_reference="CORP\\alice",
            identity_sid="S-1-5-21-1-2-3-1104",
            right="Enroll",
        )
        fields.update(kwargs)
        return Finding(**fields)

    def test_equivalence_ignores_texts(self):
        first = self.finding()
        second = self.finding(
            issue="other", distinguished_name="cn=user,dc=corp,dc=local"
        )

        assert first == second
        assert hash(first) == hash(second)
        assert first != self.finding(right="GenericAll")

    def test_to_dict(self):
        output = self.finding(member_count=3).to_dict()

        assert output["identity_sid"] == "S-1-5-21-1-2-3-1104"
        assert output["member_count"] == 3
        assert "via_group" not in output


class TestFlagNames:
    def test_single_flag(self):
        assert str(ActiveDirectoryRights.WRITE_DACL) == "WriteDacl"

    def test_combined_flags(self):
        rights = ActiveDirectoryRights.WRITE_DACL | ActiveDirectoryRights.WRITE_OWNER

        assert str(rights) == "WriteDacl, WriteOwner"
        assert rights.to_list() == [
            ActiveDirectoryRights.WRITE_DACL,
            ActiveDirectoryRights.WRITE_OWNER,
        ]

    def test_empty_flag(self):
        assert str(ActiveDirectoryRights(0)) == ""
        assert ActiveDirectoryRights(0).to_list() == []

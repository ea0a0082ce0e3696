"""Tests for security descriptor parsing and SID patterns."""

from impacket.ldap import ldaptypes
from impacket.uuid import string_to_bin

from certwarden.lib.constants import (
    ALL_PROPERTIES_GUID,
    EXTENDED_RIGHTS_NAME_MAP,
    AccessControlType,
    ActiveDirectoryRights,
)
from certwarden.lib.security import (
    is_sid,
    matches_any_sid_pattern,
    matches_sid_pattern,
    parse_security_descriptor,
)

ALICE = "S-1-5-21-1000-2000-3000-1104"
ENROLL = EXTENDED_RIGHTS_NAME_MAP["Enroll"]


def create_ace(sid, mask, ace_type=ldaptypes.ACCESS_ALLOWED_ACE, flags=0):
    ace = ldaptypes.ACE()
    ace["AceType"] = ace_type.ACE_TYPE
    ace["AceFlags"] = flags
    ace_data = ace_type()
    ace_data["Mask"] = ldaptypes.ACCESS_MASK()
    ace_data["Mask"]["Mask"] = mask
    ace_data["Sid"] = ldaptypes.LDAP_SID()
    ace_data["Sid"].fromCanonical(sid)
    ace["Ace"] = ace_data
    return ace


def create_object_ace(sid, mask, guid, ace_type=ldaptypes.ACCESS_ALLOWED_OBJECT_ACE):
    ace = ldaptypes.ACE()
    ace["AceType"] = ace_type.ACE_TYPE
    ace["AceFlags"] = 0
    ace_data = ace_type()
    ace_data["Mask"] = ldaptypes.ACCESS_MASK()
    ace_data["Mask"]["Mask"] = mask
    ace_data["ObjectType"] = string_to_bin(guid)
    ace_data["InheritedObjectType"] = b""
    ace_data["Sid"] = ldaptypes.LDAP_SID()
    ace_data["Sid"].fromCanonical(sid)
    ace_data["Flags"] = ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_OBJECT_TYPE_PRESENT
    ace["Ace"] = ace_data
    return ace


def create_sd(owner, aces):
    sd = ldaptypes.SR_SECURITY_DESCRIPTOR()
    sd["Revision"] = b"\x01"
    sd["Sbz1"] = b"\x00"
    sd["Control"] = 32772
    sd["OwnerSid"] = ldaptypes.LDAP_SID()
    sd["OwnerSid"].fromCanonical(owner)
    sd["GroupSid"] = b""
    sd["Sacl"] = b""

    acl = ldaptypes.ACL()
    acl["AclRevision"] = 4
    acl["Sbz1"] = 0
    acl["Sbz2"] = 0
    acl.aces = list(aces)
    sd["Dacl"] = acl
    return sd.getData()


class TestParseSecurityDescriptor:
    def test_owner_and_order(self):
        raw = create_sd(
            "S-1-5-21-1000-2000-3000-512",
            [
                create_ace(
                    ALICE,
                    int(ActiveDirectoryRights.GENERIC_ALL),
                    ace_type=ldaptypes.ACCESS_DENIED_ACE,
                ),
                create_ace("S-1-5-11", int(ActiveDirectoryRights.GENERIC_READ), flags=0x10),
                create_object_ace(ALICE, int(ActiveDirectoryRights.EXTENDED_RIGHT), ENROLL),
            ],
        )

        sd = parse_security_descriptor(raw)

        assert sd.owner == "S-1-5-21-1000-2000-3000-512"
        assert [ace.identity for ace in sd.aces] == [ALICE, "S-1-5-11", ALICE]

        deny, read, enroll = sd.aces
        assert deny.access_type == AccessControlType.DENY
        assert deny.is_deny
        assert deny.object_type == ALL_PROPERTIES_GUID

        assert read.inherited
        assert read.rights == int(ActiveDirectoryRights.GENERIC_READ)

        assert not enroll.is_deny
        assert enroll.object_type == ENROLL

    def test_denied_object_ace(self):
        raw = create_sd(
            "S-1-5-18",
            [
                create_object_ace(
                    ALICE,
                    int(ActiveDirectoryRights.EXTENDED_RIGHT),
                    ENROLL,
                    ace_type=ldaptypes.ACCESS_DENIED_OBJECT_ACE,
                )
            ],
        )

        (ace,) = parse_security_descriptor(raw).aces

        assert ace.is_deny
        assert ace.object_type == ENROLL


class TestSidPatterns:
    def test_is_sid(self):
        assert is_sid("s-1-5-11")
        assert not is_sid("CORP\\alice")

    def test_suffix_pattern(self):
        assert matches_sid_pattern("S-1-5-21-1-2-3-512", "-512")
        assert not matches_sid_pattern("S-1-5-21-1-2-3-1512", "-512")

    def test_exact_pattern(self):
        assert matches_sid_pattern("s-1-5-18", "S-1-5-18")
        assert not matches_sid_pattern("S-1-5-18-1", "S-1-5-18")

    def test_any_pattern(self):
        assert matches_any_sid_pattern("S-1-5-32-544", ["-512", "S-1-5-32-544"])
        assert not matches_any_sid_pattern("S-1-5-32-545", [])

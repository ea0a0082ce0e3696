"""
Security descriptor parsing for PKI objects.

Raw ``nTSecurityDescriptor`` values are parsed with impacket into an owner SID
and the ordered list of access control entries, keeping deny entries and the
object type of object-specific entries. Order is preserved because the rule
engine always picks the first matching entry.
"""

from typing import Iterable, List, Optional

from impacket.ldap import ldaptypes
from impacket.uuid import bin_to_string
from ldap3.protocol.formatters.formatters import format_sid

from certwarden.lib.constants import ALL_PROPERTIES_GUID, AccessControlType
from certwarden.lib.logger import logging
from certwarden.lib.objects import AccessControlEntry, SecurityDescriptor

# Access Control Entry flags
INHERITED_ACE = 0x10

ALLOWED_ACE_TYPES = (
    ldaptypes.ACCESS_ALLOWED_ACE.ACE_TYPE,
    ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE,
)
DENIED_ACE_TYPES = (
    ldaptypes.ACCESS_DENIED_ACE.ACE_TYPE,
    ldaptypes.ACCESS_DENIED_OBJECT_ACE.ACE_TYPE,
)
OBJECT_ACE_TYPES = (
    ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_TYPE,
    ldaptypes.ACCESS_DENIED_OBJECT_ACE.ACE_TYPE,
)


def parse_security_descriptor(security_descriptor: bytes) -> SecurityDescriptor:
    """
    Parse a binary security descriptor into an owner and ordered ACEs.

    Audit and alarm entries are ignored; only the DACL is read.

    Args:
        security_descriptor: Binary representation of a security descriptor

    Returns:
        Parsed security descriptor
    """
    sd = ldaptypes.SR_SECURITY_DESCRIPTOR()
    sd.fromString(security_descriptor)

    owner: Optional[str] = None
    if sd["OwnerSid"]:
        owner = format_sid(sd["OwnerSid"].getData())

    aces: List[AccessControlEntry] = []
    if sd["Dacl"]:
        for ace in sd["Dacl"]["Data"]:
            entry = _parse_ace(ace)
            if entry is not None:
                aces.append(entry)

    return SecurityDescriptor(owner=owner, aces=tuple(aces))


def _parse_ace(ace: ldaptypes.ACE) -> Optional[AccessControlEntry]:
    ace_type = ace["AceType"]

    if ace_type in ALLOWED_ACE_TYPES:
        access_type = AccessControlType.ALLOW
    elif ace_type in DENIED_ACE_TYPES:
        access_type = AccessControlType.DENY
    else:
        logging.debug(f"Ignoring ACE of type {ace_type:#x}")
        return None

    object_type = ALL_PROPERTIES_GUID
    if ace_type in OBJECT_ACE_TYPES and ace["Ace"].hasFlag(
        ldaptypes.ACCESS_ALLOWED_OBJECT_ACE.ACE_OBJECT_TYPE_PRESENT
    ):
        object_type = bin_to_string(ace["Ace"]["ObjectType"]).lower()

    return AccessControlEntry(
        identity=format_sid(ace["Ace"]["Sid"].getData()),
        rights=ace["Ace"]["Mask"]["Mask"],
        access_type=access_type,
        object_type=object_type,
        inherited=bool(ace["AceFlags"] & INHERITED_ACE),
    )


def is_sid(identity: str) -> bool:
    return identity.upper().startswith("S-1-")


def matches_sid_pattern(sid: str, pattern: str) -> bool:
    """
    Check a SID against a pattern.

    A pattern starting with "S-" matches one SID exactly; a pattern starting
    with "-" matches every SID ending with it, e.g. "-512" matches the
    Domain Admins group of any domain.
    """
    sid = sid.upper()
    pattern = pattern.upper()
    if pattern.startswith("-"):
        return sid.endswith(pattern)
    return sid == pattern


def matches_any_sid_pattern(sid: str, patterns: Iterable[str]) -> bool:
    return any(matches_sid_pattern(sid, pattern) for pattern in patterns)

"""
Typed data model for the auditing pipeline.

Objects are populated once (by the collector or from a snapshot) and are
read-only afterwards, so they can be shared between worker threads:

- Domain: a domain partition of the forest
- Principal: a resolved (or unresolved) security principal
- AccessControlEntry / SecurityDescriptor: owner and ordered DACL of an object
- PkiObject and its kinds: CertificateTemplate, CertificationAuthority,
  PkiContainer and ComputerAccount
- AceClassification: the verdict of the permission classifier for one ACE
- Finding: one concrete vulnerability instance
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from certwarden.lib.constants import ALL_PROPERTIES_GUID, AccessControlType


@dataclass(frozen=True)
class Domain:
    netbios_name: str
    distinguished_name: str
    dns_name: str


@dataclass(frozen=True)
class Principal:
    """
    A security principal as seen by the identity resolver.

    ``resolved`` is False when no strategy could resolve the identity; in that
    case ``sid`` and ``name`` both carry the original identity string.
    """

    sid: str
    name: str
    object_class: str = "unknown"
    distinguished_name: Optional[str] = None
    domain_dn: Optional[str] = None
    member_of: Tuple[str, ...] = ()
    resolved: bool = True

    @property
    def is_group(self) -> bool:
        return self.object_class == "group"


@dataclass(frozen=True)
class AccessControlEntry:
    """
    One entry of a discretionary ACL.

    ``identity`` is normally a SID; snapshots may also carry an account name,
    which is resolved to a SID when the entry is matched.
    """

    identity: str
    rights: int
    access_type: AccessControlType = AccessControlType.ALLOW
    object_type: str = ALL_PROPERTIES_GUID
    inherited: bool = False

    @property
    def is_deny(self) -> bool:
        return self.access_type == AccessControlType.DENY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccessControlEntry":
        access_type = data.get("access_type", "allow")
        if isinstance(access_type, str):
            access_type = AccessControlType[access_type.upper()]
        else:
            access_type = AccessControlType(int(access_type))

        return cls(
            identity=data["identity"],
            rights=int(data["rights"]),
            access_type=access_type,
            object_type=(data.get("object_type") or ALL_PROPERTIES_GUID).lower(),
            inherited=bool(data.get("inherited", False)),
        )


@dataclass(frozen=True)
class SecurityDescriptor:
    owner: Optional[str]
    aces: Tuple[AccessControlEntry, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityDescriptor":
        return cls(
            owner=data.get("owner"),
            aces=tuple(AccessControlEntry.from_dict(ace) for ace in data.get("aces", [])),
        )


@dataclass(frozen=True)
class AceClassification:
    dangerous: bool
    permission: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class PkiObject:
    """
    Base class of the four audited object kinds.

    Boolean properties default to None, meaning the property was not
    collected; rules depending on it skip the object.
    """

    OBJECT_CLASS: ClassVar[str] = ""

    name: str
    distinguished_name: str
    security: Optional[SecurityDescriptor] = None
    dangerous_acl_principals: Tuple[str, ...] = ()
    low_privilege_acl_principals: Tuple[str, ...] = ()

    @property
    def object_class(self) -> str:
        return self.OBJECT_CLASS

    @property
    def owner(self) -> Optional[str]:
        if self.security is None:
            return None
        return self.security.owner

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PkiObject":
        """
        Build an object of the kind named by data["object_class"].

        Unknown keys are ignored; lists become tuples.
        """
        object_class = data.get("object_class")
        if object_class not in OBJECT_TYPES:
            raise ValueError(f"Unknown object class {object_class!r}")

        object_type = OBJECT_TYPES[object_class]
        kwargs: Dict[str, Any] = {}
        for object_field in dataclasses.fields(object_type):
            if object_field.name not in data:
                continue
            value = data[object_field.name]
            if object_field.name == "security" and value is not None:
                value = SecurityDescriptor.from_dict(value)
            elif isinstance(value, list):
                value = tuple(value)
            kwargs[object_field.name] = value

        return object_type(**kwargs)


@dataclass(frozen=True)
class CertificateTemplate(PkiObject):
    OBJECT_CLASS: ClassVar[str] = "template"

    display_name: str = ""
    enabled: Optional[bool] = None
    enabled_on: Tuple[str, ...] = ()
    schema_version: Optional[int] = None
    extended_key_usage: Tuple[str, ...] = ()
    enrollee_supplies_subject: Optional[bool] = None
    authentication_eku: Optional[bool] = None
    any_purpose_eku: Optional[bool] = None
    enrollment_agent_eku: Optional[bool] = None
    requires_manager_approval: Optional[bool] = None
    authorized_signature_required: Optional[bool] = None
    no_security_extension: Optional[bool] = None
    issuance_policy_linked_groups: Tuple[str, ...] = ()
    dangerous_enrollees: Tuple[str, ...] = ()
    low_privilege_enrollees: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CertificationAuthority(PkiObject):
    OBJECT_CLASS: ClassVar[str] = "authority"

    ca_full_name: str = ""
    dns_host_name: str = ""
    templates: Tuple[str, ...] = ()
    san_flag_enabled: Optional[bool] = None
    rpc_encryption_required: Optional[bool] = None
    web_enrollment_http: Optional[bool] = None
    web_enrollment_https_without_epa: Optional[bool] = None
    security_extension_disabled: Optional[bool] = None
    ca_administrators: Tuple[str, ...] = ()
    certificate_managers: Tuple[str, ...] = ()
    dangerous_ca_administrators: Tuple[str, ...] = ()
    low_privilege_ca_administrators: Tuple[str, ...] = ()
    dangerous_certificate_managers: Tuple[str, ...] = ()
    low_privilege_certificate_managers: Tuple[str, ...] = ()
    dangerous_enrollees: Tuple[str, ...] = ()
    low_privilege_enrollees: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PkiContainer(PkiObject):
    OBJECT_CLASS: ClassVar[str] = "container"


@dataclass(frozen=True)
class ComputerAccount(PkiObject):
    OBJECT_CLASS: ClassVar[str] = "computer"

    dns_host_name: str = ""


OBJECT_TYPES: Dict[str, Type[PkiObject]] = {
    object_type.OBJECT_CLASS: object_type
    for object_type in (
        CertificateTemplate,
        CertificationAuthority,
        PkiContainer,
        ComputerAccount,
    )
}


@dataclass(eq=False)
class Finding:
    """
    One concrete vulnerability instance.

    Two findings are equivalent when they share technique, object,
    principal and right (see ``key``).
    """

    technique: str
    name: str
    distinguished_name: str
    object_class: str
    issue: str
    fix: str = ""
    revert: str = ""
    forest: str = ""
    identity_reference: Optional[str] = None
    identity_sid: Optional[str] = None
    right: Optional[str] = None
    enabled_on: Tuple[str, ...] = ()
    parent: Optional["Finding"] = field(default=None, repr=False)
    member_count: Optional[int] = None

    def key(self) -> Tuple[str, str, Optional[str], Optional[str]]:
        return (
            self.technique,
            self.distinguished_name.lower(),
            self.identity_sid,
            self.right,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Finding):
            return NotImplemented
        return self.key() == other.key()

    def __hash__(self) -> int:
        return hash(self.key())

    def to_record(self) -> Dict[str, Optional[str]]:
        """
        Flattened view consumed by summary tables.
        """
        return {
            "name": self.name,
            "object_class": self.object_class,
            "technique": self.technique,
            "identity_reference": self.identity_reference,
        }

    def to_dict(self) -> Dict[str, Any]:
        output: Dict[str, Any] = {
            "technique": self.technique,
            "forest": self.forest,
            "name": self.name,
            "distinguished_name": self.distinguished_name,
            "object_class": self.object_class,
            "identity_reference": self.identity_reference,
            "identity_sid": self.identity_sid,
            "right": self.right,
            "enabled_on": list(self.enabled_on),
            "issue": self.issue,
            "fix": self.fix,
            "revert": self.revert,
        }
        if self.member_count is not None:
            output["member_count"] = self.member_count
        if self.parent is not None:
            output["via_group"] = self.parent.identity_reference
        return output


def load_objects(data: List[Dict[str, Any]]) -> List[PkiObject]:
    """
    Build typed objects from a list of snapshot dictionaries.
    """
    return [PkiObject.from_dict(item) for item in data]

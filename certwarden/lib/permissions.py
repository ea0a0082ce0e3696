"""
Permission classification for PKI objects.

The PermissionClassifier answers two questions about an object's security
descriptor:

- is a given access control entry dangerous for this kind of object
  (matched against the declarative permission catalog)
- is the object's owner one of the expected administrative principals

It also sorts principals into privilege tiers (safe, dangerous,
low privilege) and detects entries that grant certificate enrollment,
which the collector uses to build the enrollee and ACL principal lists.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from certwarden.lib.constants import (
    ALL_PROPERTIES_GUID,
    DANGEROUS_PRINCIPAL_PATTERNS,
    EXTENDED_RIGHTS_NAME_MAP,
    PROPERTY_GUID_MAP,
    RIGHTS_TYPES,
    SAFE_PRINCIPAL_PATTERNS,
    STANDARD_OWNER_PATTERNS,
    ActiveDirectoryRights,
    CertificateAuthorityRights,
)
from certwarden.lib.errors import CatalogError
from certwarden.lib.files import data_file, read_json_file
from certwarden.lib.logger import logging
from certwarden.lib.objects import AccessControlEntry, AceClassification
from certwarden.lib.security import is_sid, matches_any_sid_pattern

GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)

PROPERTY_NAME_MAP = {name.lower(): guid for guid, name in PROPERTY_GUID_MAP.items()}

ENROLLMENT_RIGHTS = (
    EXTENDED_RIGHTS_NAME_MAP["Enroll"],
    EXTENDED_RIGHTS_NAME_MAP["AutoEnroll"],
    EXTENDED_RIGHTS_NAME_MAP["All-Extended-Rights"],
)

SAFE = "safe"
DANGEROUS = "dangerous"
LOW_PRIVILEGE = "low_privilege"


@dataclass(frozen=True)
class PermissionRule:
    """
    One entry of the permission catalog.

    An allow ACE matches when it carries every bit of ``rights`` and targets
    ``property_type``. Without a ``property_type`` only entries that are not
    scoped to a single property or right match.
    """

    name: str
    object_classes: Tuple[str, ...]
    rights: int
    property_type: Optional[str] = None
    description: str = ""

    def applies_to(self, object_class: str) -> bool:
        return object_class in self.object_classes

    def matches(self, ace: AccessControlEntry) -> bool:
        if ace.rights & self.rights != self.rights:
            return False
        if self.property_type is None:
            return ace.object_type == ALL_PROPERTIES_GUID
        return ace.object_type == self.property_type

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionRule":
        """
        Raises:
            CatalogError: If the entry is malformed
        """
        name = data.get("name")
        if not name:
            raise CatalogError("Permission entry without a name")

        object_classes = data.get("object_classes")
        if not object_classes or not isinstance(object_classes, list):
            raise CatalogError("'object_classes' must be a non-empty list", name)

        unknown = [oc for oc in object_classes if oc not in RIGHTS_TYPES]
        if unknown:
            raise CatalogError(f"Unknown object classes {unknown!r}", name)

        rights = data.get("rights")
        if isinstance(rights, bool) or not isinstance(rights, int) or rights <= 0:
            raise CatalogError("'rights' must be a positive integer mask", name)

        return cls(
            name=name,
            object_classes=tuple(object_classes),
            rights=rights,
            property_type=parse_property_type(data.get("property_type"), name),
            description=data.get("description", ""),
        )


def parse_property_type(value: Optional[str], rule_name: str) -> Optional[str]:
    """
    Accept a property GUID or a known attribute name.
    """
    if value is None:
        return None

    lowered = value.lower()
    if GUID_PATTERN.match(lowered):
        return lowered
    if lowered in PROPERTY_NAME_MAP:
        return PROPERTY_NAME_MAP[lowered]

    raise CatalogError(f"Unknown property type {value!r}", rule_name)


class PermissionCatalog:
    """
    Ordered list of permission rules, indexed by object class.
    """

    def __init__(self, rules: Sequence[PermissionRule]) -> None:
        self.rules = tuple(rules)
        self._by_class: Dict[str, Tuple[PermissionRule, ...]] = {}
        for object_class in RIGHTS_TYPES:
            self._by_class[object_class] = tuple(
                rule for rule in self.rules if rule.applies_to(object_class)
            )

    def rules_for(self, object_class: str) -> Tuple[PermissionRule, ...]:
        return self._by_class.get(object_class, ())

    def get(self, name: str) -> Optional[PermissionRule]:
        for rule in self.rules:
            if rule.name == name:
                return rule
        return None

    def __len__(self) -> int:
        return len(self.rules)

    @classmethod
    def from_list(cls, data: Any) -> "PermissionCatalog":
        if isinstance(data, dict):
            data = data.get("permissions")
        if not isinstance(data, list):
            raise CatalogError("Permission catalog must be a list of permissions")

        rules = [PermissionRule.from_dict(entry) for entry in data]

        names = [rule.name for rule in rules]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise CatalogError(f"Duplicate permission names: {sorted(duplicates)!r}")

        return cls(rules)

    @classmethod
    def load(cls, path: str) -> "PermissionCatalog":
        """
        Load a permission catalog from a JSON file.

        Raises:
            CatalogError: If the file is missing or malformed
        """
        catalog = cls.from_list(read_json_file(path))
        logging.debug(f"Loaded {len(catalog)} permission rules from {path!r}")
        return catalog

    @classmethod
    def default(cls) -> "PermissionCatalog":
        return cls.load(data_file("permissions.json"))


class PermissionClassifier:
    def __init__(
        self,
        catalog: PermissionCatalog,
        resolver: Optional[Any] = None,
        standard_owner_patterns: Sequence[str] = STANDARD_OWNER_PATTERNS,
        safe_patterns: Sequence[str] = SAFE_PRINCIPAL_PATTERNS,
        dangerous_patterns: Sequence[str] = DANGEROUS_PRINCIPAL_PATTERNS,
    ) -> None:
        self.catalog = catalog
        self.resolver = resolver
        self.standard_owner_patterns = tuple(standard_owner_patterns)
        self.safe_patterns = tuple(safe_patterns)
        self.dangerous_patterns = tuple(dangerous_patterns)

    def classify_ace(
        self, ace: AccessControlEntry, object_class: str
    ) -> AceClassification:
        """
        Classify one ACE of an object of the given class.

        Deny entries are never dangerous. For allow entries the first
        applicable catalog rule that matches wins.
        """
        if ace.is_deny:
            return AceClassification(dangerous=False)

        for rule in self.catalog.rules_for(object_class):
            if rule.matches(ace):
                return AceClassification(
                    dangerous=True,
                    permission=rule.name,
                    description=rule.description,
                )

        return AceClassification(dangerous=False)

    def classify_owner(
        self, owner: Optional[str], patterns: Optional[Sequence[str]] = None
    ) -> bool:
        """
        Return True if the owner is a standard (administrative) owner.

        Owners given as account names are resolved to a SID first; owners
        that cannot be resolved are not standard.
        """
        if not owner:
            return False

        if patterns is None:
            patterns = self.standard_owner_patterns

        sid = owner
        if not is_sid(sid):
            if self.resolver is None:
                return False
            sid = self.resolver.to_sid(owner)
            if not is_sid(sid):
                logging.debug(f"Owner {owner!r} could not be resolved to a SID")
                return False

        return matches_any_sid_pattern(sid, patterns)

    def privilege_tier(self, sid: str) -> str:
        if matches_any_sid_pattern(sid, self.safe_patterns):
            return SAFE
        if matches_any_sid_pattern(sid, self.dangerous_patterns):
            return DANGEROUS
        return LOW_PRIVILEGE

    def split_by_tier(self, sids: Iterable[str]) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        """
        Split SIDs into (dangerous, low privilege), dropping safe principals.
        """
        dangerous: List[str] = []
        low_privilege: List[str] = []
        for sid in sids:
            tier = self.privilege_tier(sid)
            if tier == DANGEROUS and sid not in dangerous:
                dangerous.append(sid)
            elif tier == LOW_PRIVILEGE and sid not in low_privilege:
                low_privilege.append(sid)
        return tuple(dangerous), tuple(low_privilege)

    def grants_enrollment(self, ace: AccessControlEntry, object_class: str) -> bool:
        """
        Return True if an ACE lets its principal request certificates.
        """
        if ace.is_deny:
            return False

        if object_class == "authority":
            return bool(ace.rights & CertificateAuthorityRights.ENROLL)

        if ace.rights & ActiveDirectoryRights.GENERIC_ALL == ActiveDirectoryRights.GENERIC_ALL:
            return True

        return bool(
            ace.rights & ActiveDirectoryRights.EXTENDED_RIGHT
            and ace.object_type in ENROLLMENT_RIGHTS
        )

    def dangerous_principals(
        self, aces: Iterable[AccessControlEntry], object_class: str
    ) -> List[str]:
        """
        Identities holding at least one dangerous ACE, in ACL order.
        """
        identities: List[str] = []
        for ace in aces:
            if ace.identity in identities:
                continue
            if self.classify_ace(ace, object_class).dangerous:
                identities.append(ace.identity)
        return identities

    def enrollees(
        self, aces: Iterable[AccessControlEntry], object_class: str
    ) -> List[str]:
        """
        Identities holding an ACE that grants enrollment, in ACL order.
        """
        identities: List[str] = []
        for ace in aces:
            if ace.identity in identities:
                continue
            if self.grants_enrollment(ace, object_class):
                identities.append(ace.identity)
        return identities

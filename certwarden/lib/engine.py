"""
Rule evaluation engine.

The RuleEngine applies vulnerability rules to PKI objects and produces
findings. Decisions are taken from typed object state and from the
permission classifier only; the issue/fix/revert templates are rendered
afterwards and never influence which objects or principals match.
"""

import concurrent.futures
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from certwarden.lib.constants import (
    EXTENDED_RIGHTS_MAP,
    RIGHTS_TYPES,
    ActiveDirectoryRights,
)
from certwarden.lib.errors import MissingAttributeError
from certwarden.lib.identity import IdentityResolver
from certwarden.lib.issues import IssueStore
from certwarden.lib.logger import logging
from certwarden.lib.objects import (
    AccessControlEntry,
    CertificationAuthority,
    Finding,
    PkiObject,
)
from certwarden.lib.permissions import PermissionClassifier
from certwarden.lib.rules import RuleCatalog, VulnerabilityRule, render_template
from certwarden.lib.security import is_sid


class RuleEngine:
    def __init__(
        self,
        rules: RuleCatalog,
        classifier: PermissionClassifier,
        resolver: IdentityResolver,
        forest: str = "",
    ) -> None:
        self.rules = rules
        self.classifier = classifier
        self.resolver = resolver
        self.forest = forest

    def evaluate(self, technique: str, objects: Iterable[PkiObject]) -> List[Finding]:
        """
        Evaluate every rule of a technique against the objects.

        A technique without rules (unknown, or disabled because its catalog
        entry is malformed) yields no findings.
        """
        rules = self.rules.for_technique(technique)
        if not rules:
            if technique in self.rules.errors:
                logging.error(
                    f"Cannot evaluate {technique}: {self.rules.errors[technique]}"
                )
            else:
                logging.debug(f"No rules for technique {technique!r}")
            return []

        findings: List[Finding] = []
        for obj in objects:
            for rule in rules:
                findings.extend(self.evaluate_rule(rule, obj))
        return findings

    def evaluate_rule(self, rule: VulnerabilityRule, obj: PkiObject) -> List[Finding]:
        """
        Evaluate one rule against one object.
        """
        if obj.object_class != rule.object_class:
            return []

        try:
            if not rule.matches(obj):
                return []
        except MissingAttributeError as e:
            logging.debug(f"Skipping {rule.technique} check ({rule.id}): {e}")
            return []

        if rule.shape == "configuration":
            return [self._finding(rule, obj)]

        if obj.security is None:
            logging.debug(
                f"Skipping {rule.technique} check ({rule.id}): "
                f"{obj.name!r} has no security descriptor"
            )
            return []

        if rule.shape == "owner":
            return self._evaluate_owner(rule, obj)

        return self._evaluate_principals(rule, obj)

    def _evaluate_owner(self, rule: VulnerabilityRule, obj: PkiObject) -> List[Finding]:
        owner = obj.owner
        if owner is None:
            logging.debug(
                f"Skipping {rule.technique} check ({rule.id}): {obj.name!r} has no owner"
            )
            return []

        if self.classifier.classify_owner(owner):
            return []

        sid = self.resolver.to_sid(owner)
        return [
            self._finding(
                rule,
                obj,
                identity_reference=self.resolver.to_account_name(sid)
                if is_sid(sid)
                else owner,
                identity_sid=sid,
                right="Owner",
            )
        ]

    def _evaluate_principals(
        self, rule: VulnerabilityRule, obj: PkiObject
    ) -> List[Finding]:
        findings: List[Finding] = []
        for sid in self._flagged_principals(rule, obj):
            match = self.match_ace(rule, obj, sid)
            if match is None:
                logging.debug(
                    f"No ACE matching {rule.ace_match!r} for {sid!r} on {obj.name!r}, skipping"
                )
                continue

            _, right = match
            findings.append(
                self._finding(
                    rule,
                    obj,
                    identity_reference=self.resolver.to_account_name(sid),
                    identity_sid=sid,
                    right=right,
                )
            )
        return findings

    def _flagged_principals(self, rule: VulnerabilityRule, obj: PkiObject) -> List[str]:
        sids: List[str] = []
        for list_field in rule.principal_lists:
            for identity in getattr(obj, list_field):
                sid = self.resolver.to_sid(identity)
                if sid not in sids:
                    sids.append(sid)
        return sids

    def ace_sid(self, ace: AccessControlEntry) -> str:
        return self.resolver.to_sid(ace.identity)

    def match_ace(
        self, rule: VulnerabilityRule, obj: PkiObject, sid: str
    ) -> Optional[Tuple[AccessControlEntry, str]]:
        """
        Find the first allow ACE of a principal that satisfies the rule's
        ACE selector, and the name of the right it grants.
        """
        if obj.security is None:
            return None

        for ace in obj.security.aces:
            if ace.is_deny or self.ace_sid(ace) != sid:
                continue

            right = self._select(rule.ace_match, ace, obj.object_class)
            if right is not None:
                return ace, right

        return None

    def _select(
        self, selector: str, ace: AccessControlEntry, object_class: str
    ) -> Optional[str]:
        if selector == "any":
            return rights_to_str(ace.rights, object_class)

        if selector == "dangerous":
            classification = self.classifier.classify_ace(ace, object_class)
            return classification.permission if classification.dangerous else None

        if selector == "enroll":
            if not self.classifier.grants_enrollment(ace, object_class):
                return None
            return enrollment_right_name(ace, object_class)

        permission = self.classifier.catalog.get(selector)
        if (
            permission is not None
            and permission.applies_to(object_class)
            and permission.matches(ace)
        ):
            return permission.name
        return None

    def _finding(
        self,
        rule: VulnerabilityRule,
        obj: PkiObject,
        identity_reference: Optional[str] = None,
        identity_sid: Optional[str] = None,
        right: Optional[str] = None,
    ) -> Finding:
        tokens = self.tokens(rule, obj, identity_reference, identity_sid, right)
        return Finding(
            technique=rule.technique,
            name=obj.name,
            distinguished_name=obj.distinguished_name,
            object_class=obj.object_class,
            issue=render_template(rule.issue, tokens),
            fix=render_template(rule.fix, tokens),
            revert=render_template(rule.revert, tokens),
            forest=self.forest,
            identity_reference=identity_reference,
            identity_sid=identity_sid,
            right=right,
            enabled_on=tuple(getattr(obj, "enabled_on", ())),
        )

    def tokens(
        self,
        rule: VulnerabilityRule,
        obj: PkiObject,
        identity_reference: Optional[str],
        identity_sid: Optional[str],
        right: Optional[str],
    ) -> Dict[str, str]:
        ca_full_name = ""
        if isinstance(obj, CertificationAuthority):
            ca_full_name = obj.ca_full_name or f"{obj.dns_host_name}\\{obj.name}"

        return {
            "ObjectName": obj.name,
            "CAFullName": ca_full_name,
            "IdentityReference": identity_reference or "",
            "IdentitySid": identity_sid or "",
            "DistinguishedName": obj.distinguished_name,
            "Forest": self.forest,
            "Technique": rule.technique,
            "Right": right or "",
        }

    def run(
        self,
        objects: Sequence[PkiObject],
        store: Optional[IssueStore] = None,
        workers: int = 1,
    ) -> IssueStore:
        """
        Evaluate every rule against every object and collect the findings.

        With more than one worker, (rule, object) pairs are evaluated on a
        thread pool. Findings are added to the store in catalog order either
        way, so the output does not depend on scheduling.
        """
        if store is None:
            store = IssueStore()

        pairs = [
            (rule, obj)
            for rule in self.rules
            for obj in objects
            if obj.object_class == rule.object_class
        ]
        logging.debug(f"Evaluating {len(pairs)} rule/object pairs")

        if workers <= 1:
            results = [self.evaluate_rule(rule, obj) for rule, obj in pairs]
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(self.evaluate_rule, rule, obj) for rule, obj in pairs
                ]
                results = [future.result() for future in futures]

        for findings in results:
            for finding in findings:
                store.add(finding)

        return store


def rights_to_str(rights: int, object_class: str) -> str:
    rights_type = RIGHTS_TYPES.get(object_class, ActiveDirectoryRights)
    value = rights_type(rights)
    return str(value) or repr(rights)


def enrollment_right_name(ace: AccessControlEntry, object_class: str) -> str:
    if object_class == "authority":
        return "Enroll"
    if ace.rights & ActiveDirectoryRights.GENERIC_ALL == ActiveDirectoryRights.GENERIC_ALL:
        return "GenericAll"
    return EXTENDED_RIGHTS_MAP.get(ace.object_type, "Enroll")

"""
Vulnerability rule catalog.

Each rule describes one check of one technique against one object class:

- conditions: typed (field, operator, value) predicates over the object's
  properties, all of which must hold
- shape: "configuration" (no principal), "principal" (one finding per
  flagged principal holding a matching ACE) or "owner" (one finding when the
  owner is not a standard owner)
- principal_lists: the object fields listing flagged principals
- ace_match: which ACE of a flagged principal counts as the evidence
- issue / fix / revert: text templates with {{Token}} placeholders

Rules are validated once when the catalog is loaded. A malformed rule
disables the whole technique it belongs to; an unreadable catalog file is
fatal.
"""

import dataclasses
import typing
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from certwarden.lib.errors import CatalogError, MissingAttributeError
from certwarden.lib.files import data_file, read_json_file
from certwarden.lib.logger import logging
from certwarden.lib.objects import OBJECT_TYPES, PkiObject

SHAPES = ("configuration", "principal", "owner")
ACE_SELECTORS = ("any", "dangerous", "enroll")


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected).lower() in actual.lower()
    return any(
        str(item).lower() == str(expected).lower() for item in actual
    )


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "in": lambda actual, expected: actual in expected,
    "contains": _contains,
    "not_contains": lambda actual, expected: not _contains(actual, expected),
    "empty": lambda actual, _: len(actual) == 0,
    "not_empty": lambda actual, _: len(actual) > 0,
    "greater_than": lambda actual, expected: actual > expected,
    "less_than": lambda actual, expected: actual < expected,
}

# Operators that take no value
UNARY_OPERATORS = ("empty", "not_empty")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None

    def evaluate(self, obj: PkiObject) -> bool:
        """
        Raises:
            MissingAttributeError: If the object has no value for the field
        """
        actual = getattr(obj, self.field)
        if actual is None:
            raise MissingAttributeError(obj.name, self.field)
        return OPERATORS[self.operator](actual, self.value)

    def __str__(self) -> str:
        if self.operator in UNARY_OPERATORS:
            return f"{self.field} {self.operator}"
        return f"{self.field} {self.operator} {self.value!r}"


def _list_fields(object_class: str) -> Set[str]:
    return {
        object_field.name
        for object_field in dataclasses.fields(OBJECT_TYPES[object_class])
        if typing.get_origin(object_field.type) is tuple
    }


def _text(value: Any, name: str, rule_id: str) -> str:
    # Multi-line texts (scripts) may be given as a list of lines
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(str(line) for line in value)
    if isinstance(value, str):
        return value
    raise CatalogError(f"'{name}' must be a string or a list of lines", rule_id)


@dataclass(frozen=True)
class VulnerabilityRule:
    id: str
    technique: str
    object_class: str
    shape: str
    conditions: Tuple[Condition, ...] = ()
    principal_lists: Tuple[str, ...] = ()
    ace_match: str = "any"
    description: str = ""
    issue: str = ""
    fix: str = ""
    revert: str = ""

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], permission_names: Optional[Sequence[str]] = None
    ) -> "VulnerabilityRule":
        """
        Build and validate a rule.

        Raises:
            CatalogError: If the rule is malformed
        """
        rule_id = data.get("id") or data.get("technique")
        if not rule_id:
            raise CatalogError("Rule without an id or technique")

        technique = data.get("technique")
        if not technique:
            raise CatalogError("Missing 'technique'", rule_id)

        object_class = data.get("object_class")
        if object_class not in OBJECT_TYPES:
            raise CatalogError(f"Unknown object class {object_class!r}", rule_id)

        shape = data.get("shape", "configuration")
        if shape not in SHAPES:
            raise CatalogError(f"Unknown shape {shape!r}", rule_id)

        fields = {f.name for f in dataclasses.fields(OBJECT_TYPES[object_class])}
        conditions: List[Condition] = []
        for condition in data.get("conditions", []):
            field_name = condition.get("field")
            operator = condition.get("operator", "equals")
            if field_name not in fields:
                raise CatalogError(
                    f"{object_class!r} objects have no field {field_name!r}", rule_id
                )
            if operator not in OPERATORS:
                raise CatalogError(f"Unknown operator {operator!r}", rule_id)
            if operator not in UNARY_OPERATORS and "value" not in condition:
                raise CatalogError(
                    f"Condition on {field_name!r} has no value", rule_id
                )
            conditions.append(
                Condition(field_name, operator, condition.get("value"))
            )

        principal_lists = tuple(data.get("principal_lists", []))
        list_fields = _list_fields(object_class)
        for list_field in principal_lists:
            if list_field not in list_fields:
                raise CatalogError(
                    f"{list_field!r} is not a list field of {object_class!r} objects",
                    rule_id,
                )

        if shape == "principal" and not principal_lists:
            raise CatalogError("Principal rules need 'principal_lists'", rule_id)
        if shape != "principal" and principal_lists:
            raise CatalogError(
                f"'principal_lists' is not allowed for {shape!r} rules", rule_id
            )

        ace_match = data.get("ace_match", "any")
        if ace_match not in ACE_SELECTORS:
            if permission_names is not None and ace_match not in permission_names:
                raise CatalogError(f"Unknown ACE selector {ace_match!r}", rule_id)

        return cls(
            id=rule_id,
            technique=technique,
            object_class=object_class,
            shape=shape,
            conditions=tuple(conditions),
            principal_lists=principal_lists,
            ace_match=ace_match,
            description=data.get("description", ""),
            issue=_text(data.get("issue"), "issue", rule_id),
            fix=_text(data.get("fix"), "fix", rule_id),
            revert=_text(data.get("revert"), "revert", rule_id),
        )

    def matches(self, obj: PkiObject) -> bool:
        """
        Raises:
            MissingAttributeError: If a condition field is not set on the object
        """
        return all(condition.evaluate(obj) for condition in self.conditions)


def render_template(template: str, tokens: Dict[str, str]) -> str:
    """
    Substitute {{Token}} placeholders by literal replacement.
    """
    text = template
    for token, value in tokens.items():
        text = text.replace("{{" + token + "}}", value)
    return text


class RuleCatalog:
    """
    The validated vulnerability rules, in catalog order.
    """

    def __init__(
        self,
        rules: Sequence[VulnerabilityRule],
        errors: Optional[Dict[str, CatalogError]] = None,
    ) -> None:
        self.rules = tuple(rules)
        self.errors: Dict[str, CatalogError] = errors or {}

    def techniques(self) -> List[str]:
        techniques: List[str] = []
        for rule in self.rules:
            if rule.technique not in techniques:
                techniques.append(rule.technique)
        return techniques

    def for_technique(self, technique: str) -> Tuple[VulnerabilityRule, ...]:
        return tuple(rule for rule in self.rules if rule.technique == technique)

    def select(self, techniques: Optional[Sequence[str]]) -> "RuleCatalog":
        """
        Restrict the catalog to some techniques (case-insensitive).
        """
        if not techniques:
            return self
        wanted = {technique.upper() for technique in techniques}
        return RuleCatalog(
            [rule for rule in self.rules if rule.technique.upper() in wanted],
            self.errors,
        )

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> typing.Iterator[VulnerabilityRule]:
        return iter(self.rules)

    @classmethod
    def from_list(
        cls, data: Any, permission_names: Optional[Sequence[str]] = None
    ) -> "RuleCatalog":
        if isinstance(data, dict):
            data = data.get("rules")
        if not isinstance(data, list):
            raise CatalogError("Rule catalog must be a list of rules")

        rules: List[VulnerabilityRule] = []
        errors: Dict[str, CatalogError] = {}
        seen: Set[str] = set()

        for entry in data:
            technique = entry.get("technique") if isinstance(entry, dict) else None
            try:
                if not isinstance(entry, dict):
                    raise CatalogError(f"Rule must be an object, got {entry!r}")
                rule = VulnerabilityRule.from_dict(entry, permission_names)
                if rule.id in seen:
                    raise CatalogError("Duplicate rule id", rule.id)
                seen.add(rule.id)
                rules.append(rule)
            except CatalogError as e:
                logging.error(f"Invalid rule catalog entry: {e}")
                errors[technique or str(e)] = e

        # A malformed rule disables every rule of its technique
        disabled = [
            rule.technique for rule in rules if rule.technique in errors
        ]
        for technique in sorted(set(disabled)):
            logging.error(f"Technique {technique!r} disabled because of invalid rules")

        return cls(
            [rule for rule in rules if rule.technique not in errors], errors
        )

    @classmethod
    def load(
        cls, path: str, permission_names: Optional[Sequence[str]] = None
    ) -> "RuleCatalog":
        """
        Load and validate a rule catalog from a JSON file.

        Raises:
            CatalogError: If the file is missing or is not a rule catalog
        """
        catalog = cls.from_list(read_json_file(path), permission_names)
        logging.debug(
            f"Loaded {len(catalog)} rules for {len(catalog.techniques())} techniques from {path!r}"
        )
        return catalog

    @classmethod
    def default(cls, permission_names: Optional[Sequence[str]] = None) -> "RuleCatalog":
        return cls.load(data_file("vulnerabilities.json"), permission_names)

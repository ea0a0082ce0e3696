"""
Issue store: the deduplicated index of findings produced by an audit.

Findings are grouped by (distinguished name, technique). Adding a finding
that is equivalent to a stored one (same technique, object, principal and
right) is a no-op, and the check-then-insert is atomic so concurrent rule
evaluation cannot double-insert.
"""

from threading import Lock
from typing import Dict, List, Optional, Tuple

from certwarden.lib.groups import GroupExpander
from certwarden.lib.logger import logging
from certwarden.lib.objects import Finding
from certwarden.lib.security import is_sid


class IssueStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._findings: Dict[Tuple[str, str], List[Finding]] = {}

    @staticmethod
    def _key(finding: Finding) -> Tuple[str, str]:
        return finding.distinguished_name.lower(), finding.technique

    def add(self, finding: Finding) -> bool:
        """
        Store a finding unless an equivalent one is already stored.

        Returns:
            True if the finding was stored, False if it was a duplicate
        """
        with self._lock:
            findings = self._findings.setdefault(self._key(finding), [])
            if finding in findings:
                logging.debug(
                    f"Discarding duplicate {finding.technique} finding on {finding.name!r}"
                )
                return False
            findings.append(finding)
            return True

    def contains(self, finding: Finding) -> bool:
        with self._lock:
            return finding in self._findings.get(self._key(finding), [])

    def get(self, distinguished_name: str, technique: str) -> List[Finding]:
        with self._lock:
            return list(self._findings.get((distinguished_name.lower(), technique), []))

    def findings(self) -> List[Finding]:
        """
        All stored findings, in insertion order per (object, technique).
        """
        with self._lock:
            return [finding for findings in self._findings.values() for finding in findings]

    def records(self) -> List[Dict[str, Optional[str]]]:
        return [finding.to_record() for finding in self.findings()]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(findings) for findings in self._findings.values())

    def expand_group_findings(
        self, expander: GroupExpander, include_group_finding: bool = False
    ) -> List[Finding]:
        """
        Replace findings held by a group with one finding per direct member.

        Member findings point back to the group finding instead of repeating
        its remediation. Members that are not cached as resolved principals
        are skipped, and the group itself is never one of its own members.
        The group finding is kept (with its member count) when
        include_group_finding is set or when it has no resolvable members.

        The store itself is not modified, apart from member counts.
        """
        resolver = expander.resolver

        output: List[Finding] = []
        seen = set()

        def emit(finding: Finding) -> None:
            if finding.key() in seen:
                return
            seen.add(finding.key())
            output.append(finding)

        for finding in self.findings():
            sid = finding.identity_sid
            if sid is None or not is_sid(sid):
                emit(finding)
                continue

            group = resolver.resolve_by_sid(sid)
            if not group.is_group:
                emit(finding)
                continue

            member_findings: List[Finding] = []
            for member_sid in expander.members(sid):
                if member_sid == group.sid:
                    continue

                member = resolver.cached(member_sid)
                if member is None:
                    logging.debug(
                        f"Skipping unresolved member {member_sid!r} of {group.name!r}"
                    )
                    continue

                member_findings.append(
                    member_finding(finding, group.name, member.name, member.sid)
                )

            if include_group_finding or not member_findings:
                with self._lock:
                    finding.member_count = len(member_findings)
                emit(finding)

            for member in member_findings:
                emit(member)

        return output


def member_finding(
    group_finding: Finding, group_name: str, member_name: str, member_sid: str
) -> Finding:
    """
    Build the finding of one group member from the group's finding.
    """
    return Finding(
        technique=group_finding.technique,
        name=group_finding.name,
        distinguished_name=group_finding.distinguished_name,
        object_class=group_finding.object_class,
        issue=(
            f"{member_name} is exploitable via membership in group {group_name}. "
            f"{group_finding.issue}"
        ).strip(),
        fix=(
            f"Remediate the {group_finding.technique} finding for group "
            f"{group_name} on {group_finding.name}."
        ),
        revert="",
        forest=group_finding.forest,
        identity_reference=member_name,
        identity_sid=member_sid,
        right=group_finding.right,
        enabled_on=group_finding.enabled_on,
        parent=group_finding,
    )

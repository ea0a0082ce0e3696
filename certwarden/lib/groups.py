"""
Direct group membership expansion.

Only one level of membership is expanded: a nested group shows up as a
member of its parent group but is not flattened further.
"""

from typing import Any, Iterable, List, Optional, Set, Tuple

from certwarden.lib.cache import SingleFlightCache
from certwarden.lib.errors import DirectoryError
from certwarden.lib.identity import IdentityResolver
from certwarden.lib.logger import logging


class GroupExpander:
    def __init__(
        self,
        directory: Any,
        resolver: IdentityResolver,
        memberships: Optional[SingleFlightCache[str, Tuple[str, ...]]] = None,
    ) -> None:
        self.directory = directory
        self.resolver = resolver
        self.memberships = (
            memberships if memberships is not None else SingleFlightCache("memberships")
        )

    def members(self, group_sid: str) -> Tuple[str, ...]:
        """
        Return the SIDs of the direct members of a group.

        The result is cached per group SID, including empty results and
        groups whose members could not be fetched.
        """
        return self.memberships.get_or_load(group_sid.upper(), self._load_members)

    def _load_members(self, group_sid: str) -> Tuple[str, ...]:
        group = self.resolver.resolve_by_sid(group_sid)
        if group.distinguished_name is None:
            logging.warning(
                f"Cannot fetch members of {group.name!r}: group has no distinguished name"
            )
            return ()

        try:
            entry = self.directory.read(group.distinguished_name, attributes=["member"])
        except DirectoryError as e:
            logging.warning(f"Could not fetch members of {group.name!r}: {e}")
            return ()

        member_dns = entry.get("member") if entry is not None else None
        if not member_dns:
            logging.debug(f"Group {group.name!r} has no members")
            return ()

        if isinstance(member_dns, str):
            member_dns = [member_dns]

        sids: List[str] = []
        for member_dn in member_dns:
            sid = self.resolver.resolve_by_dn(member_dn)
            if sid is None:
                continue
            if sid not in sids:
                sids.append(sid)

        logging.debug(f"Group {group.name!r} has {len(sids)} direct members")
        return tuple(sids)

    def expand(self, sids: Iterable[str]) -> Set[str]:
        """
        Return the input SIDs plus the direct members of every group among them.

        Group SIDs are kept in the output even when the group is empty.
        """
        expanded: Set[str] = set()
        for sid in sids:
            sid = sid.upper()
            expanded.add(sid)

            principal = self.resolver.resolve_by_sid(sid)
            if not principal.is_group:
                continue

            expanded.update(self.members(sid))

        return expanded

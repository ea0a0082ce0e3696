"""Shared fixtures: an in-memory directory with a small forest."""

import re
import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from certwarden.lib.errors import DirectoryError
from certwarden.lib.identity import DomainTable, IdentityResolver
from certwarden.lib.ldap import LDAPEntry
from certwarden.lib.objects import Domain
from certwarden.lib.permissions import PermissionCatalog, PermissionClassifier
from certwarden.lib.rules import RuleCatalog

DOMAIN_SID = "S-1-5-21-1000-2000-3000"
PARTNER_SID = "S-1-5-21-9000-9000-9000"

CORP_DN = "DC=corp,DC=local"
PARTNER_DN = "DC=partner,DC=local"
CONFIGURATION_PATH = f"CN=Configuration,{CORP_DN}"

ALICE = f"{DOMAIN_SID}-1104"
BOB = f"{DOMAIN_SID}-1105"
CAROL = f"{DOMAIN_SID}-1106"
DOMAIN_ADMINS = f"{DOMAIN_SID}-512"
DOMAIN_USERS = f"{DOMAIN_SID}-513"
HELPDESK = f"{DOMAIN_SID}-1200"
TIER1 = f"{DOMAIN_SID}-1300"
EMPTY_GROUP = f"{DOMAIN_SID}-1400"
DAVE = f"{PARTNER_SID}-1111"
UNIVERSAL_GROUP = f"{DOMAIN_SID}-1500"

ALICE_DN = f"CN=Alice,CN=Users,{CORP_DN}"
BOB_DN = f"CN=Bob,CN=Users,{CORP_DN}"
CAROL_DN = f"CN=Carol,CN=Users,{CORP_DN}"
HELPDESK_DN = f"CN=Helpdesk,CN=Users,{CORP_DN}"
TIER1_DN = f"CN=Tier1,CN=Users,{CORP_DN}"
EMPTY_GROUP_DN = f"CN=Empty,CN=Users,{CORP_DN}"
DAVE_FOREIGN_DN = f"CN={DAVE},CN=ForeignSecurityPrincipals,{CORP_DN}"
DAVE_DN = f"CN=Dave,CN=Users,{PARTNER_DN}"
UNIVERSAL_GROUP_DN = f"CN=Partners,CN=Users,{CORP_DN}"

FILTER_PATTERN = re.compile(r"^\((\w+)=(.*)\)$")


def make_entry(**attributes: Any) -> LDAPEntry:
    return LDAPEntry(
        {
            "dn": attributes.get("distinguishedName", ""),
            "attributes": attributes,
            "raw_attributes": {},
        }
    )


def principal_entry(
    sid: str,
    account: str,
    dn: str,
    object_class: List[str],
    member: Optional[List[str]] = None,
) -> LDAPEntry:
    attributes: Dict[str, Any] = {
        "objectSid": sid,
        "sAMAccountName": account,
        "name": account,
        "distinguishedName": dn,
        "objectClass": object_class,
    }
    if member is not None:
        attributes["member"] = member
    return make_entry(**attributes)


USER = ["top", "person", "organizationalPerson", "user"]
GROUP = ["top", "group"]


class FakeDirectory:
    """
    In-memory stand-in for LDAPConnection.

    Supports the equality filters used by the resolver, the crossRef query
    and base-scoped reads, and counts every call.
    """

    configuration_path = CONFIGURATION_PATH
    default_path = CORP_DN
    domain = "corp.local"

    def __init__(
        self,
        entries: List[LDAPEntry],
        gc_hidden: Optional[List[str]] = None,
        delay: float = 0.0,
    ) -> None:
        self.entries = entries
        self.gc_hidden = {sid.upper() for sid in gc_hidden or []}
        self.delay = delay
        self.fail_gc = False

        self.search_calls = 0
        self.gc_calls = 0
        self.read_calls = 0
        self._lock = threading.Lock()

    def _match(self, search_filter: str, entries: List[LDAPEntry]) -> List[LDAPEntry]:
        match = FILTER_PATTERN.match(search_filter)
        if match is None:
            return []
        attribute, value = match.groups()
        return [
            entry
            for entry in entries
            if str(entry.get(attribute) or "").lower() == value.lower()
        ]

    def search(
        self,
        search_filter: str,
        attributes: Any = None,
        search_base: Optional[str] = None,
        query_sd: bool = False,
    ) -> List[LDAPEntry]:
        with self._lock:
            self.search_calls += 1

        if "objectClass=crossRef" in search_filter:
            return [
                make_entry(nETBIOSName="CORP", nCName=CORP_DN, dnsRoot=["corp.local"]),
                make_entry(
                    nETBIOSName="PARTNER", nCName=PARTNER_DN, dnsRoot="partner.local"
                ),
            ]

        return self._match(search_filter, self.entries)

    def search_gc(self, search_filter: str, attributes: Any = None) -> List[LDAPEntry]:
        with self._lock:
            self.gc_calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail_gc:
            raise DirectoryError("global catalog unreachable")

        visible = [
            entry
            for entry in self.entries
            if str(entry.get("objectSid")).upper() not in self.gc_hidden
        ]
        return self._match(search_filter, visible)

    def read(self, dn: str, attributes: Any = None, query_sd: bool = False) -> Optional[LDAPEntry]:
        with self._lock:
            self.read_calls += 1
        for entry in self.entries:
            if entry.get("distinguishedName").lower() == dn.lower():
                return entry
        return None

    @property
    def lookups(self) -> int:
        return self.search_calls + self.gc_calls + self.read_calls


class LocalDomainDirectory(FakeDirectory):
    """
    Directory whose base reads only serve the local domain, like a domain
    controller returning a referral for objects of other domains.
    """

    def read(self, dn: str, attributes: Any = None, query_sd: bool = False) -> Optional[LDAPEntry]:
        if not dn.lower().endswith(CORP_DN.lower()):
            with self._lock:
                self.read_calls += 1
            raise DirectoryError(f"referral for {dn!r}")
        return super().read(dn, attributes, query_sd)


def forest_entries() -> List[LDAPEntry]:
    return [
        principal_entry(ALICE, "alice", ALICE_DN, USER),
        principal_entry(BOB, "bob", BOB_DN, USER),
        principal_entry(CAROL, "carol", CAROL_DN, USER),
        principal_entry(
            DOMAIN_ADMINS, "Domain Admins", f"CN=Domain Admins,CN=Users,{CORP_DN}", GROUP
        ),
        principal_entry(
            DOMAIN_USERS, "Domain Users", f"CN=Domain Users,CN=Users,{CORP_DN}", GROUP
        ),
        principal_entry(
            HELPDESK,
            "Helpdesk",
            HELPDESK_DN,
            GROUP,
            member=[ALICE_DN, BOB_DN, HELPDESK_DN],
        ),
        principal_entry(TIER1, "Tier1", TIER1_DN, GROUP, member=[HELPDESK_DN, CAROL_DN]),
        principal_entry(EMPTY_GROUP, "Empty", EMPTY_GROUP_DN, GROUP),
        principal_entry(
            DAVE, DAVE, DAVE_FOREIGN_DN, ["top", "foreignSecurityPrincipal"]
        ),
        principal_entry(DAVE, "dave", DAVE_DN, USER),
        principal_entry(
            UNIVERSAL_GROUP,
            "Partners",
            UNIVERSAL_GROUP_DN,
            GROUP,
            member=[ALICE_DN, DAVE_DN],
        ),
    ]


@pytest.fixture
def domains() -> DomainTable:
    return DomainTable(
        [
            Domain("CORP", CORP_DN, "corp.local"),
            Domain("PARTNER", PARTNER_DN, "partner.local"),
        ]
    )


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory(forest_entries())


@pytest.fixture
def resolver(directory: FakeDirectory, domains: DomainTable) -> IdentityResolver:
    return IdentityResolver(directory, domains)


@pytest.fixture
def permission_catalog() -> PermissionCatalog:
    return PermissionCatalog.default()


@pytest.fixture
def rule_catalog(permission_catalog: PermissionCatalog) -> RuleCatalog:
    return RuleCatalog.default([rule.name for rule in permission_catalog.rules])


@pytest.fixture
def classifier(
    permission_catalog: PermissionCatalog, resolver: IdentityResolver
) -> PermissionClassifier:
    return PermissionClassifier(permission_catalog, resolver)

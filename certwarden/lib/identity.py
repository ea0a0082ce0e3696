"""
Identity resolution for certwarden.

The IdentityResolver converts between SIDs, account names and distinguished
names across every domain of the forest. Lookups go through an ordered list of
strategies, each returning either a Principal or a ResolutionFailure:

1. WellKnownStrategy: local translation of builtin and NT AUTHORITY identities
2. GlobalCatalogStrategy: forest-wide search on the global catalog
3. DomainPartitionStrategy: search of the default domain partition

Results, including identities that could not be resolved, are kept in
injected single-flight caches so each unique SID is looked up at most once
per run, even under concurrent evaluation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ldap3.protocol.formatters.formatters import format_sid
from ldap3.utils.conv import escape_filter_chars

from certwarden.lib.cache import SingleFlightCache
from certwarden.lib.constants import WELLKNOWN_NAMES, WELLKNOWN_SIDS
from certwarden.lib.errors import DirectoryError, ResolutionError
from certwarden.lib.logger import logging
from certwarden.lib.objects import Domain, Principal
from certwarden.lib.security import is_sid

PRINCIPAL_ATTRIBUTES = [
    "objectSid",
    "sAMAccountName",
    "name",
    "distinguishedName",
    "objectClass",
    "memberOf",
]


@dataclass(frozen=True)
class ResolutionFailure:
    """
    Why one strategy could not resolve an identity.
    """

    strategy: str
    reason: str

    def __str__(self) -> str:
        return f"{self.strategy}: {self.reason}"


Resolution = Union[Principal, ResolutionFailure]


# =========================================================================
# Domains
# =========================================================================


def domain_dn_of(dn: str) -> str:
    """
    Return the domain part (the DC= components) of a distinguished name.
    """
    parts = [part.strip() for part in dn.split(",")]
    return ",".join(part for part in parts if part.upper().startswith("DC="))


class DomainTable:
    """
    The domain partitions of the forest, keyed by distinguished name.
    """

    def __init__(self, domains: Iterable[Domain] = ()) -> None:
        self._domains: Dict[str, Domain] = {}
        for domain in domains:
            self.add(domain)

    def add(self, domain: Domain) -> None:
        self._domains[domain.distinguished_name.lower()] = domain

    def find(self, dn: str) -> Optional[Domain]:
        """
        Find the domain owning an object, given the object's DN.
        """
        domain_dn = domain_dn_of(dn).lower()
        return self._domains.get(domain_dn)

    def find_by_name(self, name: str) -> Optional[Domain]:
        """
        Find a domain by NetBIOS or DNS name.
        """
        name = name.lower()
        for domain in self._domains.values():
            if name in (domain.netbios_name.lower(), domain.dns_name.lower()):
                return domain
        return None

    def netbios_name(self, dn: str) -> str:
        """
        NetBIOS name of the domain owning an object, uppercased.

        Falls back to the first DC= component of the DN when the domain is
        not in the table.
        """
        domain = self.find(dn)
        if domain is not None:
            return domain.netbios_name.upper()

        domain_dn = domain_dn_of(dn)
        if not domain_dn:
            return ""
        return domain_dn.split(",")[0].split("=", 1)[1].upper()

    def __iter__(self) -> Iterator[Domain]:
        return iter(list(self._domains.values()))

    def __len__(self) -> int:
        return len(self._domains)


def load_domains(directory: Any) -> DomainTable:
    """
    Enumerate the domain partitions of the forest.

    Reads the crossRef objects of the partitions container, which carry the
    NetBIOS name, naming context and DNS root of every domain.
    """
    entries = directory.search(
        "(&(objectClass=crossRef)(nETBIOSName=*)(nCName=*))",
        attributes=["nETBIOSName", "nCName", "dnsRoot"],
        search_base=f"CN=Partitions,{directory.configuration_path}",
    )

    table = DomainTable()
    for entry in entries:
        dns_root = entry.get("dnsRoot") or ""
        if isinstance(dns_root, list):
            dns_root = dns_root[0]

        domain = Domain(
            netbios_name=entry.get("nETBIOSName").upper(),
            distinguished_name=entry.get("nCName"),
            dns_name=dns_root,
        )
        logging.debug(
            f"Found domain {domain.netbios_name!r} ({domain.distinguished_name})"
        )
        table.add(domain)

    logging.info(f"Found {len(table)} domain{'s' if len(table) != 1 else ''}")
    return table


# =========================================================================
# Entry conversion
# =========================================================================


def get_object_class(object_classes: Union[str, List[str], None]) -> str:
    if object_classes is None:
        return "unknown"
    if isinstance(object_classes, str):
        object_classes = [object_classes]

    classes = {object_class.lower() for object_class in object_classes}
    if "computer" in classes:
        return "computer"
    if "group" in classes:
        return "group"
    if "user" in classes:
        return "user"
    if "foreignsecurityprincipal" in classes:
        return "foreign"
    return "unknown"


def get_entry_sid(entry: Any) -> Optional[str]:
    sid = entry.get("objectSid")
    if isinstance(sid, bytes):
        sid = format_sid(sid)
    if not sid:
        raw = entry.get_raw("objectSid")
        if raw:
            sid = format_sid(raw[0] if isinstance(raw, list) else raw)
    return sid.upper() if sid else None


def principal_from_entry(entry: Any, domains: DomainTable) -> Optional[Principal]:
    """
    Build a Principal from a directory entry, or None if it carries no SID.
    """
    sid = get_entry_sid(entry)
    if sid is None:
        return None

    dn = entry.get("distinguishedName") or ""
    account = entry.get("sAMAccountName") or entry.get("name") or sid

    netbios_name = domains.netbios_name(dn)
    name = f"{netbios_name}\\{account}" if netbios_name else account

    member_of = entry.get("memberOf") or []
    if isinstance(member_of, str):
        member_of = [member_of]

    return Principal(
        sid=sid,
        name=name,
        object_class=get_object_class(entry.get("objectClass")),
        distinguished_name=dn or None,
        domain_dn=domain_dn_of(dn) or None,
        member_of=tuple(member_of),
    )


def split_account_name(name: str) -> Tuple[str, str]:
    """
    Split "DOMAIN\\account" or "account@domain" into (domain, account).
    """
    if "\\" in name:
        domain, account = name.split("\\", 1)
        return domain, account
    if "@" in name:
        account, domain = name.rsplit("@", 1)
        return domain, account
    return "", name


# =========================================================================
# Strategies
# =========================================================================


class ResolverStrategy:
    """
    One way of resolving an identity. Strategies never raise; they return a
    ResolutionFailure carrying the reason instead.
    """

    name = "strategy"

    def by_sid(self, sid: str) -> Resolution:
        raise NotImplementedError

    def by_account(self, domain: str, account: str) -> Resolution:
        raise NotImplementedError

    def failure(self, reason: str) -> ResolutionFailure:
        return ResolutionFailure(self.name, reason)


class WellKnownStrategy(ResolverStrategy):
    """
    Translate well-known identities locally, without a directory round trip.
    """

    name = "well-known"

    def by_sid(self, sid: str) -> Resolution:
        if sid not in WELLKNOWN_SIDS:
            return self.failure("not a well-known SID")

        domain, name, object_class = WELLKNOWN_SIDS[sid]
        return Principal(
            sid=sid,
            name=f"{domain}\\{name}" if domain else name,
            object_class=object_class,
        )

    def by_account(self, domain: str, account: str) -> Resolution:
        key = f"{domain}\\{account}" if domain else account
        sid = WELLKNOWN_NAMES.get(key.lower())
        if sid is None:
            return self.failure("not a well-known account")
        return self.by_sid(sid)


class DirectoryStrategy(ResolverStrategy):
    """
    Resolve identities with an LDAP search. Subclasses pick the search scope.
    """

    def __init__(self, directory: Any, domains: DomainTable) -> None:
        self.directory = directory
        self.domains = domains

    def search(self, search_filter: str) -> List[Any]:
        raise NotImplementedError

    def _lookup(self, search_filter: str) -> Union[List[Any], ResolutionFailure]:
        try:
            return self.search(search_filter)
        except DirectoryError as e:
            logging.warning(f"Lookup {search_filter!r} on {self.name} failed: {e}")
            return self.failure(str(e))

    def by_sid(self, sid: str) -> Resolution:
        entries = self._lookup(f"(objectSid={escape_filter_chars(sid)})")
        if isinstance(entries, ResolutionFailure):
            return entries

        for entry in entries:
            principal = principal_from_entry(entry, self.domains)
            if principal is not None and get_object_class(
                entry.get("objectClass")
            ) != "foreign":
                return principal

        return self.failure(f"no object with SID {sid}")

    def by_account(self, domain: str, account: str) -> Resolution:
        entries = self._lookup(
            f"(sAMAccountName={escape_filter_chars(account)})"
        )
        if isinstance(entries, ResolutionFailure):
            return entries

        candidates = [
            principal
            for principal in (
                principal_from_entry(entry, self.domains) for entry in entries
            )
            if principal is not None
        ]

        if domain:
            known = self.domains.find_by_name(domain)
            netbios_name = known.netbios_name.upper() if known else domain.upper()
            candidates = [
                principal
                for principal in candidates
                if principal.name.upper().startswith(f"{netbios_name}\\")
            ]

        if not candidates:
            return self.failure(f"no account named {account!r}")

        if len(candidates) > 1:
            logging.debug(
                f"Account name {account!r} is ambiguous, using {candidates[0].name!r}"
            )

        return candidates[0]


class GlobalCatalogStrategy(DirectoryStrategy):
    name = "global catalog"

    def search(self, search_filter: str) -> List[Any]:
        return self.directory.search_gc(search_filter, attributes=PRINCIPAL_ATTRIBUTES)


class DomainPartitionStrategy(DirectoryStrategy):
    name = "domain partition"

    def search(self, search_filter: str) -> List[Any]:
        return self.directory.search(search_filter, attributes=PRINCIPAL_ATTRIBUTES)


def default_strategies(directory: Any, domains: DomainTable) -> List[ResolverStrategy]:
    return [
        WellKnownStrategy(),
        GlobalCatalogStrategy(directory, domains),
        DomainPartitionStrategy(directory, domains),
    ]


# =========================================================================
# Resolver
# =========================================================================


class IdentityResolver:
    """
    Resolve security principals by SID, account name or distinguished name.

    The caches are injected so that they can be shared (e.g. with the group
    expander) and inspected in tests. All caches hold unresolved results as
    well, so a failing identity is not retried within a run.
    """

    def __init__(
        self,
        directory: Any,
        domains: Optional[DomainTable] = None,
        principals: Optional[SingleFlightCache[str, Principal]] = None,
        account_names: Optional[SingleFlightCache[str, str]] = None,
        distinguished_names: Optional[SingleFlightCache[str, Optional[str]]] = None,
        strategies: Optional[List[ResolverStrategy]] = None,
    ) -> None:
        self.directory = directory
        self.domains = domains if domains is not None else DomainTable()

        self.principals = (
            principals if principals is not None else SingleFlightCache("principals")
        )
        self.account_names = (
            account_names
            if account_names is not None
            else SingleFlightCache("account names")
        )
        self.distinguished_names = (
            distinguished_names
            if distinguished_names is not None
            else SingleFlightCache("distinguished names")
        )

        if strategies is None:
            strategies = default_strategies(directory, self.domains)
        self.strategies = strategies

        # Strategy failure reasons of unresolved identities, for strict lookups
        self.failures: SingleFlightCache[str, Tuple[str, ...]] = SingleFlightCache(
            "resolution failures"
        )

    def resolve_by_sid(self, sid: str) -> Principal:
        """
        Resolve a SID to a Principal.

        Never raises: if no strategy succeeds, a warning is logged and an
        unresolved Principal carrying the SID as its name is returned.
        """
        return self.principals.get_or_load(sid.upper(), self._load_sid)

    def _load_sid(self, sid: str) -> Principal:
        failures: List[ResolutionFailure] = []
        for strategy in self.strategies:
            result = strategy.by_sid(sid)
            if isinstance(result, Principal):
                logging.debug(f"Resolved {sid!r} to {result.name!r} ({strategy.name})")
                return result
            failures.append(result)

        reasons = self.failures.put(sid, tuple(str(failure) for failure in failures))
        logging.warning(f"Could not resolve SID {sid!r}: " + "; ".join(reasons))
        return Principal(sid=sid, name=sid, resolved=False)

    def resolve_by_account_name(self, name: str) -> Principal:
        """
        Resolve an account name ("DOMAIN\\account", "account@domain" or a bare
        account) to a Principal.
        """
        sid = self.account_names.get_or_load(name.lower(), lambda _: self._load_name(name))
        if sid is None or not is_sid(sid):
            return Principal(sid=name, name=name, resolved=False)
        return self.resolve_by_sid(sid)

    def _load_name(self, name: str) -> str:
        domain, account = split_account_name(name)

        failures: List[ResolutionFailure] = []
        for strategy in self.strategies:
            result = strategy.by_account(domain, account)
            if isinstance(result, Principal):
                logging.debug(f"Resolved {name!r} to {result.sid!r} ({strategy.name})")
                self.principals.put(result.sid, result)
                return result.sid
            failures.append(result)

        reasons = self.failures.put(
            name.lower(), tuple(str(failure) for failure in failures)
        )
        logging.warning(f"Could not resolve account {name!r}: " + "; ".join(reasons))
        return name

    def resolve_by_dn(self, dn: str) -> Optional[str]:
        """
        Resolve a distinguished name to a SID with a base-scoped read, falling
        back to the global catalog for objects of other domains.

        Foreign security principals are resolved through their SID, so that
        members from other domains or forests get their real name. Returns
        None if the object cannot be read.
        """
        return self.distinguished_names.get_or_load(dn.lower(), lambda _: self._load_dn(dn))

    def _read_dn(self, dn: str) -> Optional[Any]:
        try:
            entry = self.directory.read(dn, attributes=PRINCIPAL_ATTRIBUTES)
        except DirectoryError as e:
            logging.debug(f"Could not read {dn!r} from the domain controller: {e}")
            entry = None

        if entry is not None:
            return entry

        # Objects of other domains in the forest are only visible in the GC
        try:
            entries = self.directory.search_gc(
                f"(distinguishedName={escape_filter_chars(dn)})",
                attributes=PRINCIPAL_ATTRIBUTES,
            )
        except DirectoryError as e:
            logging.warning(f"Could not read {dn!r}: {e}")
            return None

        if not entries:
            logging.warning(f"Could not resolve {dn!r}: object not found")
            return None

        return entries[0]

    def _load_dn(self, dn: str) -> Optional[str]:
        entry = self._read_dn(dn)
        if entry is None:
            return None

        principal = principal_from_entry(entry, self.domains)
        if principal is None:
            logging.warning(f"Could not resolve {dn!r}: object has no SID")
            return None

        if principal.object_class == "foreign" or principal.sid in WELLKNOWN_SIDS:
            return self.resolve_by_sid(principal.sid).sid

        return self.principals.put(principal.sid, principal).sid

    def to_account_name(self, sid: str, strict: bool = False) -> str:
        """
        Return "DOMAIN\\account" for a SID, or the SID itself if unresolvable.

        Raises:
            ResolutionError: If strict is set and the SID cannot be resolved
        """
        principal = self.resolve_by_sid(sid)
        if strict and not principal.resolved:
            raise ResolutionError(sid, self.failures.get(sid.upper()) or ())
        return principal.name

    def to_sid(self, identity: str, strict: bool = False) -> str:
        """
        Return the SID of an identity given as SID or account name.

        Raises:
            ResolutionError: If strict is set and the name cannot be resolved
        """
        if is_sid(identity):
            return identity.upper()

        principal = self.resolve_by_account_name(identity)
        if strict and not principal.resolved:
            raise ResolutionError(identity, self.failures.get(identity.lower()) or ())
        return principal.sid

    def cached(self, sid: str) -> Optional[Principal]:
        """
        Return the resolved Principal for a SID if it is already cached.
        """
        principal = self.principals.get(sid.upper())
        if principal is None or not principal.resolved:
            return None
        return principal

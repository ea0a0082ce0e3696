"""
Directory protocol boundary for certwarden.

This module provides the read-only LDAP client consumed by the auditing core:

- LDAPEntry: Dictionary-like class for LDAP objects with attribute access methods
- LDAPConnection: paged subtree searches against the domain partition, forest-wide
  searches against the global catalog, and base-scoped single-object reads

Every lookup carries an explicit time limit; ldap3 failures are translated into
DirectoryError / DirectoryTimeout so callers can skip the affected lookup and
continue.

ldap3 SYNC connections are not thread-safe, so lookups issued by concurrent
workers are serialized on a connection lock.
"""

import ssl
import threading
from typing import Any, Dict, List, Optional, Union

import ldap3
from ldap3.core.exceptions import (
    LDAPException,
    LDAPNoSuchObjectResult,
    LDAPResponseTimeoutError,
    LDAPSocketReceiveError,
    LDAPTimeLimitExceededResult,
)
from ldap3.core.results import RESULT_SUCCESS
from ldap3.protocol.microsoft import security_descriptor_control

from certwarden.lib.errors import DirectoryError, DirectoryTimeout, translate_ldap_message
from certwarden.lib.logger import logging
from certwarden.lib.target import Target

TIMEOUT_ERRORS = (
    LDAPTimeLimitExceededResult,
    LDAPResponseTimeoutError,
    LDAPSocketReceiveError,
)


class LDAPEntry(Dict[str, Any]):
    """
    Dictionary-like class representing an LDAP entry with helper methods.

    Entries keep the ldap3 layout: decoded values under "attributes" and raw
    values under "raw_attributes".
    """

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get an attribute value, returning default when missing or empty.
        """
        attributes = self.__getitem__("attributes")
        if key not in attributes.keys():
            return default

        item = attributes.__getitem__(key)

        # Return default for empty lists
        if isinstance(item, list) and len(item) == 0:
            return default

        return item

    def set(self, key: str, value: Any) -> None:
        return self.__getitem__("attributes").__setitem__(key, value)

    def get_raw(self, key: str) -> Any:
        """
        Get the raw (unprocessed) attribute value, or None if not present.
        """
        if "raw_attributes" not in self:
            return None

        raw_attributes = self.__getitem__("raw_attributes")
        if key not in raw_attributes.keys():
            return None

        return raw_attributes.__getitem__(key)

    @property
    def dn(self) -> Optional[str]:
        return self.get("distinguishedName") or super().get("dn")


class LDAPConnection:
    """
    Read-only connection to a domain controller and its global catalog.
    """

    def __init__(self, target: Target) -> None:
        self.target = target

        self.ldap_conn: Optional[ldap3.Connection] = None
        self.gc_conn: Optional[ldap3.Connection] = None
        self.lock = threading.RLock()

        self.default_path: str = ""
        self.configuration_path: str = ""
        self.root_path: str = ""
        self.domain: str = ""

    def _open(self, port: int, use_ssl: bool) -> ldap3.Connection:
        if self.target.target_ip is None:
            raise Exception("Target IP is not set")

        tls = None
        if use_ssl:
            tls = ldap3.Tls(validate=ssl.CERT_NONE, version=ssl.PROTOCOL_TLS_CLIENT)

        server = ldap3.Server(
            self.target.target_ip,
            port=port,
            use_ssl=use_ssl,
            get_info=ldap3.DSA,
            tls=tls,
            connect_timeout=self.target.timeout,
        )

        if self.target.do_simple:
            user = f"{self.target.username}@{self.target.domain}"
            password = self.target.password
            authentication = ldap3.SIMPLE
        else:
            user = f"{self.target.domain}\\{self.target.username}"
            password = self.target.password
            if self.target.nthash:
                password = f"{self.target.lmhash}:{self.target.nthash}"
            authentication = ldap3.NTLM

        logging.info(f"Connecting to {f'{server.name}'!r}")

        try:
            connection = ldap3.Connection(
                server,
                user=user,
                password=password,
                authentication=authentication,
                auto_referrals=False,
                raise_exceptions=True,
                receive_timeout=self.target.timeout,
            )
            connection.bind()
        except LDAPException as e:
            raise DirectoryError(f"Failed to bind to {server.name}: {e}") from e

        if connection.result["result"] != RESULT_SUCCESS:
            raise DirectoryError(
                f"Failed to bind to {server.name}: "
                f"{translate_ldap_message(connection.result['message'])}"
            )

        logging.debug(f"Bound to {server}")
        return connection

    def connect(self) -> None:
        """
        Connect to the domain controller and read the naming contexts.
        """
        use_ssl = self.target.ldap_scheme == "ldaps"
        port = self.target.ldap_port or (636 if use_ssl else 389)

        self.ldap_conn = self._open(port, use_ssl)

        info = self.ldap_conn.server.info.other
        self.default_path = info["defaultNamingContext"][0]
        self.configuration_path = info["configurationNamingContext"][0]
        self.root_path = info["rootDomainNamingContext"][0]

        logging.debug(f"Default path: {self.default_path}")
        logging.debug(f"Configuration path: {self.configuration_path}")

        # Extract domain name from LDAP service name
        self.domain = info["ldapServiceName"][0].split("@")[-1]

    def connect_gc(self) -> ldap3.Connection:
        """
        Open (once) the global catalog connection used for forest-wide lookups.
        """
        with self.lock:
            if self.gc_conn is None:
                use_ssl = self.target.ldap_scheme == "ldaps"
                port = self.target.gc_port or (3269 if use_ssl else 3268)
                self.gc_conn = self._open(port, use_ssl)

            return self.gc_conn

    def _search(
        self,
        connection: ldap3.Connection,
        search_filter: str,
        attributes: Union[str, List[str]],
        search_base: str,
        search_scope: str = ldap3.SUBTREE,
        query_sd: bool = False,
    ) -> List[LDAPEntry]:
        controls = security_descriptor_control(sdflags=0x5) if query_sd else None

        try:
            # The generator is drained while holding the lock
            with self.lock:
                results = connection.extend.standard.paged_search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=search_scope,
                    attributes=attributes,
                    controls=controls,
                    paged_size=200,
                    time_limit=self.target.timeout,
                    generator=True,
                )

                # Convert search results to LDAPEntry objects
                return [
                    LDAPEntry(**entry)
                    for entry in results
                    if entry["type"] == "searchResEntry"
                ]
        except TIMEOUT_ERRORS as e:
            raise DirectoryTimeout(
                f"LDAP search {search_filter!r} timed out after {self.target.timeout}s"
            ) from e
        except LDAPNoSuchObjectResult:
            return []
        except LDAPException as e:
            raise DirectoryError(f"LDAP search {search_filter!r} failed: {e}") from e

    def search(
        self,
        search_filter: str,
        attributes: Union[str, List[str]] = ldap3.ALL_ATTRIBUTES,
        search_base: Optional[str] = None,
        query_sd: bool = False,
    ) -> List[LDAPEntry]:
        """
        Paged subtree search, by default over the domain partition.

        Raises:
            DirectoryError: If the search fails
            DirectoryTimeout: If the search exceeds the configured timeout
        """
        if self.ldap_conn is None:
            raise DirectoryError("LDAP connection is not established")

        if search_base is None:
            search_base = self.default_path

        return self._search(
            self.ldap_conn,
            search_filter,
            attributes,
            search_base,
            query_sd=query_sd,
        )

    def search_gc(
        self,
        search_filter: str,
        attributes: Union[str, List[str]] = ldap3.ALL_ATTRIBUTES,
    ) -> List[LDAPEntry]:
        """
        Forest-wide search against the global catalog.
        """
        connection = self.connect_gc()
        return self._search(connection, search_filter, attributes, "")

    def read(
        self,
        dn: str,
        attributes: Union[str, List[str]] = ldap3.ALL_ATTRIBUTES,
        query_sd: bool = False,
    ) -> Optional[LDAPEntry]:
        """
        Base-scoped read of a single object, or None if it does not exist.
        """
        if self.ldap_conn is None:
            raise DirectoryError("LDAP connection is not established")

        results = self._search(
            self.ldap_conn,
            "(objectClass=*)",
            attributes,
            dn,
            search_scope=ldap3.BASE,
            query_sd=query_sd,
        )
        if len(results) != 1:
            return None

        return results[0]

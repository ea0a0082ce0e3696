"""
Connection configuration for certwarden.

The Target class gathers everything needed to reach the directory:

- Authentication parameters (username, password, NT hash, bind type)
- Domain controller name resolution (DNS with local fallback)
- LDAP and global catalog endpoints
- The per-lookup timeout applied to every directory query
"""

import argparse
import socket
from typing import Dict, Optional

from dns.resolver import Resolver

from certwarden.lib.errors import handle_error
from certwarden.lib.logger import logging


class Target:
    """
    Directory endpoint and credentials used by the audit.
    """

    def __init__(
        self,
        resolver: "DnsResolver",
        domain: str = "",
        username: str = "",
        password: Optional[str] = None,
        lmhash: str = "",
        nthash: str = "",
        do_simple: bool = False,
        dc_ip: Optional[str] = None,
        dc_host: Optional[str] = None,
        target_ip: Optional[str] = None,
        timeout: int = 10,
        ldap_scheme: str = "ldaps",
        ldap_port: Optional[int] = None,
        gc_port: Optional[int] = None,
    ) -> None:
        """
        Args:
            resolver: DNS resolver for hostname resolution
            domain: Domain name (empty string if not specified)
            username: Username (empty string if not specified)
            password: Password (None if not specified)
            lmhash: LM hash
            nthash: NT hash
            do_simple: Use SIMPLE bind instead of NTLM
            dc_ip: Domain controller IP
            dc_host: Domain controller hostname
            target_ip: IP address used for connections
            timeout: Per-lookup timeout in seconds
            ldap_scheme: LDAP scheme (default is ldaps)
            ldap_port: LDAP port to use
            gc_port: Global catalog port to use
        """
        self.resolver = resolver

        self.domain: str = domain
        self.username: str = username
        self.password: Optional[str] = password
        self.lmhash: str = lmhash
        self.nthash: str = nthash
        self.do_simple: bool = do_simple
        self.dc_ip: Optional[str] = dc_ip
        self.dc_host: Optional[str] = dc_host
        self.target_ip: Optional[str] = target_ip
        self.timeout: int = timeout
        self.ldap_scheme: str = ldap_scheme
        self.ldap_port: Optional[int] = ldap_port
        self.gc_port: Optional[int] = gc_port

    @staticmethod
    def from_options(options: argparse.Namespace) -> "Target":
        """
        Create a Target from command line options.

        Raises:
            Exception: If no domain controller can be determined
        """
        dc_ip = getattr(options, "dc_ip", None)
        dc_host = getattr(options, "dc_host", None)
        ns = getattr(options, "ns", None) or dc_ip
        dns_tcp = getattr(options, "dns_tcp", False)
        timeout = getattr(options, "timeout", 10)

        principal = getattr(options, "username", None)
        password = getattr(options, "password", None)
        hashes = getattr(options, "hashes", None)
        do_simple = getattr(options, "do_simple", False)
        no_pass = getattr(options, "no_pass", False)

        ldap_scheme = getattr(options, "ldap_scheme", "ldaps")
        ldap_port = getattr(options, "ldap_port", None)
        gc_port = getattr(options, "gc_port", None)

        # Parse username and domain from principal format (user@DOMAIN)
        domain = ""
        username = ""
        if principal is not None:
            parts = principal.split("@")
            if len(parts) == 1:
                username = parts[0]
            else:
                username = "@".join(parts[:-1])
                domain = parts[-1]

        domain = domain.upper()

        if len(username) == 0:
            logging.error("Username is not specified")

        if not password and username != "" and hashes is None and not no_pass:
            from getpass import getpass

            password = getpass("Password:")

        lmhash = ""
        nthash = ""
        if hashes is not None:
            hash_parts = hashes.split(":")
            if len(hash_parts) == 1:
                nthash = hash_parts[0]
                lmhash = nthash
            else:
                lmhash, nthash = hash_parts
                if len(lmhash) == 0:
                    lmhash = nthash

        if not dc_host and domain:
            logging.debug("DC host (-dc-host) not specified. Using domain as DC host")
            dc_host = domain

        if not dc_host and not dc_ip:
            raise Exception("Could not find a domain controller in the specified options")

        if ldap_port is None:
            ldap_port = 389 if ldap_scheme == "ldap" else 636

        if gc_port is None:
            gc_port = 3268 if ldap_scheme == "ldap" else 3269

        resolver = DnsResolver.create(ns=ns, dns_tcp=dns_tcp)

        target_ip = dc_ip
        if target_ip is None and dc_host:
            target_ip = resolver.resolve(dc_host)

        logging.debug(f"Nameserver: {ns!r}")
        logging.debug(f"DC IP: {dc_ip!r}")
        logging.debug(f"DC Host: {dc_host!r}")
        logging.debug(f"Target IP: {target_ip!r}")
        logging.debug(f"Domain: {domain!r}")
        logging.debug(f"Username: {username!r}")

        return Target(
            resolver,
            domain=domain,
            username=username,
            password=password,
            lmhash=lmhash,
            nthash=nthash,
            do_simple=do_simple,
            dc_ip=dc_ip,
            dc_host=dc_host,
            target_ip=target_ip,
            timeout=timeout,
            ldap_scheme=ldap_scheme,
            ldap_port=ldap_port,
            gc_port=gc_port,
        )

    def __repr__(self) -> str:
        return f"<Target ({self.__dict__!r})>"


class DnsResolver:
    """
    DNS resolver for hostname resolution with caching capabilities.
    """

    def __init__(self) -> None:
        self.resolver: Resolver = Resolver()
        self.use_tcp: bool = False
        self.mappings: Dict[str, str] = {}

    @staticmethod
    def create(ns: Optional[str] = None, dns_tcp: bool = False) -> "DnsResolver":
        resolver = DnsResolver()

        # A single nameserver, since the resolver fails if any of them fails
        if ns is not None:
            resolver.resolver.nameservers = [ns]

        resolver.use_tcp = dns_tcp

        return resolver

    def resolve(self, hostname: str) -> str:
        """
        Resolve hostname to IP address using DNS, then local resolution.

        Returns:
            The resolved IP address or the original hostname if resolution fails
        """
        if hostname in self.mappings:
            logging.debug(
                f"Resolved {hostname!r} from cache: {self.mappings[hostname]}"
            )
            return self.mappings[hostname]

        if is_ip(hostname):
            return hostname

        ip_addr = None
        try:
            answers = self.resolver.resolve(hostname, tcp=self.use_tcp)
            if answers:
                ip_addr = str(answers[0])
        except Exception as e:
            logging.warning(f"DNS resolution failed: {e}")
            handle_error(True)

        if ip_addr is None:
            try:
                ip_addr = socket.gethostbyname(hostname)
            except OSError:
                ip_addr = None

        if ip_addr is None:
            logging.warning(f"Failed to resolve: {hostname}")
            return hostname

        self.mappings[hostname] = ip_addr
        return ip_addr


def is_ip(hostname: Optional[str]) -> bool:
    """
    Check if the given hostname is an IPv4 address.
    """
    if hostname is None:
        return False

    try:
        _ = socket.inet_aton(hostname)
        return True
    except OSError:
        return False

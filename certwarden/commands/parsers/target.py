"""
Target Configuration Parser Module.

This module provides functions to add the connection and authentication
options used to reach a domain controller and its global catalog.
"""

import argparse


def add_argument_group(parser: argparse.ArgumentParser) -> None:
    """
    Add common target, connection, and authentication arguments to a parser.

    Args:
        parser: The parser to add argument groups to
    """
    conn_group = parser.add_argument_group("connection options")

    # Domain controller options
    _ = conn_group.add_argument(
        "-dc-ip",
        action="store",
        metavar="ip address",
        help=(
            "IP address of the domain controller. If omitted, the domain controller "
            "hostname is resolved with DNS"
        ),
    )
    _ = conn_group.add_argument(
        "-dc-host",
        action="store",
        metavar="hostname",
        help=(
            "Hostname of the domain controller. If omitted, the domain part of the "
            "username will be used"
        ),
    )

    # DNS options
    _ = conn_group.add_argument(
        "-ns",
        action="store",
        metavar="ip address",
        help="Nameserver for DNS resolution",
    )
    _ = conn_group.add_argument(
        "-dns-tcp", action="store_true", help="Use TCP instead of UDP for DNS queries"
    )

    _ = conn_group.add_argument(
        "-timeout",
        action="store",
        metavar="seconds",
        help="Timeout for connections and for each directory lookup in seconds (default: 10)",
        default=10,
        type=int,
    )

    # Authentication Options Group
    auth_group = parser.add_argument_group("authentication options")

    _ = auth_group.add_argument(
        "-u",
        "-username",
        metavar="username@domain",
        dest="username",
        action="store",
        help="Username to authenticate with",
    )
    _ = auth_group.add_argument(
        "-p",
        "-password",
        metavar="password",
        dest="password",
        action="store",
        help="Password for authentication",
    )
    _ = auth_group.add_argument(
        "-hashes",
        action="store",
        metavar="[lmhash:]nthash",
        help="NTLM hash",
    )
    _ = auth_group.add_argument(
        "-no-pass",
        action="store_true",
        help="Don't ask for password",
    )

    # LDAP Options Group
    ldap_group = parser.add_argument_group("ldap options")
    _ = ldap_group.add_argument(
        "-ldap-scheme",
        action="store",
        metavar="ldap scheme",
        choices=["ldap", "ldaps"],
        default="ldaps",
        help="LDAP connection scheme to use (default: ldaps)",
    )
    _ = ldap_group.add_argument(
        "-ldap-port",
        action="store",
        metavar="port",
        type=int,
        help="Port for LDAP communication (default: 636 for ldaps, 389 for ldap)",
    )
    _ = ldap_group.add_argument(
        "-gc-port",
        action="store",
        metavar="port",
        type=int,
        help="Port for global catalog lookups (default: 3269 for ldaps, 3268 for ldap)",
    )
    _ = ldap_group.add_argument(
        "-ldap-simple-auth",
        action="store_true",
        dest="do_simple",
        help="Use SIMPLE LDAP authentication instead of NTLM",
    )

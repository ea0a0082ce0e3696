"""
Parser for the PKI audit command.

This module defines the command-line interface for the 'audit' command,
which collects the PKI configuration of a forest (or reads it from a
snapshot) and reports misconfigurations with remediation guidance.
"""

import argparse
from typing import Callable, Tuple

from . import target

# Command name identifier
NAME = "audit"


def entry(options: argparse.Namespace) -> None:
    from certwarden.commands import audit

    audit.entry(options)


def add_subparser(subparsers: argparse._SubParsersAction) -> Tuple[str, Callable]:  # type: ignore
    """
    Add the audit command subparser to the main parser.

    Args:
        subparsers: Parent parser to attach the subparser to

    Returns:
        Tuple of (command_name, entry_function) for command registration
    """
    subparser = subparsers.add_parser(
        NAME,
        help="Audit AD CS for misconfigurations",
        description=(
            "Evaluate certificate templates, certification authorities, PKI containers "
            "and CA computer accounts against a catalog of known misconfigurations "
            "(ESC techniques) and report the affected principals with remediation scripts."
        ),
    )

    # Output options group
    output_group = subparser.add_argument_group("output options")
    output_group.add_argument(
        "-text",
        action="store_true",
        help="Output result as formatted text file",
    )
    output_group.add_argument(
        "-stdout",
        action="store_true",
        help="Output result as text directly to console",
    )
    output_group.add_argument(
        "-json",
        action="store_true",
        help="Output result as JSON",
    )
    output_group.add_argument(
        "-output",
        action="store",
        metavar="prefix",
        help="Filename prefix for writing results to",
    )

    # Audit options group
    audit_group = subparser.add_argument_group("audit options")
    audit_group.add_argument(
        "-input",
        action="store",
        metavar="snapshot.json",
        help="Audit objects from a JSON snapshot instead of querying a domain controller",
    )
    audit_group.add_argument(
        "-technique",
        action="append",
        metavar="ESC",
        help="Only evaluate this technique (can be specified multiple times)",
    )
    audit_group.add_argument(
        "-rules",
        action="store",
        metavar="rules.json",
        help="Vulnerability rule catalog to use instead of the built-in one",
    )
    audit_group.add_argument(
        "-permissions",
        action="store",
        metavar="permissions.json",
        help="Permission catalog to use instead of the built-in one",
    )
    audit_group.add_argument(
        "-expand-groups",
        action="store_true",
        help="Replace findings held by a group with one finding per direct member",
    )
    audit_group.add_argument(
        "-include-group-findings",
        action="store_true",
        help="Keep the group finding next to its member findings (with -expand-groups)",
    )
    audit_group.add_argument(
        "-workers",
        action="store",
        metavar="count",
        type=int,
        default=1,
        help="Number of threads evaluating rules (default: 1)",
    )

    target.add_argument_group(subparser)

    return NAME, entry

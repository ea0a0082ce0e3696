"""
Error types and error reporting utilities for certwarden.

The auditing pipeline distinguishes four kinds of failures:

- resolution failures: an identity could not be resolved by any strategy
- missing attributes: an object lacks data a rule depends on
- protocol failures: the directory is unreachable or a lookup timed out
- catalog failures: a permission or vulnerability catalog is malformed

Only catalog failures stop evaluation; everything else is handled locally
by skipping the affected object or principal and logging the reason.
"""

import traceback
from typing import Optional, Tuple

from impacket import hresult_errors

from certwarden.lib.logger import is_verbose, logging


class CertwardenError(Exception):
    """Base class for all certwarden errors."""


class DirectoryError(CertwardenError):
    """A directory lookup failed (server unreachable, search rejected)."""


class DirectoryTimeout(DirectoryError):
    """A single directory lookup exceeded its time limit."""


class ResolutionError(CertwardenError):
    """An identity could not be resolved by any strategy."""

    def __init__(self, identity: str, reasons: Tuple[str, ...] = ()):
        self.identity = identity
        self.reasons = reasons
        detail = "; ".join(reasons) if reasons else "no strategy succeeded"
        super().__init__(f"Could not resolve {identity!r}: {detail}")


class MissingAttributeError(CertwardenError):
    """An object lacks an attribute that a check depends on."""

    def __init__(self, object_name: str, attribute: str):
        self.object_name = object_name
        self.attribute = attribute
        super().__init__(f"{object_name!r} has no value for {attribute!r}")


class CatalogError(CertwardenError):
    """A permission or vulnerability catalog could not be loaded."""

    def __init__(self, message: str, rule_id: Optional[str] = None):
        self.rule_id = rule_id
        if rule_id is not None:
            message = f"Rule {rule_id!r}: {message}"
        super().__init__(message)


def translate_error_code(error_code: int) -> str:
    """
    Translate a Windows API error code to a human-readable string.

    Directory servers embed these codes in LDAP diagnostic messages
    (e.g. "000004DC: LdapErr: ...").

    Args:
        error_code: Windows API error code (HRESULT)

    Returns:
        Formatted error message with code, short description, and detailed explanation
    """
    # Mask to 32 bits to handle sign extension issues
    masked_code = error_code & 0xFFFFFFFF

    if masked_code in hresult_errors.ERROR_MESSAGES:
        error_short, error_detail = hresult_errors.ERROR_MESSAGES[masked_code]
        return f"code: 0x{masked_code:x} - {error_short} - {error_detail}"

    return f"unknown error code: 0x{masked_code:x}"


def translate_ldap_message(message: str) -> str:
    """
    Append a translation of the leading Windows error code of an LDAP message.

    Args:
        message: Diagnostic message returned by the directory server

    Returns:
        The message, with the translated error code when one is present
    """
    code, _, _ = message.partition(":")
    try:
        error_code = int(code, 16)
    except ValueError:
        return message

    return f"{message} ({translate_error_code(error_code)})"


def handle_error(is_warning: bool = False) -> None:
    """
    Print a stacktrace in verbose mode, otherwise a hint on how to get one.
    """
    if is_verbose():
        traceback.print_exc()
    else:
        msg = "Use -debug to print a stacktrace"
        if is_warning:
            logging.warning(msg)
        else:
            logging.error(msg)

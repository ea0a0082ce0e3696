"""
Constants module for certwarden.

This module defines the reference data used when auditing a PKI hierarchy:
- Well-known security identifiers (SIDs) and relative identifiers (RIDs)
- SID patterns for standard owners and privilege tiers
- Certificate template flags
- Access rights for directory objects and certification authorities
- Extended right, property and EKU identifiers
"""

from certwarden.lib.structs import IntFlag

# =========================================================================
# Security Identifiers (SIDs) and Relative Identifiers (RIDs)
# =========================================================================

# Well-known SIDs mapping to (domain, name, object class)
# Source: https://learn.microsoft.com/en-us/windows/win32/secauthz/well-known-sids
WELLKNOWN_SIDS = {
    # Null and World Authority
    "S-1-0-0": ("", "Nobody", "well-known"),
    "S-1-1-0": ("", "Everyone", "group"),
    # Creator Authority
    "S-1-3-0": ("", "CREATOR OWNER", "well-known"),
    "S-1-3-1": ("", "CREATOR GROUP", "well-known"),
    "S-1-3-4": ("", "OWNER RIGHTS", "well-known"),
    # NT Authority
    "S-1-5-2": ("NT AUTHORITY", "NETWORK", "group"),
    "S-1-5-4": ("NT AUTHORITY", "INTERACTIVE", "group"),
    "S-1-5-6": ("NT AUTHORITY", "SERVICE", "group"),
    "S-1-5-7": ("NT AUTHORITY", "ANONYMOUS LOGON", "group"),
    "S-1-5-9": ("NT AUTHORITY", "ENTERPRISE DOMAIN CONTROLLERS", "group"),
    "S-1-5-10": ("NT AUTHORITY", "SELF", "well-known"),
    "S-1-5-11": ("NT AUTHORITY", "Authenticated Users", "group"),
    "S-1-5-15": ("NT AUTHORITY", "This Organization", "group"),
    "S-1-5-18": ("NT AUTHORITY", "SYSTEM", "user"),
    "S-1-5-19": ("NT AUTHORITY", "LOCAL SERVICE", "user"),
    "S-1-5-20": ("NT AUTHORITY", "NETWORK SERVICE", "user"),
    # Built-in local groups
    "S-1-5-32-544": ("BUILTIN", "Administrators", "group"),
    "S-1-5-32-545": ("BUILTIN", "Users", "group"),
    "S-1-5-32-546": ("BUILTIN", "Guests", "group"),
    "S-1-5-32-548": ("BUILTIN", "Account Operators", "group"),
    "S-1-5-32-549": ("BUILTIN", "Server Operators", "group"),
    "S-1-5-32-550": ("BUILTIN", "Print Operators", "group"),
    "S-1-5-32-551": ("BUILTIN", "Backup Operators", "group"),
    "S-1-5-32-554": ("BUILTIN", "Pre-Windows 2000 Compatible Access", "group"),
    "S-1-5-32-560": ("BUILTIN", "Windows Authorization Access Group", "group"),
    "S-1-5-32-574": ("BUILTIN", "Certificate Service DCOM Access", "group"),
}

# Reverse lookup: "DOMAIN\\name" and bare "name" (both lowercased) to SID
WELLKNOWN_NAMES = {}
for _sid, (_domain, _name, _) in WELLKNOWN_SIDS.items():
    WELLKNOWN_NAMES[_name.lower()] = _sid
    if _domain:
        WELLKNOWN_NAMES[f"{_domain}\\{_name}".lower()] = _sid

# Well-known domain RIDs mapping to (name, object class)
WELLKNOWN_RIDS = {
    "498": ("Enterprise Read-only Domain Controllers", "group"),
    "500": ("Administrator", "user"),
    "501": ("Guest", "user"),
    "502": ("krbtgt", "user"),
    "512": ("Domain Admins", "group"),
    "513": ("Domain Users", "group"),
    "514": ("Domain Guests", "group"),
    "515": ("Domain Computers", "group"),
    "516": ("Domain Controllers", "group"),
    "517": ("Cert Publishers", "group"),
    "518": ("Schema Admins", "group"),
    "519": ("Enterprise Admins", "group"),
    "521": ("Read-only Domain Controllers", "group"),
    "526": ("Key Admins", "group"),
    "527": ("Enterprise Key Admins", "group"),
}

# SID patterns: a pattern starting with "S-" matches one SID exactly, a
# pattern starting with "-" matches any SID ending with that suffix.

# Owners that are expected on PKI objects
STANDARD_OWNER_PATTERNS = (
    "-512",  # Domain Admins
    "-519",  # Enterprise Admins
    "-500",  # Administrator
    "-517",  # Cert Publishers
    "S-1-5-32-544",  # BUILTIN\Administrators
    "S-1-5-18",  # NT AUTHORITY\SYSTEM
)

# Principals whose rights on PKI objects are expected
SAFE_PRINCIPAL_PATTERNS = STANDARD_OWNER_PATTERNS + (
    "-498",  # Enterprise Read-only Domain Controllers
    "-516",  # Domain Controllers
    "-521",  # Read-only Domain Controllers
    "-526",  # Key Admins
    "-527",  # Enterprise Key Admins
    "S-1-5-9",  # Enterprise Domain Controllers
    "S-1-5-10",  # SELF
    "S-1-3-0",  # CREATOR OWNER
)

# Principals that every (or nearly every) account in the forest belongs to
DANGEROUS_PRINCIPAL_PATTERNS = (
    "S-1-1-0",  # Everyone
    "S-1-5-7",  # Anonymous Logon
    "S-1-5-11",  # Authenticated Users
    "S-1-5-32-545",  # BUILTIN\Users
    "-513",  # Domain Users
    "-515",  # Domain Computers
)

# =========================================================================
# PKI Certificate Flags
# =========================================================================


# Enrollment flags
# Source: https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-crtd/ec71fd43-61c2-407b-83c9-b52272dec8a1
class EnrollmentFlag(IntFlag):
    """
    Flags controlling certificate enrollment behavior.

    Reference: MS-CRTD 2.26 msPKI-Enrollment-Flag Attribute
    """

    NONE = 0x00000000
    INCLUDE_SYMMETRIC_ALGORITHMS = 0x00000001
    PEND_ALL_REQUESTS = 0x00000002  # All requests must be manually approved
    PUBLISH_TO_KRA_CONTAINER = 0x00000004
    PUBLISH_TO_DS = 0x00000008
    AUTO_ENROLLMENT = 0x00000020
    USER_INTERACTION_REQUIRED = 0x00000100
    ALLOW_ENROLL_ON_BEHALF_OF = 0x00000800
    NO_SECURITY_EXTENSION = 0x00080000  # Don't include security extension


# Certificate name flags
# Source: https://docs.microsoft.com/en-us/openspecs/windows_protocols/ms-crtd/1192823c-d839-4bc3-9b6b-fa8c53507ae1
class CertificateNameFlag(IntFlag):
    """
    Flags controlling certificate subject name creation.

    Reference: MS-CRTD 2.28 msPKI-Certificate-Name-Flag Attribute
    """

    NONE = 0x00000000
    ENROLLEE_SUPPLIES_SUBJECT = 0x00000001  # Enrollee can specify subject name
    ADD_EMAIL = 0x00000002
    ADD_OBJ_GUID = 0x00000004
    OLD_CERT_SUPPLIES_SUBJECT_AND_ALT_NAME = 0x00000008
    ADD_DIRECTORY_PATH = 0x00000100
    ENROLLEE_SUPPLIES_SUBJECT_ALT_NAME = 0x00010000
    SUBJECT_ALT_REQUIRE_DOMAIN_DNS = 0x00400000
    SUBJECT_ALT_REQUIRE_SPN = 0x00800000
    SUBJECT_ALT_REQUIRE_DIRECTORY_GUID = 0x01000000
    SUBJECT_ALT_REQUIRE_UPN = 0x02000000
    SUBJECT_ALT_REQUIRE_EMAIL = 0x04000000
    SUBJECT_ALT_REQUIRE_DNS = 0x08000000
    SUBJECT_REQUIRE_DNS_AS_CN = 0x10000000
    SUBJECT_REQUIRE_EMAIL = 0x20000000
    SUBJECT_REQUIRE_COMMON_NAME = 0x40000000
    SUBJECT_REQUIRE_DIRECTORY_PATH = 0x80000000


# =========================================================================
# Access Control and Rights
# =========================================================================


# Access control types
# Source: https://docs.microsoft.com/en-us/dotnet/api/system.security.accesscontrol.accesscontroltype?view=net-5.0
class AccessControlType(IntFlag):
    """Access control types for access control entries."""

    ALLOW = 0
    DENY = 1


# Active Directory rights
# Source: https://docs.microsoft.com/en-us/dotnet/api/system.directoryservices.activedirectoryrights?view=net-5.0
class ActiveDirectoryRights(IntFlag):
    """Rights applicable to Active Directory objects."""

    # Object-level rights
    CREATE_CHILD = 1
    DELETE_CHILD = 2
    LIST_CHILDREN = 4
    SELF = 8
    READ_PROPERTY = 16
    WRITE_PROPERTY = 32
    DELETE_TREE = 64
    LIST_OBJECT = 128
    EXTENDED_RIGHT = 256

    # Standard rights
    DELETE = 65536
    READ_CONTROL = 131072
    WRITE_DACL = 262144
    WRITE_OWNER = 524288
    SYNCHRONIZE = 1048576
    ACCESS_SYSTEM_SECURITY = 16777216

    # Generic rights
    GENERIC_READ = 131220
    GENERIC_WRITE = 131112
    GENERIC_EXECUTE = 131076
    GENERIC_ALL = 983551


# Certificate authority rights
# Source: https://github.com/GhostPack/Certify/blob/2b1530309c0c5eaf41b2505dfd5a68c83403d031/Certify/Domain/CertificateAuthority.cs#L11
class CertificateAuthorityRights(IntFlag):
    """Rights applicable to certification authorities."""

    MANAGE_CA = 1
    MANAGE_CERTIFICATES = 2
    AUDITOR = 4
    OPERATOR = 8
    READ = 256
    ENROLL = 512


# Rights type used to interpret an ACE mask, per object class
RIGHTS_TYPES = {
    "template": ActiveDirectoryRights,
    "authority": CertificateAuthorityRights,
    "container": ActiveDirectoryRights,
    "computer": ActiveDirectoryRights,
}

# =========================================================================
# Extended Rights and Properties
# =========================================================================

ALL_PROPERTIES_GUID = "00000000-0000-0000-0000-000000000000"

# Extended rights relevant to certificate enrollment
EXTENDED_RIGHTS_MAP = {
    "0e10c968-78fb-11d2-90d4-00c04f79dc55": "Enroll",
    "a05b8cc2-17bc-4802-a710-e7c15ab866a2": "AutoEnroll",
    "00000000-0000-0000-0000-000000000000": "All-Extended-Rights",
}

EXTENDED_RIGHTS_NAME_MAP = {v: k for k, v in EXTENDED_RIGHTS_MAP.items()}

# Attributes of PKI objects whose write access is security-relevant
PROPERTY_GUID_MAP = {
    "ea1dddc4-60ff-416e-8cc0-17cee534bce7": "msPKI-Certificate-Name-Flag",
    "d15ef7d8-f226-46db-ae79-b34e560bd12c": "msPKI-Enrollment-Flag",
    "18976af6-3b9e-11d2-90cc-00c04fd91ab1": "pKIExtendedKeyUsage",
    "fe17e04b-937d-4f7e-8e0e-9292c8d5683e": "msPKI-RA-Signature",
    "dbd90548-aa37-4202-9966-8c537ba5ce32": "msPKI-Certificate-Application-Policy",
}

# =========================================================================
# Object Identifier (OID) Mappings
# =========================================================================

OID_TO_STR_MAP = {
    "1.3.6.1.4.1.311.20.2.2": "Smart Card Logon",
    "1.3.6.1.4.1.311.20.2.1": "Certificate Request Agent",
    "1.3.6.1.4.1.311.10.3.4": "Encrypting File System",
    "1.3.6.1.4.1.311.21.5": "Private Key Archival",
    "1.3.6.1.5.5.7.3.1": "Server Authentication",
    "1.3.6.1.5.5.7.3.2": "Client Authentication",
    "1.3.6.1.5.5.7.3.3": "Code Signing",
    "1.3.6.1.5.5.7.3.4": "Secure Email",
    "1.3.6.1.5.2.3.4": "PKINIT Client Authentication",
    "1.3.6.1.5.2.3.5": "KDC Authentication",
    "2.5.29.37.0": "Any Purpose",
}

AUTHENTICATION_EKUS = (
    "Client Authentication",
    "Smart Card Logon",
    "PKINIT Client Authentication",
)

# Certificate extension carrying the requester's SID (szOID_NTDS_CA_SECURITY_EXT)
SECURITY_EXTENSION_OID = "1.3.6.1.4.1.311.25.2"

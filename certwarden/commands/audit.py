"""
PKI audit command for certwarden.

This module collects the PKI configuration of a forest and evaluates it
against the vulnerability rule catalog:
- Certificate templates
- Certification authorities (enrollment services)
- PKI containers
- Computer accounts hosting a certification authority

Objects can also be read from a snapshot file, in which case no directory
connection is needed. Findings are deduplicated in an issue store,
optionally expanded from groups to their direct members, and written as
text and/or JSON.
"""

import argparse
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ldap3.utils.conv import escape_filter_chars

from certwarden.lib.constants import (
    AUTHENTICATION_EKUS,
    OID_TO_STR_MAP,
    CertificateNameFlag,
    EnrollmentFlag,
)
from certwarden.lib.engine import RuleEngine
from certwarden.lib.errors import CatalogError, DirectoryError, handle_error
from certwarden.lib.files import read_json_file, try_to_save_file
from certwarden.lib.formatting import pretty_print
from certwarden.lib.groups import GroupExpander
from certwarden.lib.identity import (
    DomainTable,
    IdentityResolver,
    WellKnownStrategy,
    load_domains,
)
from certwarden.lib.issues import IssueStore
from certwarden.lib.ldap import LDAPConnection, LDAPEntry
from certwarden.lib.logger import logging
from certwarden.lib.objects import (
    CertificateTemplate,
    CertificationAuthority,
    ComputerAccount,
    Finding,
    PkiContainer,
    PkiObject,
    SecurityDescriptor,
    load_objects,
)
from certwarden.lib.permissions import PermissionCatalog, PermissionClassifier
from certwarden.lib.rules import RuleCatalog
from certwarden.lib.security import parse_security_descriptor
from certwarden.lib.target import Target

PUBLIC_KEY_SERVICES = "CN=Public Key Services,CN=Services"


class Audit:
    def __init__(
        self,
        target: Optional[Target] = None,
        input: Optional[str] = None,
        rules: Optional[str] = None,
        permissions: Optional[str] = None,
        technique: Optional[Sequence[str]] = None,
        expand_groups: bool = False,
        include_group_findings: bool = False,
        workers: int = 1,
        json: bool = False,
        text: bool = False,
        stdout: bool = False,
        output: Optional[str] = None,
        connection: Optional[LDAPConnection] = None,
        **kwargs,  # type: ignore
    ):
        self.target = target
        self.input = input
        self.rules_path = rules
        self.permissions_path = permissions
        self.technique = technique
        self.expand_groups = expand_groups
        self.include_group_findings = include_group_findings
        self.workers = workers
        self.json = json
        self.text = text or stdout
        self.stdout = stdout
        self.output = output
        self.kwargs = kwargs

        self._connection = connection
        self.forest = ""

        self.resolver: Optional[IdentityResolver] = None
        self.classifier: Optional[PermissionClassifier] = None

    # =========================================================================
    # Connection Handling
    # =========================================================================

    @property
    def connection(self) -> LDAPConnection:
        """
        Get or create an LDAP connection.
        """
        if self._connection is not None:
            return self._connection

        if self.target is None:
            raise Exception("No target specified and no snapshot given with -input")

        self._connection = LDAPConnection(self.target)
        self._connection.connect()

        return self._connection

    # =========================================================================
    # Catalogs
    # =========================================================================

    def load_catalogs(self) -> Tuple[PermissionCatalog, RuleCatalog]:
        """
        Load the permission and vulnerability catalogs.

        Raises:
            CatalogError: If a catalog file cannot be loaded
        """
        if self.permissions_path:
            permissions = PermissionCatalog.load(self.permissions_path)
        else:
            permissions = PermissionCatalog.default()

        permission_names = [rule.name for rule in permissions.rules]
        if self.rules_path:
            rules = RuleCatalog.load(self.rules_path, permission_names)
        else:
            rules = RuleCatalog.default(permission_names)

        rules = rules.select(self.technique)
        logging.info(
            f"Loaded {len(rules)} rule{'s' if len(rules) != 1 else ''} "
            f"for {', '.join(rules.techniques()) or 'no techniques'}"
        )
        return permissions, rules

    # =========================================================================
    # LDAP Query Methods
    # =========================================================================

    def get_certificate_templates(self) -> List[LDAPEntry]:
        return self.connection.search(
            "(objectclass=pKICertificateTemplate)",
            search_base=f"CN=Certificate Templates,{PUBLIC_KEY_SERVICES},{self.connection.configuration_path}",
            attributes=[
                "cn",
                "name",
                "displayName",
                "distinguishedName",
                "msPKI-Enrollment-Flag",
                "msPKI-Certificate-Name-Flag",
                "msPKI-Certificate-Policy",
                "msPKI-RA-Signature",
                "msPKI-Template-Schema-Version",
                "pKIExtendedKeyUsage",
                "nTSecurityDescriptor",
            ],
            query_sd=True,
        )

    def get_certificate_authorities(self) -> List[LDAPEntry]:
        return self.connection.search(
            "(&(objectClass=pKIEnrollmentService))",
            search_base=f"CN=Enrollment Services,{PUBLIC_KEY_SERVICES},{self.connection.configuration_path}",
            attributes=[
                "cn",
                "name",
                "distinguishedName",
                "dNSHostName",
                "certificateTemplates",
            ],
        )

    def get_issuance_policies(self) -> List[LDAPEntry]:
        return self.connection.search(
            "(objectclass=msPKI-Enterprise-Oid)",
            search_base=f"CN=OID,{PUBLIC_KEY_SERVICES},{self.connection.configuration_path}",
            attributes=[
                "cn",
                "name",
                "msDS-OIDToGroupLink",
                "msPKI-Cert-Template-OID",
            ],
        )

    def get_pki_containers(self) -> List[LDAPEntry]:
        return self.connection.search(
            "(|(objectClass=container)(objectClass=certificationAuthority))",
            search_base=f"{PUBLIC_KEY_SERVICES},{self.connection.configuration_path}",
            attributes=["cn", "name", "distinguishedName", "nTSecurityDescriptor"],
            query_sd=True,
        )

    def get_ca_computer(self, dns_host_name: str) -> Optional[LDAPEntry]:
        results = self.connection.search(
            f"(&(objectClass=computer)(dNSHostName={escape_filter_chars(dns_host_name)}))",
            attributes=[
                "cn",
                "name",
                "distinguishedName",
                "dNSHostName",
                "nTSecurityDescriptor",
            ],
            query_sd=True,
        )
        if len(results) != 1:
            logging.warning(f"Could not find computer account for {dns_host_name!r}")
            return None
        return results[0]

    # =========================================================================
    # Collection
    # =========================================================================

    def collect(self) -> List[PkiObject]:
        """
        Collect and normalize every audited PKI object from the directory.
        """
        logging.info("Finding certificate templates")
        templates = self.get_certificate_templates()
        logging.info(
            f"Found {len(templates)} certificate template{'s' if len(templates) != 1 else ''}"
        )

        logging.info("Finding certificate authorities")
        cas = self.get_certificate_authorities()
        logging.info(
            f"Found {len(cas)} certificate authorit{'ies' if len(cas) != 1 else 'y'}"
        )

        enabled_templates_count = self._link_cas_and_templates(cas, templates)
        logging.info(
            f"Found {enabled_templates_count} enabled certificate template{'s' if enabled_templates_count != 1 else ''}"
        )

        logging.info("Finding issuance policies")
        oids = self.get_issuance_policies()
        self._link_templates_and_policies(templates, oids)

        logging.info("Finding PKI containers")
        containers = self.get_pki_containers()

        objects: List[PkiObject] = []
        objects.extend(self._template_from_entry(template) for template in templates)
        objects.extend(self._authority_from_entry(ca) for ca in cas)
        objects.extend(
            self._container_from_entry(container) for container in containers
        )

        for ca in cas:
            dns_host_name = ca.get("dNSHostName")
            if not dns_host_name:
                continue
            try:
                computer = self.get_ca_computer(dns_host_name)
            except DirectoryError as e:
                logging.warning(f"Could not fetch computer account {dns_host_name!r}: {e}")
                continue
            if computer is not None:
                objects.append(self._computer_from_entry(computer))

        return objects

    def _link_cas_and_templates(
        self, cas: List[LDAPEntry], templates: List[LDAPEntry]
    ) -> int:
        """
        Record on every template the certification authorities publishing it.

        Returns:
            Number of enabled templates
        """
        for template in templates:
            template.set("cas", [])

        for ca in cas:
            ca_templates = ca.get("certificateTemplates") or []

            for template in templates:
                if template.get("name") in ca_templates:
                    template["attributes"]["cas"].append(ca.get("name"))

        return sum(1 for template in templates if template["attributes"]["cas"])

    def _link_templates_and_policies(
        self, templates: List[LDAPEntry], oids: List[LDAPEntry]
    ) -> None:
        """
        Record on every template the groups linked to its issuance policies.
        """
        for template in templates:
            issuance_policies = template.get("msPKI-Certificate-Policy")
            if not isinstance(issuance_policies, list):
                issuance_policies = (
                    [] if issuance_policies is None else [issuance_policies]
                )

            linked_groups: List[str] = []
            for oid in oids:
                if oid.get("msPKI-Cert-Template-OID") not in issuance_policies:
                    continue

                linked_group = oid.get("msDS-OIDToGroupLink")
                if linked_group and linked_group not in linked_groups:
                    linked_groups.append(linked_group)

            template.set("linked_groups", linked_groups)

    def _security(self, entry: LDAPEntry) -> Optional[SecurityDescriptor]:
        raw = entry.get("nTSecurityDescriptor")
        if isinstance(raw, list):
            raw = raw[0] if raw else None
        if not raw:
            logging.debug(f"No security descriptor readable for {entry.get('name')!r}")
            return None

        try:
            return parse_security_descriptor(raw)
        except Exception as e:
            logging.warning(
                f"Could not parse security descriptor of {entry.get('name')!r}: {e}"
            )
            handle_error(True)
            return None

    def _acl_principals(
        self, security: Optional[SecurityDescriptor], object_class: str
    ) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
        if security is None or self.classifier is None:
            return (), ()
        return self.classifier.split_by_tier(
            self.classifier.dangerous_principals(security.aces, object_class)
        )

    def _template_from_entry(self, template: LDAPEntry) -> CertificateTemplate:
        certificate_name_flag = CertificateNameFlag(
            int(template.get("msPKI-Certificate-Name-Flag") or 0)
        )
        enrollment_flag = EnrollmentFlag(int(template.get("msPKI-Enrollment-Flag") or 0))

        authorized_signatures_required = int(template.get("msPKI-RA-Signature") or 0)

        schema_version = template.get("msPKI-Template-Schema-Version")
        schema_version = int(schema_version) if schema_version is not None else 1

        eku = template.get_raw("pKIExtendedKeyUsage")
        if not isinstance(eku, list):
            eku = [] if eku is None else [eku]
        extended_key_usage = [OID_TO_STR_MAP.get(e.decode(), e.decode()) for e in eku]

        any_purpose = "Any Purpose" in extended_key_usage or not extended_key_usage
        authentication = any_purpose or any(
            usage in extended_key_usage for usage in AUTHENTICATION_EKUS
        )
        enrollment_agent = any_purpose or "Certificate Request Agent" in extended_key_usage

        security = self._security(template)
        dangerous_acl, low_privilege_acl = self._acl_principals(security, "template")

        dangerous_enrollees: Tuple[str, ...] = ()
        low_privilege_enrollees: Tuple[str, ...] = ()
        if security is not None and self.classifier is not None:
            dangerous_enrollees, low_privilege_enrollees = self.classifier.split_by_tier(
                self.classifier.enrollees(security.aces, "template")
            )

        linked_groups = []
        for group_dn in template.get("linked_groups") or []:
            linked_groups.append(self._name_of_dn(group_dn))

        cas = template.get("cas") or []

        return CertificateTemplate(
            name=template.get("name"),
            distinguished_name=template.get("distinguishedName"),
            security=security,
            dangerous_acl_principals=dangerous_acl,
            low_privilege_acl_principals=low_privilege_acl,
            display_name=template.get("displayName") or "",
            enabled=len(cas) > 0,
            enabled_on=tuple(cas),
            schema_version=schema_version,
            extended_key_usage=tuple(extended_key_usage),
            enrollee_supplies_subject=bool(
                certificate_name_flag & CertificateNameFlag.ENROLLEE_SUPPLIES_SUBJECT
            ),
            authentication_eku=authentication,
            any_purpose_eku=any_purpose,
            enrollment_agent_eku=enrollment_agent,
            requires_manager_approval=bool(
                enrollment_flag & EnrollmentFlag.PEND_ALL_REQUESTS
            ),
            authorized_signature_required=authorized_signatures_required > 0,
            no_security_extension=bool(
                enrollment_flag & EnrollmentFlag.NO_SECURITY_EXTENSION
            ),
            issuance_policy_linked_groups=tuple(linked_groups),
            dangerous_enrollees=dangerous_enrollees,
            low_privilege_enrollees=low_privilege_enrollees,
        )

    def _authority_from_entry(self, ca: LDAPEntry) -> CertificationAuthority:
        # CA flags, role lists and the CA's own security descriptor live in
        # the CA's registry and are left unset here
        dns_host_name = ca.get("dNSHostName") or ""
        return CertificationAuthority(
            name=ca.get("name"),
            distinguished_name=ca.get("distinguishedName"),
            ca_full_name=f"{dns_host_name}\\{ca.get('name')}",
            dns_host_name=dns_host_name,
            templates=tuple(ca.get("certificateTemplates") or []),
        )

    def _container_from_entry(self, container: LDAPEntry) -> PkiContainer:
        security = self._security(container)
        dangerous_acl, low_privilege_acl = self._acl_principals(security, "container")
        return PkiContainer(
            name=container.get("name"),
            distinguished_name=container.get("distinguishedName"),
            security=security,
            dangerous_acl_principals=dangerous_acl,
            low_privilege_acl_principals=low_privilege_acl,
        )

    def _computer_from_entry(self, computer: LDAPEntry) -> ComputerAccount:
        security = self._security(computer)
        dangerous_acl, low_privilege_acl = self._acl_principals(security, "computer")
        return ComputerAccount(
            name=computer.get("name"),
            distinguished_name=computer.get("distinguishedName"),
            security=security,
            dangerous_acl_principals=dangerous_acl,
            low_privilege_acl_principals=low_privilege_acl,
            dns_host_name=computer.get("dNSHostName") or "",
        )

    def _name_of_dn(self, dn: str) -> str:
        if self.resolver is None:
            return dn
        sid = self.resolver.resolve_by_dn(dn)
        if sid is None:
            return dn
        return self.resolver.to_account_name(sid)

    # =========================================================================
    # Snapshot input
    # =========================================================================

    def load_snapshot(self, path: str) -> List[PkiObject]:
        """
        Load already normalized objects from a JSON snapshot.

        Raises:
            CatalogError: If the snapshot cannot be read
        """
        data = read_json_file(path)
        if isinstance(data, dict):
            self.forest = data.get("forest", "")
            data = data.get("objects", [])
        if not isinstance(data, list):
            raise CatalogError(f"Snapshot {path} must contain a list of objects")

        try:
            objects = load_objects(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"Invalid object in snapshot {path}: {e}")

        logging.info(
            f"Loaded {len(objects)} object{'s' if len(objects) != 1 else ''} from {path!r}"
        )
        return objects

    # =========================================================================
    # Main Audit Method
    # =========================================================================

    def audit(self) -> List[Finding]:
        """
        Collect objects, evaluate the rules and output the findings.
        """
        permissions, rules = self.load_catalogs()

        expander: Optional[GroupExpander] = None
        if self.input:
            self.resolver = IdentityResolver(None, strategies=[WellKnownStrategy()])
            self.classifier = PermissionClassifier(permissions, self.resolver)
            objects = self.load_snapshot(self.input)

            if self.expand_groups:
                logging.warning(
                    "Group expansion needs a directory connection and is skipped for snapshots"
                )
        else:
            connection = self.connection
            self.forest = connection.domain

            domains: DomainTable = load_domains(connection)
            self.resolver = IdentityResolver(connection, domains)
            self.classifier = PermissionClassifier(permissions, self.resolver)
            expander = GroupExpander(connection, self.resolver)

            objects = self.collect()

        engine = RuleEngine(rules, self.classifier, self.resolver, forest=self.forest)
        store = engine.run(objects, IssueStore(), workers=self.workers)
        logging.info(f"Found {len(store)} issue{'s' if len(store) != 1 else ''}")

        if self.expand_groups and expander is not None:
            findings = store.expand_group_findings(
                expander, include_group_finding=self.include_group_findings
            )
            logging.info(
                f"Expanded group findings into {len(findings)} issue{'s' if len(findings) != 1 else ''}"
            )
        else:
            findings = store.findings()

        prefix = (
            datetime.now().strftime("%Y%m%d%H%M%S") if not self.output else self.output
        )
        self._save_output(findings, prefix)

        return findings

    # =========================================================================
    # Output Methods
    # =========================================================================

    def get_output(self, findings: List[Finding]) -> Dict[str, Any]:
        output: Dict[str, Any] = {}

        if not findings:
            output["Findings"] = "[!] Could not find any issues"
            return output

        output["Summary"] = [finding.to_record() for finding in findings]
        output["Findings"] = {
            index: finding.to_dict() for index, finding in enumerate(findings)
        }
        return output

    def _save_output(self, findings: List[Finding], prefix: str) -> None:
        not_specified = not any([self.json, self.text])

        output = self.get_output(findings)

        if self.text or not_specified:
            if self.stdout:
                logging.info("Audit output:")
                pretty_print(output)
            else:
                output_path = f"{prefix}_Certwarden.txt"
                logging.info(f"Saving text output to {output_path!r}")

                f = io.StringIO()
                pretty_print(output, print_func=lambda x: f.write(x + "\n"))

                output_path = try_to_save_file(f.getvalue(), output_path)
                logging.info(f"Wrote text output to {output_path!r}")

        if self.json or not_specified:
            output_path = f"{prefix}_Certwarden.json"
            logging.info(f"Saving JSON output to {output_path!r}")

            f = io.StringIO()
            json.dump(output, f, indent=2, default=str)

            output_path = try_to_save_file(f.getvalue(), output_path)
            logging.info(f"Wrote JSON output to {output_path!r}")


def entry(options: argparse.Namespace) -> None:
    """
    Entry point for the 'audit' command.
    """
    target = None
    if not options.input:
        target = Target.from_options(options)

    audit = Audit(target=target, **vars(options))
    audit.audit()

# ═══════════════════════════════════════════════════════════════════════════════
#                         SAHL SETUP • PROVISIONING FLOWS
# ═══════════════════════════════════════════════════════════════════════════════
#
#   One flow class per provider. A WorkflowVariant picks the class; the
#   credential type and validation strictness ride along in the variant
#   instead of living in separate copies of the same script.
#
# ═══════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import boto3
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from sahl_setup import cli_utils
from sahl_setup.arn_utils import trust_principal_arn
from sahl_setup.aws import ConfigRecorderProvisioner, IAMProvisioner, SecurityHubProvisioner
from sahl_setup.azure import AzureProvisioner, GraphClient, RoleAssigner
from sahl_setup.azure.account import admin_roles, signed_in_user
from sahl_setup.azure.consent import ConsentOutcome, ConsentResult
from sahl_setup.azure.permissions import PERMISSION_DESCRIPTIONS, permission_names
from sahl_setup.azure.rbac import RoleAssignmentReport
from sahl_setup.config import (
    AWSSettings,
    AzureSettings,
    CredentialType,
    OutputSettings,
    Provider,
    WorkflowVariant,
)
from sahl_setup.credentials import (
    CredentialBundle,
    connection_test_commands,
    portal_links,
    print_bundle,
    write_bundle,
    write_connection_test_script,
)
from sahl_setup.ensure import EnsureResult
from sahl_setup.errors import ProvisioningError
from sahl_setup.policies import READ_ONLY_ACTIONS

logger = logging.getLogger(__name__)


def report(result: EnsureResult) -> None:
    """One status line per ensured resource."""
    if result.created:
        cli_utils.success(f"Created {result.key}")
    else:
        cli_utils.info(f"{result.key} already present, reusing")


def section(title: str) -> None:
    console = cli_utils.get_console()
    console.print()
    console.print(f"[bold cyan]{title}[/bold cyan]")
    console.print("━" * 50)


def print_permissions() -> None:
    """Graph application permissions requested for the app."""
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("Permission", style="cyan")
    table.add_column("Grants", style="dim")
    for name in permission_names():
        table.add_row(name, PERMISSION_DESCRIPTIONS.get(name, ""))
    cli_utils.get_console().print(table)


class Flow:
    """Base class: run() provisions and emits, returning the bundle and its path."""

    PROVIDER: Provider

    def __init__(self, variant: WorkflowVariant, output: OutputSettings):
        if variant.provider is not self.PROVIDER:
            raise ValueError(f"{type(self).__name__} cannot run a {variant.provider.value} variant")
        self.variant = variant
        self.output = output

    def run(self) -> Tuple[CredentialBundle, Path]:
        bundle = self.provision()
        return bundle, self.emit(bundle)

    def provision(self) -> CredentialBundle:
        raise NotImplementedError

    def emit(self, bundle: CredentialBundle) -> Path:
        path = write_bundle(bundle, self.output.resolve_path(bundle.credential_type), self.output.output_format)
        print_bundle(bundle, self.output, path)
        return path


# ═══════════════════════════════════════════════════════════════════════════════
# AWS
# ═══════════════════════════════════════════════════════════════════════════════
class AWSFlow(Flow):
    """
    Config recorder -> Security Hub -> IAM policy (read back) -> role or user.

    The caller identity must already be known; its ARN becomes the trusted
    principal of the role variant.
    """

    PROVIDER = Provider.AWS

    def __init__(
        self,
        variant: WorkflowVariant,
        settings: AWSSettings,
        output: OutputSettings,
        session: boto3.Session,
        caller_identity: Dict[str, Any],
    ):
        super().__init__(variant, output)
        self.settings = settings
        self.session = session
        self.caller_identity = caller_identity
        self.permissions: List[str] = list(READ_ONLY_ACTIONS)

    def provision(self) -> CredentialBundle:
        console = cli_utils.get_console()

        if self.settings.enable_config:
            section("🛰  AWS Config")
            with console.status("[bold green]Ensuring AWS Config is recording..."):
                results = ConfigRecorderProvisioner(self.session, self.settings).ensure_all()
            for result in results:
                report(result)

        if self.settings.enable_security_hub:
            section("🛡  Security Hub")
            with console.status("[bold green]Enabling Security Hub..."):
                results = SecurityHubProvisioner(self.session, self.settings).ensure_all()
            for result in results:
                report(result)

        section("🔑 IAM")
        iam = IAMProvisioner(self.session, self.settings)
        with console.status("[bold green]Creating read-only policy..."):
            policy = iam.ensure_policy()
        report(policy)
        with console.status("[bold green]Reading the policy back..."):
            self.permissions = self._verify_policy(iam)

        if self.variant.credential_type is CredentialType.ROLE:
            return self._provision_role(iam)
        return self._provision_user(iam)

    def _verify_policy(self, iam: IAMProvisioner) -> List[str]:
        """Actions the policy really grants; falls back to the expected set when unreadable."""
        try:
            check = iam.verify_policy()
        except ProvisioningError as e:
            cli_utils.warning(f"Could not read the policy back: {e}")
            return list(READ_ONLY_ACTIONS)
        if check.matches:
            cli_utils.success(f"Policy grants the {len(check.actions)} expected read-only actions")
        if check.missing:
            cli_utils.warning(f"Policy is missing: {', '.join(check.missing)}")
        if check.unexpected:
            cli_utils.warning(f"Policy also allows: {', '.join(check.unexpected)}")
        return check.actions

    def _base_bundle(self, principal_arn: str) -> CredentialBundle:
        return CredentialBundle(
            provider=Provider.AWS,
            credential_type=self.variant.credential_type,
            principal_name=self.settings.principal_name,
            principal_id=principal_arn,
            permissions=list(self.permissions),
            account_id=self.settings.account_id,
            region=self.settings.region,
            policy_name=self.settings.policy_name,
            policy_arn=self.settings.policy_arn,
        )

    def _provision_role(self, iam: IAMProvisioner) -> CredentialBundle:
        console = cli_utils.get_console()
        trusted = trust_principal_arn(self.caller_identity['Arn'])
        logger.info("Trusting %s", trusted)

        with console.status(f"[bold green]Creating role {self.settings.principal_name}..."):
            role = iam.ensure_role(trusted)
        report(role)
        with console.status("[bold green]Attaching policy..."):
            report(iam.ensure_attached('role', self.settings.principal_name))

        bundle = self._base_bundle(role.value['Arn'])
        bundle.trusted_principal = trusted
        return bundle

    def _provision_user(self, iam: IAMProvisioner) -> CredentialBundle:
        console = cli_utils.get_console()

        with console.status(f"[bold green]Creating user {self.settings.principal_name}..."):
            user = iam.ensure_user()
        report(user)
        with console.status("[bold green]Attaching policy..."):
            report(iam.ensure_attached('user', self.settings.principal_name))

        keys = iam.create_access_key(self.settings.principal_name)
        cli_utils.success(f"Created access key {cli_utils.mask(keys['AccessKeyId'])}")

        with console.status("[bold green]Verifying the new access key..."):
            identity = iam.verify_access_key(keys['AccessKeyId'], keys['SecretAccessKey'])
        if identity:
            cli_utils.success(f"Access key works: {identity['Arn']}")
        else:
            cli_utils.warning("Access key could not be verified yet; it may need a minute to propagate")

        bundle = self._base_bundle(user.value['Arn'])
        bundle.access_key_id = keys['AccessKeyId']
        bundle.secret_access_key = keys['SecretAccessKey']
        return bundle


# ═══════════════════════════════════════════════════════════════════════════════
# Azure
# ═══════════════════════════════════════════════════════════════════════════════
class AzureFlow(Flow):
    """
    App registration -> service principal -> Graph permissions -> consent
    -> RBAC -> client secret -> self-test.

    Unresolved admin consent and RBAC roles the caller may not assign do
    not fail the run: the bundle is still emitted and the manual steps are
    printed.
    """

    PROVIDER = Provider.AZURE

    def __init__(
        self,
        variant: WorkflowVariant,
        settings: AzureSettings,
        output: OutputSettings,
        credential: Any,
        *,
        graph: Optional[GraphClient] = None,
        role_assigner: Optional[RoleAssigner] = None,
        confirm_reuse: Optional[Callable[[Dict[str, Any]], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(variant, output)
        self.settings = settings
        self.credential = credential
        self.graph = graph or GraphClient(credential, sleep=sleep)
        self.provisioner = AzureProvisioner(
            credential,
            self.graph,
            settings,
            role_assigner=role_assigner,
            confirm_reuse=confirm_reuse,
            sleep=sleep,
        )
        self.consent: Optional[ConsentOutcome] = None
        self.roles: Optional[RoleAssignmentReport] = None
        self.self_test_results: Optional[Dict[str, bool]] = None

    def check_caller(self) -> List[str]:
        user = signed_in_user(self.graph)
        if user:
            cli_utils.info(f"Signed in as {user}")
        roles = admin_roles(self.graph)
        if roles:
            cli_utils.success(f"Directory role: {', '.join(roles)}")
        else:
            cli_utils.warning(
                "No Global Administrator or Privileged Role Administrator role detected; "
                "admin consent will probably need to be granted manually"
            )
        return roles

    def provision(self) -> CredentialBundle:
        console = cli_utils.get_console()
        provisioner = self.provisioner

        section("👤 Caller")
        self.check_caller()

        section("📇 App registration")
        with console.status(f"[bold green]Ensuring app '{self.settings.app_name}'..."):
            app_result = provisioner.ensure_application()
        report(app_result)
        app = app_result.value

        with console.status("[bold green]Ensuring service principal..."):
            sp_result = provisioner.ensure_service_principal(app['appId'])
        report(sp_result)
        service_principal = sp_result.value

        section("🔐 Microsoft Graph permissions")
        with console.status("[bold green]Setting Graph application permissions..."):
            report(provisioner.ensure_graph_permissions(app))
        print_permissions()
        provisioner.wait_for_propagation("directory replication")

        with console.status("[bold green]Granting admin consent..."):
            self.consent = provisioner.grant_consent(app, service_principal, on_attempt=self._report_consent)
        if self.consent.granted:
            cli_utils.success(f"Admin consent granted ({self.consent.method})")
        else:
            cli_utils.warning("Admin consent could not be granted automatically")

        section("🏷  Subscription roles")
        self.roles = provisioner.assign_roles(service_principal['id'])
        for result in self.roles.results:
            report(result)
        for role, reason in self.roles.denied.items():
            cli_utils.warning(f"Not authorized to assign {role}: {escape(reason)}")

        section("🗝  Client secret")
        with console.status("[bold green]Creating client secret..."):
            secret = provisioner.create_secret(app)
        cli_utils.success(f"Client secret created (expires in {self.settings.secret_years} years)")

        if self.settings.self_test:
            with console.status("[bold green]Testing service principal sign-in..."):
                self.self_test_results = provisioner.self_test(app['appId'], secret['secretText'])
            for endpoint, readable in self.self_test_results.items():
                if readable:
                    cli_utils.success(f"Service principal can read {endpoint}")
                else:
                    cli_utils.warning(f"Service principal cannot read {endpoint} yet")
            if not self.self_test_passed:
                cli_utils.warning("Self-test failed - manual consent may be required")

        return CredentialBundle(
            provider=Provider.AZURE,
            credential_type=CredentialType.SERVICE_PRINCIPAL,
            principal_name=self.settings.app_name,
            principal_id=app['appId'],
            permissions=permission_names(),
            tenant_id=self.settings.tenant_id,
            subscription_id=self.settings.subscription_id,
            client_secret=secret['secretText'],
            service_principal_object_id=service_principal['id'],
            azure_roles=self.roles.assigned,
            failed_roles=list(self.roles.denied),
            consent_granted=self.consent.granted,
            consent_method=self.consent.method,
            consent_url=self.consent.manual_url,
        )

    @property
    def self_test_passed(self) -> Optional[bool]:
        """None when the self-test was skipped."""
        if self.self_test_results is None:
            return None
        return all(self.self_test_results.values())

    def emit(self, bundle: CredentialBundle) -> Path:
        path = super().emit(bundle)
        self.print_verification(bundle)
        if self.output.test_script:
            script = write_connection_test_script(bundle, path.parent)
            cli_utils.success(f"Connection test script written to {script}")
        if self.roles is not None and not self.roles.complete:
            self.print_role_hints(bundle)
        if self.consent is not None and not self.consent.granted:
            self.print_manual_consent(self.consent)
        return path

    def _report_consent(self, result: ConsentResult) -> None:
        if result.granted:
            cli_utils.success(f"Consent via {result.strategy}: {result.detail}")
        elif result.strategy != 'manual':
            cli_utils.warning(f"Consent via {result.strategy} failed: {result.detail}")

    def print_verification(self, bundle: CredentialBundle) -> None:
        console = cli_utils.get_console()
        console.print()
        console.print("[bold cyan]Verification links:[/bold cyan]")
        for label, url in portal_links(bundle.principal_id):
            console.print(f"  {label}: [link]{url}[/link]")
        console.print()
        console.print("[bold cyan]Test commands:[/bold cyan]")
        for command in connection_test_commands(bundle, show_secret=self.output.show_secret):
            console.print(f"  {command}", markup=False, highlight=False)

    def print_role_hints(self, bundle: CredentialBundle) -> None:
        commands = '\n'.join(
            f"  az role assignment create --assignee {bundle.principal_id} "
            f"--role \"{role}\" --scope {self.settings.scope}"
            for role in bundle.failed_roles
        )
        cli_utils.get_console().print(Panel.fit(
            "[bold yellow]Some subscription roles could not be assigned.[/bold yellow]\n\n"
            "Ask a subscription Owner or User Access Administrator to run:\n\n"
            f"{escape(commands)}",
            title="⚠ Missing roles",
            border_style="yellow",
        ))

    def print_manual_consent(self, outcome: ConsentOutcome) -> None:
        steps = '\n'.join(f"  {i}. {step}" for i, step in enumerate(outcome.manual_steps, 1))
        cli_utils.get_console().print(Panel.fit(
            "[bold yellow]Admin consent is still required.[/bold yellow]\n\n"
            f"{steps}\n\n"
            f"Direct link: [link]{outcome.manual_url}[/link]",
            title="⚠ Manual step",
            border_style="yellow",
        ))


FLOWS: Dict[Provider, Type[Flow]] = {
    Provider.AWS: AWSFlow,
    Provider.AZURE: AzureFlow,
}


def flow_class(variant: WorkflowVariant) -> Type[Flow]:
    """Flow class for a variant's provider."""
    return FLOWS[variant.provider]

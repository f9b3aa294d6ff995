"""
`sahl-setup azure`: pick the subscription, then run the Azure flow.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import click
from rich.table import Table

from sahl_setup import cli_utils
from sahl_setup.azure.account import Subscription, get_credential, list_subscriptions
from sahl_setup.config import (
    AzureSettings,
    CredentialType,
    DEFAULT_APP_NAME,
    DEFAULT_AZURE_ROLES,
    OutputFormat,
    OutputSettings,
    Provider,
    WorkflowVariant,
)
from sahl_setup.credentials import CredentialBundle
from sahl_setup.errors import InputValidationError, PrerequisiteError
from sahl_setup.inputs import resolve_input, validate_guid
from sahl_setup.workflow import AzureFlow

logger = logging.getLogger(__name__)

SUBSCRIPTION_ENV_VARS = ('AZURE_SUBSCRIPTION_ID',)


def parse_roles(value: Optional[str]) -> List[str]:
    """'Reader, Security Reader' -> ['Reader', 'Security Reader']; empty means the defaults."""
    if not value:
        return list(DEFAULT_AZURE_ROLES)
    roles = [role.strip() for role in value.split(',') if role.strip()]
    return roles or list(DEFAULT_AZURE_ROLES)


def _print_subscriptions(subscriptions: Sequence[Subscription]) -> None:
    table = Table(title="Visible subscriptions", show_header=True, header_style="bold cyan")
    table.add_column("Subscription ID")
    table.add_column("Name")
    table.add_column("Tenant ID", style="dim")
    for sub in subscriptions:
        table.add_row(sub.subscription_id, sub.display_name, sub.tenant_id)
    cli_utils.get_console().print(table)


def choose_subscription(
    credential: Any,
    subscription: Optional[str],
    *,
    interactive: bool,
    subscriptions: Optional[List[Subscription]] = None,
) -> Subscription:
    """
    Resolve the target subscription; the tenant comes with it.

    Raises:
        PrerequisiteError: No enabled subscription is visible
        InputValidationError: The requested subscription is not visible
    """
    if subscriptions is None:
        subscriptions = list_subscriptions(credential)
    enabled = [s for s in subscriptions if s.enabled]
    if not enabled:
        raise PrerequisiteError(
            "No enabled Azure subscription is visible to the signed-in account",
            remediation="Run 'az account list' to check access, or sign in with another account",
        )

    prompt = interactive and len(enabled) > 1 and not subscription
    if prompt:
        _print_subscriptions(enabled)

    resolved = resolve_input(
        field='subscription_id',
        validator=validate_guid('subscription_id'),
        argument=subscription,
        env_vars=SUBSCRIPTION_ENV_VARS,
        interactive=prompt,
        prompt_text='Subscription ID',
        default=lambda: enabled[0].subscription_id,
    )
    for sub in subscriptions:
        if sub.subscription_id.lower() == resolved.value:
            if not sub.enabled:
                logger.warning("Subscription %s is in state %s", sub.subscription_id, sub.state)
            return sub
    raise InputValidationError(
        'subscription_id',
        resolved.value,
        f"Subscription {resolved.value} is not visible to the signed-in account",
    )


def _confirm_reuse(app: Dict[str, Any]) -> bool:
    return click.confirm(
        f"App '{app.get('displayName')}' already exists with ID {app.get('appId')}. "
        "Continue with the existing app?",
        default=True,
    )


def run_azure(
    *,
    subscription: Optional[str] = None,
    app_name: str = DEFAULT_APP_NAME,
    roles: Optional[str] = None,
    secret_years: int = 2,
    self_test: bool = True,
    reuse_existing: bool = True,
    output_format: str = 'json',
    output: Optional[str] = None,
    env_script: bool = False,
    test_script: bool = False,
    hide_secret: bool = False,
    no_wait: bool = False,
    interactive: bool = False,
) -> CredentialBundle:
    """Provision the Sahl app registration and service principal in Azure."""
    variant = WorkflowVariant(Provider.AZURE, CredentialType.SERVICE_PRINCIPAL)
    console = cli_utils.get_console()

    console.print("\n[bold cyan]🔷 Sahl Azure Setup[/bold cyan]\n")

    with console.status("[bold green]Checking Azure login..."):
        credential = get_credential()
    cli_utils.success("Azure login detected")

    chosen = choose_subscription(credential, subscription, interactive=interactive)
    cli_utils.info(f"Subscription: {chosen.subscription_id} ({chosen.display_name or 'unnamed'})")
    cli_utils.info(f"Tenant: {chosen.tenant_id}")

    settings = AzureSettings(
        subscription_id=chosen.subscription_id,
        tenant_id=chosen.tenant_id,
        app_name=app_name,
        roles=parse_roles(roles),
        secret_years=secret_years,
        reuse_existing=reuse_existing,
        self_test=self_test,
    )
    if no_wait:
        settings.propagation_seconds = 0

    output_settings = OutputSettings(
        output_format=OutputFormat(output_format),
        path=Path(output) if output else None,
        show_secret=not hide_secret,
        env_script=env_script,
        test_script=test_script,
    )
    flow = AzureFlow(
        variant,
        settings,
        output_settings,
        credential,
        confirm_reuse=_confirm_reuse if interactive else None,
    )
    bundle, path = flow.run()
    logger.info("Azure setup complete, bundle at %s", path)

    console.print()
    pending = []
    if not bundle.consent_granted:
        pending.append("admin consent")
    if bundle.failed_roles:
        pending.append("role assignments")
    if pending:
        console.print(f"[bold yellow]✓ Azure setup complete - {' and '.join(pending)} pending[/bold yellow]")
    else:
        console.print("[bold green]✓ Azure setup complete![/bold green]")
    return bundle

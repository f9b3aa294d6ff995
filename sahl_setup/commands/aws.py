"""
`sahl-setup aws`: resolve inputs, then run the AWS flow.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from sahl_setup import cli_utils
from sahl_setup.arn_utils import extract_partition, is_cross_account
from sahl_setup.aws_utils import create_session, get_caller_identity
from sahl_setup.config import (
    AWSSettings,
    CredentialType,
    DEFAULT_REGION,
    OutputFormat,
    OutputSettings,
    Provider,
    Strictness,
    WorkflowVariant,
)
from sahl_setup.credentials import CredentialBundle
from sahl_setup.errors import PrerequisiteError
from sahl_setup.inputs import (
    COMMON_REGIONS,
    ResolvedValue,
    normalize,
    region_validator,
    resolve_input,
    validate_account_id,
)
from sahl_setup.workflow import AWSFlow

logger = logging.getLogger(__name__)

ACCOUNT_ENV_VARS = ('AWS_ACCOUNT_ID',)
REGION_ENV_VARS = ('AWS_REGION', 'AWS_DEFAULT_REGION')


def _print_region_hint() -> None:
    console = cli_utils.get_console()
    console.print("[dim]Common regions:[/dim]")
    for code, name in COMMON_REGIONS:
        console.print(f"  [cyan]{code:<16}[/cyan] [dim]{name}[/dim]")


def _resolve_account(
    account_id: Optional[str], interactive: bool, default: Optional[str] = None
) -> ResolvedValue:
    return resolve_input(
        field='account_id',
        validator=validate_account_id,
        argument=account_id,
        env_vars=ACCOUNT_ENV_VARS,
        interactive=interactive,
        prompt_text='AWS Account ID',
        default=(lambda: default) if default else None,
    )


def run_aws(
    account_id: Optional[str],
    region: Optional[str],
    *,
    credential_type: str = 'role',
    strictness: str = 'standard',
    output_format: str = 'json',
    output: Optional[str] = None,
    profile: Optional[str] = None,
    skip_config: bool = False,
    skip_security_hub: bool = False,
    no_wait: bool = False,
    interactive: bool = False,
) -> CredentialBundle:
    """
    Provision the Sahl read-only role or user in an AWS account.

    Args:
        account_id: 12-digit account id (defaults to the caller's account)
        region: Region for Config and Security Hub (defaults to us-east-1)
        credential_type: 'role' or 'user'
        strictness: Region validation level
        output_format: 'json' or 'text'
        output: Override path for the credentials file
        profile: AWS CLI profile
        skip_config: Do not touch AWS Config
        skip_security_hub: Do not touch Security Hub
        no_wait: Skip IAM propagation waits
        interactive: Prompt for missing or invalid values

    Returns:
        The emitted credential bundle
    """
    variant = WorkflowVariant(Provider.AWS, CredentialType(credential_type), Strictness(strictness))
    console = cli_utils.get_console()

    console.print(f"\n[bold cyan]☁️  Sahl AWS Setup[/bold cyan] [dim]({variant.credential_type.value})[/dim]\n")

    if interactive and not region:
        _print_region_hint()
    resolved_region = resolve_input(
        field='region',
        validator=region_validator(variant.strictness),
        argument=region,
        env_vars=REGION_ENV_VARS,
        interactive=interactive,
        prompt_text='AWS Region',
        default=lambda: DEFAULT_REGION,
    )

    # An explicit account is checked before any AWS call
    resolved_account: Optional[ResolvedValue] = None
    if normalize(account_id) or any(normalize(os.environ.get(name)) for name in ACCOUNT_ENV_VARS):
        resolved_account = _resolve_account(account_id, interactive)

    session = create_session(profile, resolved_region.value)
    with console.status("[bold green]Checking AWS credentials..."):
        identity = get_caller_identity(session)
    caller_account = identity['Account']
    cli_utils.success(f"Authenticated as {identity['Arn']}")

    if resolved_account is None:
        resolved_account = _resolve_account(None, interactive, default=caller_account)
    logger.info(
        "Account %s (%s), region %s (%s)",
        resolved_account.value, resolved_account.source, resolved_region.value, resolved_region.source,
    )

    if is_cross_account(identity['Arn'], resolved_account.value):
        raise PrerequisiteError(
            f"Credentials belong to account {caller_account}, not {resolved_account.value}",
            remediation=f"Use --profile with credentials for account {resolved_account.value}",
        )

    settings = AWSSettings(
        account_id=resolved_account.value,
        region=resolved_region.value,
        credential_type=variant.credential_type,
        profile=profile,
        partition=extract_partition(identity['Arn']),
        enable_config=not skip_config,
        enable_security_hub=not skip_security_hub,
    )
    if no_wait:
        settings.propagation_seconds = 0

    cli_utils.info(f"Account: {settings.account_id}  Region: {settings.region}")
    cli_utils.info(f"Principal: {settings.principal_name}")

    output_settings = OutputSettings(
        output_format=OutputFormat(output_format),
        path=Path(output) if output else None,
    )
    bundle, path = AWSFlow(variant, settings, output_settings, session, identity).run()
    logger.info("AWS setup complete, bundle at %s", path)

    console.print()
    console.print("[bold green]✓ AWS setup complete![/bold green]")
    if variant.credential_type is CredentialType.ROLE:
        console.print(f"[dim]Give Sahl the Role ARN from {path}[/dim]")
    else:
        console.print(f"[dim]Give Sahl the access key pair from {path}[/dim]")
    return bundle

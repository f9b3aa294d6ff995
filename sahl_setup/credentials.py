"""
Credential bundle and its emission.

The bundle is written in PLAINTEXT to a local file (mode 0600) and
summarised on the terminal. There is no encryption and no secret-store
integration; the operator is told to move the file somewhere safe.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.table import Table

from sahl_setup import cli_utils
from sahl_setup.config import CredentialType, OutputFormat, OutputSettings, Provider, utc_isoformat

logger = logging.getLogger(__name__)

AWS_DESCRIPTION = 'AWS Security Hub service account credentials for Sahl security monitoring application'
PORTAL_APP_URL = 'https://portal.azure.com/#view/Microsoft_AAD_RegisteredApps/ApplicationMenuBlade/~/{blade}/appId/{app_id}'
PORTAL_BLADES = (('Overview', 'Overview'), ('API permissions', 'ApiPermissions'), ('Credentials', 'Credentials'))
GRAPH_USERS_URL = 'https://graph.microsoft.com/v1.0/users'
TEST_SCRIPT_NAME = 'test-azure-connection.sh'
# endpoint, label, JMESPath columns
SCRIPT_CHECKS = (
    ('users', 'Users', 'displayName,userPrincipalName'),
    ('groups', 'Groups', 'displayName,description'),
    ('applications', 'Applications', 'displayName,appId'),
)


@dataclass
class CredentialBundle:
    """Everything Sahl needs to connect, plus what was granted."""
    provider: Provider
    credential_type: CredentialType
    principal_name: str
    principal_id: str                    # role/user ARN or Azure client (app) id
    permissions: List[str] = field(default_factory=list)
    created_on: str = field(default_factory=utc_isoformat)

    # AWS
    account_id: str = ''
    region: str = ''
    policy_name: str = ''
    policy_arn: str = ''
    trusted_principal: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''

    # Azure
    tenant_id: str = ''
    subscription_id: str = ''
    client_secret: str = ''
    service_principal_object_id: str = ''
    azure_roles: List[str] = field(default_factory=list)
    failed_roles: List[str] = field(default_factory=list)
    consent_granted: Optional[bool] = None
    consent_method: str = ''
    consent_url: str = ''

    def to_dict(self) -> Dict[str, Any]:
        """Serialized field layout Sahl imports, keyed per credential type."""
        if self.provider is Provider.AZURE:
            data: Dict[str, Any] = {
                'tenantId': self.tenant_id,
                'clientId': self.principal_id,
                'clientSecret': self.client_secret,
                'subscriptionId': self.subscription_id,
                'applicationName': self.principal_name,
                'servicePrincipalObjectId': self.service_principal_object_id,
                'createdOn': self.created_on,
                'azureRoles': list(self.azure_roles),
                'microsoftGraphPermissions': list(self.permissions),
                'adminConsentProvided': bool(self.consent_granted),
                'permissions': {
                    'azureRoles': list(self.azure_roles),
                    'microsoftGraph': list(self.permissions),
                },
            }
            if self.failed_roles:
                data['failedAzureRoles'] = list(self.failed_roles)
            return data

        prefix = 'role' if self.credential_type is CredentialType.ROLE else 'user'
        data = {
            f"{prefix}Name": self.principal_name,
            f"{prefix}Arn": self.principal_id,
            'policyName': self.policy_name,
            'policyArn': self.policy_arn,
            'accountId': self.account_id,
            'region': self.region,
        }
        if self.trusted_principal:
            data['trustedPrincipal'] = self.trusted_principal
        if self.access_key_id:
            data['accessKeyId'] = self.access_key_id
            data['secretAccessKey'] = self.secret_access_key
        data['createdOn'] = self.created_on
        data['permissions'] = list(self.permissions)
        data['description'] = AWS_DESCRIPTION
        return data

    def to_text(self) -> str:
        """Flat `Key: Value` rendering; lists are comma separated."""
        lines = []
        for key, value in self.to_dict().items():
            if isinstance(value, dict):
                continue
            if isinstance(value, list):
                value = ', '.join(value)
            lines.append(f"{_label(key)}: {value}")
        return '\n'.join(lines) + '\n'

    @property
    def has_secret(self) -> bool:
        return bool(self.secret_access_key or self.client_secret)


def _label(key: str) -> str:
    """roleArn -> Role ARN"""
    words = []
    current = ''
    for ch in key:
        if ch.isupper() and current:
            words.append(current)
            current = ch
        else:
            current += ch
    words.append(current)
    special = {'arn': 'ARN', 'id': 'ID', 'on': 'On'}
    return ' '.join(special.get(w.lower(), w.capitalize()) for w in words)


def write_bundle(bundle: CredentialBundle, path: Path, output_format: OutputFormat) -> Path:
    """
    Write the bundle to disk, owner read/write only.

    Returns:
        The path written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if output_format is OutputFormat.JSON:
        payload = json.dumps(bundle.to_dict(), indent=2) + '\n'
    else:
        payload = bundle.to_text()

    # 0600 from creation; chmod covers a pre-existing file
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(payload)
    os.chmod(path, 0o600)
    logger.info("Wrote %s credential bundle to %s", bundle.provider.value, path)
    return path


def print_bundle(bundle: CredentialBundle, output: OutputSettings, path: Path) -> None:
    """Terminal summary of what was created."""
    console = cli_utils.get_console()
    table = Table(title="Sahl Credentials", show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="bold white")

    if bundle.provider is Provider.AWS:
        kind = 'Role' if bundle.credential_type is CredentialType.ROLE else 'User'
        table.add_row(f"{kind} name", bundle.principal_name)
        table.add_row(f"{kind} ARN", bundle.principal_id)
        table.add_row("Policy ARN", bundle.policy_arn)
        table.add_row("Account / Region", f"{bundle.account_id} / {bundle.region}")
        if bundle.trusted_principal:
            table.add_row("Trusted principal", bundle.trusted_principal)
        if bundle.access_key_id:
            table.add_row("Access Key ID", bundle.access_key_id)
            table.add_row("Secret Access Key", "[HIDDEN FOR SECURITY]")
    else:
        table.add_row("Tenant ID", bundle.tenant_id)
        table.add_row("Client ID", bundle.principal_id)
        table.add_row(
            "Client Secret",
            bundle.client_secret if output.show_secret else cli_utils.mask(bundle.client_secret),
        )
        table.add_row("Subscription", bundle.subscription_id)
        table.add_row("Azure roles", ", ".join(bundle.azure_roles) or "-")
        if bundle.failed_roles:
            table.add_row("Failed roles", f"[yellow]{', '.join(bundle.failed_roles)}[/yellow]")
        table.add_row("Admin consent", _consent_label(bundle))

    console.print()
    console.print(table)
    console.print()
    console.print(f"[green]✓[/green] Credentials saved to [bold]{path}[/bold]")
    if bundle.has_secret:
        console.print("[yellow]⚠  This file contains secrets in plaintext. Keep it secure and do not share it.[/yellow]")
        if bundle.provider is Provider.AWS:
            console.print("[dim]Consider rotating these keys regularly (every 90 days).[/dim]")

    if bundle.provider is Provider.AZURE and output.env_script:
        console.print()
        console.print("[bold cyan]Environment variables for your app:[/bold cyan]")
        for line in env_exports(bundle):
            console.print(line, markup=False, highlight=False)


def _consent_label(bundle: CredentialBundle) -> str:
    if bundle.consent_granted:
        return f"[green]granted[/green] ({bundle.consent_method})"
    return "[yellow]unresolved - manual consent required[/yellow]"


def env_exports(bundle: CredentialBundle) -> List[str]:
    return [
        f"export AZURE_TENANT_ID='{bundle.tenant_id}'",
        f"export AZURE_CLIENT_ID='{bundle.principal_id}'",
        f"export AZURE_CLIENT_SECRET='{bundle.client_secret}'",
    ]


def portal_url(app_id: str, blade: str = 'ApiPermissions') -> str:
    """Azure portal page for an app registration (Overview, ApiPermissions, Credentials)."""
    return PORTAL_APP_URL.format(blade=blade, app_id=app_id)


def portal_links(app_id: str) -> List[Tuple[str, str]]:
    """(label, url) for each portal blade worth checking after setup."""
    return [(label, portal_url(app_id, blade)) for label, blade in PORTAL_BLADES]


def connection_test_commands(bundle: CredentialBundle, show_secret: bool = True) -> List[str]:
    """az CLI commands that sign in as the new principal and list a few users."""
    secret = bundle.client_secret if show_secret else '<CLIENT_SECRET>'
    return [
        f"az login --service-principal -u {shlex.quote(bundle.principal_id)} "
        f"-p {shlex.quote(secret)} --tenant {shlex.quote(bundle.tenant_id)}",
        f"az rest --method GET --url '{GRAPH_USERS_URL}' "
        "--query 'value[0:5].[displayName,userPrincipalName]'",
    ]


def connection_test_script(bundle: CredentialBundle) -> str:
    """Bash script that signs in as the principal and reads users, groups and applications."""
    lines = [
        '#!/bin/bash',
        '# Sign in as the Sahl service principal and check Microsoft Graph access',
        '',
        'echo "🔍 Testing Azure AD service principal connection..."',
        f"echo {shlex.quote('Application: ' + bundle.principal_name)}",
        f"echo {shlex.quote('Client ID: ' + bundle.principal_id)}",
        'echo ""',
        f"if az login --service-principal -u {shlex.quote(bundle.principal_id)} "
        f"-p {shlex.quote(bundle.client_secret)} --tenant {shlex.quote(bundle.tenant_id)} > /dev/null 2>&1; then",
        '    echo "✅ Signed in as the service principal"',
        'else',
        '    echo "❌ Sign-in failed"',
        '    exit 1',
        'fi',
        '',
        'echo ""',
        'echo "📋 Testing Microsoft Graph permissions..."',
    ]
    for endpoint, label, columns in SCRIPT_CHECKS:
        lines += [
            f'echo "{label}:"',
            f"az rest --method GET --url 'https://graph.microsoft.com/v1.0/{endpoint}' "
            f"--query 'value[0:3].[{columns}]' -o table --only-show-errors "
            f'&& echo "✅ {label} access working" || echo "❌ {label} access failed"',
            'echo ""',
        ]
    lines.append('echo "🏁 Connection test complete"')
    return '\n'.join(lines) + '\n'


def write_connection_test_script(bundle: CredentialBundle, directory: Path) -> Path:
    """
    Write test-azure-connection.sh into directory.

    The script embeds the client secret, so it is executable by the owner only.
    """
    path = Path(directory) / TEST_SCRIPT_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o700)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(connection_test_script(bundle))
    os.chmod(path, 0o700)
    logger.info("Wrote connection test script to %s", path)
    return path

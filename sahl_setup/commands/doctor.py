"""
`sahl-setup doctor`: check that this machine can run a setup.
"""

import logging
import platform
import sys
from importlib import metadata

import boto3
from botocore.exceptions import BotoCoreError

from sahl_setup import cli_utils
from sahl_setup.aws_utils import active_profile_name, get_caller_identity, list_profiles
from sahl_setup.azure.account import get_credential
from sahl_setup.errors import PrerequisiteError

logger = logging.getLogger(__name__)

REQUIRED_PACKAGES = [
    ('boto3', 'AWS SDK'),
    ('click', 'CLI Framework'),
    ('rich', 'Terminal UI'),
    ('requests', 'HTTP client for Microsoft Graph'),
    ('azure-identity', 'Azure authentication'),
    ('azure-mgmt-authorization', 'Azure RBAC'),
    ('azure-mgmt-resource', 'Azure subscriptions'),
]


def _header(title: str) -> None:
    console = cli_utils.get_console()
    console.print()
    console.print(f"[bold cyan]{title}[/bold cyan]")
    console.print("━" * 50)


def check_python() -> bool:
    console = cli_utils.get_console()
    py_version = sys.version_info
    console.print(f"[green]✓ Platform: {platform.system()} {platform.release()}[/green]")
    if py_version >= (3, 9):
        console.print(f"[green]✓ Python {py_version.major}.{py_version.minor}.{py_version.micro}[/green]")
        return True
    console.print(f"[red]✗ Python {py_version.major}.{py_version.minor} (requires 3.9+)[/red]")
    return False


def check_packages() -> bool:
    console = cli_utils.get_console()
    all_ok = True
    for package, desc in REQUIRED_PACKAGES:
        try:
            version = metadata.version(package)
        except metadata.PackageNotFoundError:
            console.print(f"[red]✗ {package} - {desc} NOT INSTALLED[/red]")
            all_ok = False
            continue
        console.print(f"[green]✓ {package} ({version}) - {desc}[/green]")
    return all_ok


def check_aws() -> bool:
    console = cli_utils.get_console()
    try:
        session = boto3.Session()
        identity = get_caller_identity(session)
    except (PrerequisiteError, BotoCoreError) as e:
        console.print(f"[yellow]⚠ AWS: {e}[/yellow]")
        console.print("  [dim]Run 'aws configure' or set AWS_PROFILE[/dim]")
        return False

    console.print(f"[green]✓ AWS credentials: {identity['Arn']}[/green]")
    if session.region_name:
        console.print(f"[green]✓ Default region: {session.region_name}[/green]")
    else:
        console.print("[yellow]⚠ No default region set (us-east-1 will be used)[/yellow]")
    console.print(f"[green]✓ Runs use profile: {active_profile_name()}[/green]")
    profiles = list_profiles()
    if profiles:
        console.print(f"[green]✓ {len(profiles)} AWS profile(s) configured[/green]")
        for p in profiles:
            marker = "*" if p.active else " "
            region = f" ({p.region})" if p.region else ""
            console.print(f"  {marker} [dim]{p.name}{region}[/dim]")
    return True


def check_azure() -> bool:
    console = cli_utils.get_console()
    try:
        get_credential()
    except PrerequisiteError as e:
        console.print(f"[yellow]⚠ Azure: {e}[/yellow]")
        console.print(f"  [dim]{e.remediation}[/dim]")
        return False
    console.print("[green]✓ Azure CLI login detected[/green]")
    return True


def run_doctor() -> bool:
    """
    Run every check and print a summary.

    Cloud checks only need to pass for the provider you are setting up, so
    the run counts as healthy when at least one of them passes.
    """
    console = cli_utils.get_console()
    console.print()
    cli_utils.print_banner(small=True)

    _header("🏥 System Health Check")
    python_ok = check_python()

    _header("📦 Required Packages")
    packages_ok = check_packages()

    _header("☁️  AWS")
    aws_ok = check_aws()

    _header("🔷 Azure")
    azure_ok = check_azure()

    all_ok = python_ok and packages_ok and (aws_ok or azure_ok)
    logger.debug("doctor: python=%s packages=%s aws=%s azure=%s", python_ok, packages_ok, aws_ok, azure_ok)

    console.print()
    console.print("━" * 50)
    if all_ok:
        console.print("[bold green]✓ All checks passed! Sahl Setup is ready.[/bold green]")
    else:
        console.print("[bold yellow]⚠ Some issues found. See above for details.[/bold yellow]")
    console.print()
    return all_ok

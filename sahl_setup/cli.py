# ═══════════════════════════════════════════════════════════════════════════════
#                           SAHL SETUP • COMMAND LINE
# ═══════════════════════════════════════════════════════════════════════════════
#
#   Entry point. Parses options, sets up logging and the console, and maps
#   every failure to exit status 1. The provisioning itself lives in
#   sahl_setup.commands.
#
# ═══════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
import sys
from functools import wraps
from typing import Callable, Optional, Tuple

import click

from sahl_setup import cli_utils
from sahl_setup.cli_utils import ExitCode, print_banner, print_version_info, set_console_theme, setup_logging
from sahl_setup.config import DEFAULT_APP_NAME
from sahl_setup.errors import (
    InputValidationError,
    PrerequisiteError,
    ProvisioningError,
    SahlSetupError,
)

logger = logging.getLogger(__name__)

PARTIAL_RESOURCES_NOTE = (
    "Resources created before the failure are left in place. "
    "Re-running is safe: existing resources are reused."
)


def _interactive(flag: Optional[bool]) -> bool:
    """Prompt only when asked to, or when a person is at the keyboard."""
    if flag is not None:
        return flag
    return sys.stdin.isatty()


def handle_errors(command_name: str) -> Callable:
    """
    Map provisioning errors to a message and exit status 1.

    click's own Abort/usage errors pass through untouched.
    """
    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except (SystemExit, click.exceptions.Exit, click.ClickException, click.Abort):
                raise
            except InputValidationError as e:
                logger.debug("%s: invalid input", command_name, exc_info=True)
                cli_utils.error(str(e), f"Example: {e.example}" if e.example else None)
                raise SystemExit(ExitCode.ERROR)
            except PrerequisiteError as e:
                logger.debug("%s: prerequisite missing", command_name, exc_info=True)
                cli_utils.error(str(e), e.remediation or None)
                raise SystemExit(ExitCode.ERROR)
            except ProvisioningError as e:
                logger.error("%s failed at %s: %s", command_name, e.step, e, exc_info=True)
                cli_utils.error(str(e), PARTIAL_RESOURCES_NOTE)
                raise SystemExit(ExitCode.ERROR)
            except SahlSetupError as e:
                logger.error("%s failed: %s", command_name, e, exc_info=True)
                cli_utils.error(str(e))
                raise SystemExit(ExitCode.ERROR)
            except KeyboardInterrupt:
                cli_utils.get_console().print()
                cli_utils.warning(f"Interrupted. {PARTIAL_RESOURCES_NOTE}")
                raise SystemExit(ExitCode.ERROR)
            except Exception as e:
                logger.error("%s command failed: %s", command_name, e, exc_info=True)
                cli_utils.error(f"Unexpected error: {e}", "Re-run with --debug for the full traceback")
                raise SystemExit(ExitCode.ERROR)
        return wrapper
    return decorator


@click.group(invoke_without_command=True)
@click.option('--version', '-v', is_flag=True, help='Show version and exit')
@click.option('--verbose', '-V', is_flag=True, help='Log each provisioning step')
@click.option('--debug', is_flag=True, help='Debug logging, including SDK calls')
@click.option('--no-color', is_flag=True, help='Disable colored output (useful for CI/CD logs)')
@click.pass_context
def main(ctx, version, verbose, debug, no_color):
    """
    🛡️  SAHL SETUP - read-only monitoring access for Sahl

    Creates the least-privilege principal Sahl uses to monitor your cloud
    account, and writes its connection details to a local file.

    \b
    Quick Start:
      sahl-setup aws                         # IAM role trusted by you
      sahl-setup aws --credential-type user  # IAM user + access key
      sahl-setup azure                       # App registration + SP
      sahl-setup doctor                      # Check prerequisites
    """
    set_console_theme(no_color=no_color)
    setup_logging(verbose=verbose, debug=debug)

    if version:
        print_version_info()
        ctx.exit(ExitCode.SUCCESS)
    elif ctx.invoked_subcommand is None:
        console = cli_utils.get_console()
        print_banner()
        console.print("[bold bright_white]Usage:[/bold bright_white] sahl-setup [cyan]COMMAND[/cyan] [grey50][[/grey50][cyan]ARGS[/cyan][grey50]][/grey50]...")
        console.print()
        console.print("[bold cyan]Commands:[/bold cyan]")
        console.print("  [cyan]aws[/cyan]                   AWS Config, Security Hub and a read-only IAM role/user")
        console.print("  [grey50]│[/grey50]   [grey50]ACCOUNT_ID REGION --credential-type, --strictness, --format[/grey50]")
        console.print("  [cyan]azure[/cyan]                 App registration, Graph consent, RBAC and client secret")
        console.print("  [grey50]│[/grey50]   [grey50]--subscription, --app-name, --roles, --env-script[/grey50]")
        console.print("  [cyan]validate-account-id[/cyan]   Check AWS account ids offline")
        console.print("  [cyan]doctor[/cyan]                Check system health and dependencies")
        console.print("  [cyan]version[/cyan]               Show version and system information")
        console.print()
        console.print("[grey50]Run 'sahl-setup COMMAND --help' for more information[/grey50]")


@main.command()
def version():
    """Show detailed version and system information."""
    print_version_info()


@main.command()
@handle_errors('doctor')
def doctor():
    """
    Check system health and dependencies.

    Verifies the Python version, required packages, AWS credentials and
    the Azure CLI login.
    """
    from sahl_setup.commands.doctor import run_doctor

    if not run_doctor():
        raise SystemExit(ExitCode.ERROR)


@main.command('validate-account-id')
@click.argument('values', nargs=-1, required=True)
@handle_errors('validate-account-id')
def validate_account_id(values: Tuple[str, ...]):
    """
    Check AWS account ids without calling AWS.

    Exits 1 if any value is invalid. Example:

    \b
      sahl-setup validate-account-id 123456789012 " 123 456 789 012 " 12345
    """
    from sahl_setup.commands.validate import run_validate

    results = run_validate(values)
    if not all(valid for _, valid in results):
        raise SystemExit(ExitCode.ERROR)


@main.command()
@click.argument('account_id', required=False)
@click.argument('region', required=False)
@click.option('--credential-type', type=click.Choice(['role', 'user']), default='role', show_default=True,
              help='Role trusted by you, or user with an access key pair')
@click.option('--strictness', type=click.Choice(['lenient', 'standard', 'strict']), default='standard',
              show_default=True, help='How strictly to validate the region')
@click.option('--format', 'output_format', type=click.Choice(['json', 'text']), default='json', show_default=True,
              help='Credentials file format')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Credentials file path')
@click.option('--profile', '-p', help='AWS CLI profile name')
@click.option('--skip-config', is_flag=True, help='Do not set up the AWS Config recorder')
@click.option('--skip-security-hub', is_flag=True, help='Do not enable Security Hub')
@click.option('--no-wait', is_flag=True, help='Skip IAM propagation waits')
@click.option('--interactive/--non-interactive', default=None,
              help='Prompt for missing values (default: only on a terminal)')
@handle_errors('aws')
def aws(account_id, region, credential_type, strictness, output_format, output, profile,
        skip_config, skip_security_hub, no_wait, interactive):
    """
    Provision Sahl's read-only access to an AWS account.

    ACCOUNT_ID defaults to AWS_ACCOUNT_ID, then to the account of your
    credentials. REGION defaults to AWS_REGION / AWS_DEFAULT_REGION, then
    us-east-1.

    \b
    Examples:
      sahl-setup aws 123456789012 us-east-1
      sahl-setup aws --credential-type user --format text
      sahl-setup aws --profile prod --non-interactive
    """
    from sahl_setup.commands.aws import run_aws

    run_aws(
        account_id,
        region,
        credential_type=credential_type,
        strictness=strictness,
        output_format=output_format,
        output=output,
        profile=profile,
        skip_config=skip_config,
        skip_security_hub=skip_security_hub,
        no_wait=no_wait,
        interactive=_interactive(interactive),
    )


@main.command()
@click.option('--subscription', '-s', help='Subscription ID (default: AZURE_SUBSCRIPTION_ID or your only one)')
@click.option('--app-name', default=DEFAULT_APP_NAME, show_default=True, help='App registration display name')
@click.option('--roles', help='Comma-separated RBAC roles (default: Reader, Security Reader, ...)')
@click.option('--secret-years', type=click.IntRange(1, 2), default=2, show_default=True,
              help='Client secret lifetime in years')
@click.option('--skip-self-test', is_flag=True, help='Do not sign in as the new service principal')
@click.option('--reuse-existing/--no-reuse-existing', default=True, show_default=True,
              help='Reuse an app registration with the same name')
@click.option('--format', 'output_format', type=click.Choice(['json', 'text']), default='json', show_default=True,
              help='Credentials file format')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Credentials file path')
@click.option('--env-script', is_flag=True, help='Also print AZURE_* export lines')
@click.option('--test-script', is_flag=True, help='Write test-azure-connection.sh next to the credentials file')
@click.option('--hide-secret', is_flag=True, help='Mask the client secret on the terminal')
@click.option('--no-wait', is_flag=True, help='Skip the directory propagation wait')
@click.option('--interactive/--non-interactive', default=None,
              help='Prompt for choices (default: only on a terminal)')
@handle_errors('azure')
def azure(subscription, app_name, roles, secret_years, skip_self_test, reuse_existing, output_format,
          output, env_script, test_script, hide_secret, no_wait, interactive):
    """
    Provision Sahl's read-only access to an Azure tenant and subscription.

    Uses your current 'az login' session. Admin consent for Microsoft Graph
    is attempted automatically; if your account cannot grant it, setup
    still completes and prints the link for an administrator.

    \b
    Examples:
      sahl-setup azure
      sahl-setup azure --subscription 00000000-0000-0000-0000-000000000000
      sahl-setup azure --roles "Reader,Security Reader" --env-script
      sahl-setup azure --test-script --hide-secret
    """
    from sahl_setup.commands.azure import run_azure

    run_azure(
        subscription=subscription,
        app_name=app_name,
        roles=roles,
        secret_years=secret_years,
        self_test=not skip_self_test,
        reuse_existing=reuse_existing,
        output_format=output_format,
        output=output,
        env_script=env_script,
        test_script=test_script,
        hide_secret=hide_secret,
        no_wait=no_wait,
        interactive=_interactive(interactive),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Entry Point
# ═══════════════════════════════════════════════════════════════════════════════
if __name__ == '__main__':
    main()

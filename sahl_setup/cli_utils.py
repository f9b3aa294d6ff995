# ═══════════════════════════════════════════════════════════════════════════════
#                         SAHL SETUP • SHARED CLI UTILITIES
# ═══════════════════════════════════════════════════════════════════════════════
#
#   Console, exit codes, logging setup and status-line helpers shared by
#   every command.
#
# ═══════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
import os
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from sahl_setup.config import LOG_LEVEL_ENV


# Exit Codes
class ExitCode:
    """
    Process exit codes.

    Callers only ever see success or failure; details go to the terminal.

    Usage:
        sys.exit(ExitCode.ERROR)
    """
    SUCCESS = 0   # Everything provisioned (Azure consent may still be pending)
    ERROR = 1     # Validation, prerequisite or provider failure


# ═══════════════════════════════════════════════════════════════════════════════
# Logging
# ═══════════════════════════════════════════════════════════════════════════════
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(name)s: %(message)s'


# ═══════════════════════════════════════════════════════════════════════════════
# Console Configuration
# ═══════════════════════════════════════════════════════════════════════════════
console = Console()


def set_console_theme(*, no_color: bool = False) -> None:
    """
    Configure global console instance with theme settings.

    Args:
        no_color: If True, disable all colored/styled output (useful for CI/CD)
    """
    global console
    console = Console(no_color=no_color, highlight=not no_color)


def get_console() -> Console:
    """Current console; modules call this instead of binding the object at import."""
    return console


def setup_logging(*, verbose: bool = False, debug: bool = False) -> None:
    """
    Route library and tool logging through rich.

    WARNING by default, INFO with --verbose, DEBUG with --debug. The
    SAHL_SETUP_LOG_LEVEL environment variable wins over both flags.
    """
    level = logging.WARNING
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    env_level = os.environ.get(LOG_LEVEL_ENV)
    if env_level:
        level = logging.getLevelName(env_level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=debug)],
        force=True,
    )
    # botocore and azure are chatty at INFO
    for noisy in ('botocore', 'boto3', 'urllib3', 'azure'):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


# ═══════════════════════════════════════════════════════════════════════════════
# Status Lines
# ═══════════════════════════════════════════════════════════════════════════════
def info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue]  {message}")


def success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow]  {message}")


def error(message: str, remediation: Optional[str] = None) -> None:
    console.print(f"[red]✗ Error:[/red] {message}")
    if remediation:
        console.print(f"[dim]{remediation}[/dim]")


def mask(secret: str, visible: int = 4) -> str:
    """AKIA************WXYZ style masking."""
    if not secret:
        return ''
    if len(secret) <= visible * 2:
        return '*' * len(secret)
    return secret[:visible] + '*' * 12 + secret[-visible:]


# ASCII Art Banner
SAHL_BANNER = """
[bold cyan]
    ███████╗ █████╗ ██╗  ██╗██╗
    ██╔════╝██╔══██╗██║  ██║██║
    ███████╗███████║███████║██║
    ╚════██║██╔══██║██╔══██║██║
    ███████║██║  ██║██║  ██║███████╗
    ╚══════╝╚═╝  ╚═╝╚═╝  ╚═╝╚══════╝
[/bold cyan]
[dim]        Read-only monitoring access for AWS and Azure[/dim]
"""

SAHL_BANNER_SMALL = "[bold cyan]🛡️  SAHL SETUP[/bold cyan] [dim]• Monitoring access provisioning[/dim]"


def print_banner(*, small: bool = False) -> None:
    """Print the Sahl Setup banner."""
    console.print(SAHL_BANNER_SMALL if small else SAHL_BANNER)


def print_version_info() -> None:
    """Print detailed version and system information."""
    import platform
    import sys
    from sahl_setup import __version__

    console.print(SAHL_BANNER)
    console.print(f"[bold cyan]Version:[/bold cyan]     {__version__}")
    console.print(f"[bold cyan]Python:[/bold cyan]      {sys.version.split()[0]}")
    console.print(f"[bold cyan]Platform:[/bold cyan]    {platform.system()} {platform.release()}")
    console.print()
    console.print("[dim]Run 'sahl-setup doctor' to check prerequisites[/dim]")

"""
Command implementations. cli.py only parses options and maps errors to
exit codes; the work happens here.
"""

from sahl_setup.commands.aws import run_aws
from sahl_setup.commands.azure import run_azure
from sahl_setup.commands.doctor import run_doctor
from sahl_setup.commands.validate import run_validate

__all__ = ['run_aws', 'run_azure', 'run_doctor', 'run_validate']

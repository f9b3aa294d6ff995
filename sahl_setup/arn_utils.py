"""
ARN parsing utilities for trust-policy construction.
"""

from typing import Optional
import re

ASSUMED_ROLE_PATTERN = re.compile(
    r'^arn:(?P<partition>[^:]+):sts::(?P<account>\d{12}):assumed-role/(?P<role>[^/]+)/.+$'
)


def extract_account_id(arn: str) -> Optional[str]:
    """
    Extract account ID from AWS ARN.

    ARN format: arn:partition:service:region:account-id:resource-type/resource-id

    Examples:
        arn:aws:iam::123456789012:role/MyRole -> 123456789012
        arn:aws:sts::123456789012:assumed-role/Admin/alice -> 123456789012
        arn:aws:s3:::my-bucket -> None

    Args:
        arn: AWS ARN string

    Returns:
        Account ID (12-digit string) or None if not found/invalid
    """
    if not arn or not isinstance(arn, str):
        return None

    parts = arn.split(':')
    if len(parts) < 6:
        return None

    account_id = parts[4]
    if account_id and re.match(r'^\d{12}$', account_id):
        return account_id

    return None


def trust_principal_arn(caller_arn: str) -> str:
    """
    Turn an STS caller ARN into something a trust policy can name.

    Assumed-role session ARNs are not valid trust principals, so
    arn:aws:sts::123456789012:assumed-role/Admin/alice becomes
    arn:aws:iam::123456789012:role/Admin. Users and roles pass through.
    Role paths are not recoverable from a session ARN; IAM accepts the
    path-less form.
    """
    match = ASSUMED_ROLE_PATTERN.match(caller_arn or '')
    if match:
        return f"arn:{match.group('partition')}:iam::{match.group('account')}:role/{match.group('role')}"
    return caller_arn


def is_cross_account(source_arn: str, account_id: str) -> bool:
    """
    Check whether a principal ARN lives outside the given account.

    Returns False when the ARN carries no account.
    """
    source_account = extract_account_id(source_arn)
    if not source_account or not account_id:
        return False
    return source_account != account_id


def extract_partition(arn: str, default: str = 'aws') -> str:
    """
    Partition of an ARN: aws, aws-cn or aws-us-gov.

    Falls back to default for anything that is not an ARN.
    """
    parts = (arn or '').split(':')
    if len(parts) >= 6 and parts[0] == 'arn' and parts[1]:
        return parts[1]
    return default

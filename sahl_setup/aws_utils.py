"""
AWS utility functions for Sahl Setup
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConfigParseError, NoCredentialsError, ProfileNotFound

from sahl_setup.errors import PrerequisiteError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3

# Provider error codes meaning "this resource is already there"
ALREADY_EXISTS_CODES = frozenset({
    'EntityAlreadyExists',
    'BucketAlreadyOwnedByYou',
    'ResourceConflictException',
    'MaxNumberOfConfigurationRecordersExceededException',
    'MaxNumberOfDeliveryChannelsExceededException',
})

NOT_FOUND_CODES = frozenset({
    'NoSuchEntity',
    'NoSuchBucket',
    'NoSuchConfigurationRecorderException',
    'NoSuchDeliveryChannelException',
    'InvalidAccessException',
    'ResourceNotFoundException',
    '404',
})

CREDENTIALS_REMEDIATION = (
    "Configure AWS credentials first:\n"
    "  aws configure\n"
    "or set AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY (or AWS_PROFILE)"
)


@dataclass
class AWSProfile:
    name: str
    region: Optional[str] = None
    active: bool = False


def active_profile_name(profile: Optional[str] = None) -> str:
    """Profile a run will use: --profile, then AWS_PROFILE, then 'default'."""
    return profile or os.environ.get('AWS_PROFILE') or os.environ.get('AWS_DEFAULT_PROFILE') or 'default'


def list_profiles(profile: Optional[str] = None) -> List[AWSProfile]:
    """
    Profiles from the shared config and credentials files, marking the one
    a run with this --profile value would use.

    botocore resolves the file locations, so AWS_CONFIG_FILE and
    AWS_SHARED_CREDENTIALS_FILE are honoured.
    """
    active = active_profile_name(profile)
    try:
        configured = botocore.session.Session().full_config.get('profiles', {})
    except ConfigParseError as e:
        logger.warning("Could not parse the AWS config files: %s", e)
        return []
    return [
        AWSProfile(name=name, region=values.get('region'), active=name == active)
        for name, values in sorted(configured.items())
    ]


def create_session(profile: Optional[str] = None, region: Optional[str] = None) -> boto3.Session:
    """
    Build a boto3 session for the run.

    Raises:
        PrerequisiteError: The named profile does not exist
    """
    logger.info("Using AWS profile %s", active_profile_name(profile))
    try:
        return boto3.Session(profile_name=profile, region_name=region)
    except ProfileNotFound as e:
        raise PrerequisiteError(
            f"AWS profile '{profile}' not found",
            remediation="Run 'sahl-setup doctor' to list configured profiles",
        ) from e


def client_config() -> Config:
    """Shared botocore config: standard retry mode for throttling."""
    return Config(retries={'max_attempts': MAX_RETRIES, 'mode': 'standard'})


def get_caller_identity(session: boto3.Session) -> Dict[str, Any]:
    """
    Who is running this? Also doubles as the credentials check.

    Raises:
        PrerequisiteError: No usable credentials
    """
    try:
        identity = session.client('sts', config=client_config()).get_caller_identity()
    except NoCredentialsError as e:
        raise PrerequisiteError("No AWS credentials found", CREDENTIALS_REMEDIATION) from e
    except ClientError as e:
        raise PrerequisiteError(f"AWS authentication failed: {e}", CREDENTIALS_REMEDIATION) from e
    except BotoCoreError as e:
        raise PrerequisiteError(f"Could not reach AWS STS: {e}", CREDENTIALS_REMEDIATION) from e
    logger.debug("Caller identity: %s", identity.get('Arn'))
    return identity


def error_code(error: BaseException) -> str:
    """Provider error code of a ClientError, or '' for anything else."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', '')
    return ''


def is_already_exists(error: BaseException) -> bool:
    code = error_code(error)
    if code in ALREADY_EXISTS_CODES:
        return True
    # IAM reports a taken service-linked role as InvalidInput
    return code == 'InvalidInput' and 'has been taken' in str(error)


def is_not_found(error: BaseException) -> bool:
    return error_code(error) in NOT_FOUND_CODES

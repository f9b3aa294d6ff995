"""
AWS Config and Security Hub enablement.

Security Hub's FSBP standard needs AWS Config recording in the region, so
the recorder (plus its service-linked role, delivery bucket and channel)
is ensured first.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import boto3
from botocore.exceptions import ClientError

from sahl_setup.aws_utils import client_config, error_code, is_already_exists, is_not_found
from sahl_setup.config import AWSSettings
from sahl_setup.ensure import EnsureResult, ensure
from sahl_setup.errors import ProvisioningError
from sahl_setup.policies import (
    CONFIG_SERVICE_PRINCIPAL,
    config_bucket_name,
    config_bucket_policy,
    config_role_arn,
    security_hub_standard_arn,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

RECORDER_NAME = 'default'
DELIVERY_CHANNEL_NAME = 'default'
CONFIG_ROLE_NAME = 'AWSServiceRoleForConfig'
INACTIVE_STANDARD_STATES = ('DELETING', 'FAILED')


def lookup(step: str, fn: Callable[[], T]) -> Optional[T]:
    """Run an existence query; not-found becomes None, other errors are fatal."""
    try:
        return fn()
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProvisioningError(step, str(e), cause=e) from e


class ConfigRecorderProvisioner:
    """Ensures AWS Config is recording in the target region."""

    def __init__(self, session: boto3.Session, settings: AWSSettings):
        self.settings = settings
        boto_config = client_config()
        self.iam = session.client('iam', config=boto_config)
        self.config = session.client('config', region_name=settings.region, config=boto_config)
        self.s3 = session.client('s3', region_name=settings.region, config=boto_config)

    @property
    def bucket_name(self) -> str:
        return config_bucket_name(self.settings.account_id, self.settings.region)

    def ensure_all(self) -> List[EnsureResult]:
        """Ensure every piece Config needs, in dependency order."""
        results = [self.ensure_service_linked_role()]
        recorder = self.ensure_recorder()
        results.append(recorder)
        results.append(self.ensure_delivery_channel())
        results.append(self.ensure_recording(recorder.value['name']))
        return results

    def ensure_service_linked_role(self) -> EnsureResult:
        def exists():
            role = lookup('Config service-linked role', lambda: self.iam.get_role(RoleName=CONFIG_ROLE_NAME))
            return role['Role']['Arn'] if role else None

        def create():
            response = self.iam.create_service_linked_role(AWSServiceName=CONFIG_SERVICE_PRINCIPAL)
            return response['Role']['Arn']

        return ensure('Config service-linked role', exists, create, is_conflict=is_already_exists)

    def ensure_recorder(self) -> EnsureResult:
        """One recorder per region is allowed; any existing recorder is reused."""
        def exists():
            response = lookup(
                'Config recorder', lambda: self.config.describe_configuration_recorders()
            )
            recorders = (response or {}).get('ConfigurationRecorders', [])
            return recorders[0] if recorders else None

        def create():
            recorder = {
                'name': RECORDER_NAME,
                'roleARN': config_role_arn(self.settings.account_id, self.settings.partition),
                'recordingGroup': {
                    'allSupported': True,
                    'includeGlobalResourceTypes': True,
                },
            }
            self.config.put_configuration_recorder(ConfigurationRecorder=recorder)
            return recorder

        return ensure('Config recorder', exists, create, is_conflict=is_already_exists)

    def ensure_delivery_channel(self) -> EnsureResult:
        def exists():
            response = lookup('Config delivery channel', lambda: self.config.describe_delivery_channels())
            channels = (response or {}).get('DeliveryChannels', [])
            return channels[0] if channels else None

        def create():
            bucket = self.ensure_bucket().value
            channel = {'name': DELIVERY_CHANNEL_NAME, 's3BucketName': bucket}
            self.config.put_delivery_channel(DeliveryChannel=channel)
            return channel

        return ensure('Config delivery channel', exists, create, is_conflict=is_already_exists)

    def ensure_bucket(self) -> EnsureResult:
        bucket = self.bucket_name

        def exists():
            try:
                self.s3.head_bucket(Bucket=bucket)
            except ClientError as e:
                if is_not_found(e) or error_code(e) == 'NotFound':
                    return None
                # 403 means the name belongs to another account
                raise ProvisioningError(f"S3 bucket {bucket}", str(e), cause=e) from e
            return bucket

        def create():
            params: Dict[str, Any] = {'Bucket': bucket}
            # us-east-1 rejects an explicit LocationConstraint
            if self.settings.region != 'us-east-1':
                params['CreateBucketConfiguration'] = {'LocationConstraint': self.settings.region}
            self.s3.create_bucket(**params)
            self.s3.put_bucket_policy(
                Bucket=bucket,
                Policy=json.dumps(config_bucket_policy(bucket, self.settings.account_id, self.settings.partition)),
            )
            return bucket

        return ensure(f"S3 bucket {bucket}", exists, create, is_conflict=is_already_exists)

    def ensure_recording(self, recorder_name: str) -> EnsureResult:
        def exists():
            response = lookup(
                'Config recorder status',
                lambda: self.config.describe_configuration_recorder_status(
                    ConfigurationRecorderNames=[recorder_name]
                ),
            )
            for status in (response or {}).get('ConfigurationRecordersStatus', []):
                if status.get('recording'):
                    return status
            return None

        def create():
            self.config.start_configuration_recorder(ConfigurationRecorderName=recorder_name)
            return {'name': recorder_name, 'recording': True}

        return ensure(f"Config recording ({recorder_name})", exists, create)


class SecurityHubProvisioner:
    """Enables Security Hub and the AWS Foundational Security Best Practices standard."""

    def __init__(self, session: boto3.Session, settings: AWSSettings):
        self.settings = settings
        self.securityhub = session.client('securityhub', region_name=settings.region, config=client_config())

    def ensure_all(self) -> List[EnsureResult]:
        return [self.ensure_hub(), self.ensure_standard()]

    def ensure_hub(self) -> EnsureResult:
        def exists():
            hub = lookup('Security Hub', lambda: self.securityhub.describe_hub())
            return hub['HubArn'] if hub else None

        def create():
            self.securityhub.enable_security_hub(EnableDefaultStandards=False)
            return self.securityhub.describe_hub()['HubArn']

        return ensure('Security Hub', exists, create, is_conflict=is_already_exists)

    def ensure_standard(self) -> EnsureResult:
        standard_arn = security_hub_standard_arn(self.settings.region, self.settings.partition)

        def find_subscription():
            paginator = self.securityhub.get_paginator('get_enabled_standards')
            for page in paginator.paginate():
                for subscription in page.get('StandardsSubscriptions', []):
                    if (subscription.get('StandardsArn') == standard_arn
                            and subscription.get('StandardsStatus') not in INACTIVE_STANDARD_STATES):
                        return subscription['StandardsSubscriptionArn']
            return None

        def exists():
            return lookup('Security Hub standard', find_subscription)

        def create():
            response = self.securityhub.batch_enable_standards(
                StandardsSubscriptionRequests=[{'StandardsArn': standard_arn}]
            )
            subscriptions = response.get('StandardsSubscriptions', [])
            return subscriptions[0]['StandardsSubscriptionArn'] if subscriptions else standard_arn

        return ensure('Security Hub standard (FSBP)', exists, create, is_conflict=is_already_exists)

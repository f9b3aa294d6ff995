"""
Shared fixtures. No test talks to AWS or Azure: boto3 clients are wrapped
in botocore Stubbers and Graph/ARM calls go to mocks.
"""

import boto3
import pytest

from sahl_setup.config import AWSSettings, AzureSettings, CredentialType, RetryPolicy

ACCOUNT_ID = '123456789012'
REGION = 'us-east-1'
TIMESTAMP = '20250101120000'
CALLER_ARN = f"arn:aws:iam::{ACCOUNT_ID}:user/alice"

SUBSCRIPTION_ID = '11111111-2222-3333-4444-555555555555'
TENANT_ID = 'aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee'


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    """Keep the developer's shell and home directory out of the tests."""
    for name in ('AWS_REGION', 'AWS_DEFAULT_REGION', 'AWS_ACCOUNT_ID', 'AWS_PROFILE',
                 'AZURE_SUBSCRIPTION_ID', 'SAHL_SETUP_LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_CONFIG_FILE', str(tmp_path / 'aws-config'))
    monkeypatch.setenv('AWS_SHARED_CREDENTIALS_FILE', str(tmp_path / 'aws-credentials'))
    monkeypatch.setenv('HOME', str(tmp_path))


@pytest.fixture
def fast_retry():
    return RetryPolicy(attempts=3, delay_seconds=0.0)


@pytest.fixture
def role_settings(fast_retry):
    return AWSSettings(
        account_id=ACCOUNT_ID,
        region=REGION,
        credential_type=CredentialType.ROLE,
        timestamp=TIMESTAMP,
        propagation_seconds=0,
        retry=fast_retry,
    )


@pytest.fixture
def user_settings(fast_retry):
    return AWSSettings(
        account_id=ACCOUNT_ID,
        region=REGION,
        credential_type=CredentialType.USER,
        timestamp=TIMESTAMP,
        propagation_seconds=0,
        retry=fast_retry,
    )


@pytest.fixture
def azure_settings(fast_retry):
    return AzureSettings(
        subscription_id=SUBSCRIPTION_ID,
        tenant_id=TENANT_ID,
        propagation_seconds=0,
        retry=fast_retry,
    )


class FakeSession:
    """Stands in for boto3.Session, handing out pre-built (stubbed) clients."""

    def __init__(self, **clients):
        self.clients = clients
        self.region_name = REGION

    def client(self, service_name, **kwargs):
        return self.clients[service_name]


def make_client(service_name):
    return boto3.client(
        service_name,
        region_name=REGION,
        aws_access_key_id='testing',
        aws_secret_access_key='testing',
    )

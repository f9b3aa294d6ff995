"""
Run configuration for Sahl Setup.

Each provisioning step receives one of these settings objects explicitly;
nothing about a run lives in environment variables or module globals.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional


# ═══════════════════════════════════════════════════════════════════════════════
# Variants
# ═══════════════════════════════════════════════════════════════════════════════
class Provider(Enum):
    AWS = "aws"
    AZURE = "azure"


class CredentialType(Enum):
    """What kind of principal the run hands to Sahl."""
    ROLE = "role"                          # AWS IAM role assumable by the caller
    USER = "user"                          # AWS IAM user with an access key pair
    SERVICE_PRINCIPAL = "service_principal"  # Azure app + service principal + secret


class Strictness(Enum):
    """How picky region validation is. Account ids are always exactly 12 digits."""
    LENIENT = "lenient"      # non-empty
    STANDARD = "standard"    # non-empty, at least 8 characters
    STRICT = "strict"        # must look like a real region code


class OutputFormat(Enum):
    JSON = "json"
    TEXT = "text"


@dataclass(frozen=True)
class WorkflowVariant:
    """Tagged variant selecting which flow runs and how it validates input."""
    provider: Provider
    credential_type: CredentialType
    strictness: Strictness = Strictness.STANDARD

    def __post_init__(self):
        allowed = {
            Provider.AWS: (CredentialType.ROLE, CredentialType.USER),
            Provider.AZURE: (CredentialType.SERVICE_PRINCIPAL,),
        }
        if self.credential_type not in allowed[self.provider]:
            raise ValueError(
                f"{self.credential_type.value} credentials are not supported for {self.provider.value}"
            )


# ═══════════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════════
DEFAULT_REGION = 'us-east-1'
TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'

ROLE_NAME_PREFIX = 'SecurityHubReadOnlyRole'
ROLE_POLICY_PREFIX = 'SecurityHubReadOnlyPolicy'
USER_NAME_PREFIX = 'SahlSecurityUser'
USER_POLICY_PREFIX = 'SahlSecurityReadOnlyPolicy'

DEFAULT_APP_NAME = 'sahl-security-monitor'
DEFAULT_AZURE_ROLES = (
    'Reader',
    'Security Reader',
    'Storage Blob Data Reader',
    'Key Vault Reader',
    'Monitoring Reader',
)

AWS_PROPAGATION_SECONDS = 10.0
AZURE_PROPAGATION_SECONDS = 15.0

LOG_LEVEL_ENV = 'SAHL_SETUP_LOG_LEVEL'


def utc_timestamp() -> str:
    """Resource-name suffix, e.g. 20250101120000."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_isoformat(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with a Z suffix, matching what Sahl imports."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%SZ')


def default_output_path(credential_type: CredentialType, output_format: OutputFormat) -> Path:
    """Fixed home-directory location for the emitted credential bundle."""
    stem = {
        CredentialType.ROLE: 'aws-role-details',
        CredentialType.USER: 'aws-service-account-credentials',
        CredentialType.SERVICE_PRINCIPAL: 'azure-service-account-credentials',
    }[credential_type]
    suffix = '.json' if output_format is OutputFormat.JSON else '.txt'
    return Path.home() / f"{stem}{suffix}"


# ═══════════════════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass
class RetryPolicy:
    """Bounded retry with a fixed sleep between attempts."""
    attempts: int = 5
    delay_seconds: float = 3.0

    def without_sleep(self) -> 'RetryPolicy':
        return RetryPolicy(attempts=self.attempts, delay_seconds=0.0)


@dataclass
class AWSSettings:
    account_id: str
    region: str
    credential_type: CredentialType = CredentialType.ROLE
    profile: Optional[str] = None
    partition: str = 'aws'
    timestamp: str = field(default_factory=utc_timestamp)
    enable_config: bool = True
    enable_security_hub: bool = True
    propagation_seconds: float = AWS_PROPAGATION_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def principal_name(self) -> str:
        prefix = ROLE_NAME_PREFIX if self.credential_type is CredentialType.ROLE else USER_NAME_PREFIX
        return f"{prefix}-{self.timestamp}"

    @property
    def policy_name(self) -> str:
        prefix = ROLE_POLICY_PREFIX if self.credential_type is CredentialType.ROLE else USER_POLICY_PREFIX
        return f"{prefix}-{self.timestamp}"

    @property
    def policy_arn(self) -> str:
        return f"arn:{self.partition}:iam::{self.account_id}:policy/{self.policy_name}"


@dataclass
class AzureSettings:
    subscription_id: str
    tenant_id: str
    app_name: str = DEFAULT_APP_NAME
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_AZURE_ROLES))
    secret_years: int = 2
    reuse_existing: bool = True
    self_test: bool = True
    propagation_seconds: float = AZURE_PROPAGATION_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"


@dataclass
class OutputSettings:
    output_format: OutputFormat = OutputFormat.JSON
    path: Optional[Path] = None
    show_secret: bool = True
    env_script: bool = False
    test_script: bool = False

    def resolve_path(self, credential_type: CredentialType) -> Path:
        if self.path is not None:
            return Path(os.path.expanduser(str(self.path)))
        return default_output_path(credential_type, self.output_format)

"""
AWS policy documents.

All documents are rendered from fixed templates; the only variable parts
are account ids, regions, bucket names and the trusted principal ARN.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

PolicyDocument = Dict[str, Any]

POLICY_VERSION = '2012-10-17'
DEFAULT_PARTITION = 'aws'

# Read-only allow-list granted to Sahl. Order matters for the emitted
# credentials file; keep it stable.
READ_ONLY_ACTIONS: List[str] = [
    'iam:ListUsers',
    'iam:ListAccessKeys',
    'iam:ListMFADevices',
    'iam:GetAccountSummary',
    's3:ListAllMyBuckets',
    's3:GetBucketPolicyStatus',
    's3:GetBucketEncryption',
    'cloudtrail:DescribeTrails',
    'cloudtrail:GetEventSelectors',
    'ec2:DescribeSecurityGroups',
    'config:GetComplianceSummaryByConfigRule',
    'securityhub:GetFindings',
]

POLICY_DESCRIPTION = 'Read-only permissions for Sahl security monitoring application'

CONFIG_SERVICE_PRINCIPAL = 'config.amazonaws.com'
CONFIG_SERVICE_LINKED_ROLE = 'aws-service-role/config.amazonaws.com/AWSServiceRoleForConfig'


def permission_policy() -> PolicyDocument:
    """The read-only permission policy attached to the Sahl principal."""
    return {
        'Version': POLICY_VERSION,
        'Statement': [
            {
                'Effect': 'Allow',
                'Action': list(READ_ONLY_ACTIONS),
                'Resource': '*',
            }
        ],
    }


def trust_policy(principal_arn: str) -> PolicyDocument:
    """Assume-role trust policy naming exactly one trusted principal."""
    if not principal_arn:
        raise ValueError("trusted principal ARN is required")
    return {
        'Version': POLICY_VERSION,
        'Statement': [
            {
                'Effect': 'Allow',
                'Principal': {'AWS': principal_arn},
                'Action': 'sts:AssumeRole',
            }
        ],
    }


def config_bucket_name(account_id: str, region: str) -> str:
    return f"config-bucket-{account_id}-{region}"


def config_role_arn(account_id: str, partition: str = DEFAULT_PARTITION) -> str:
    return f"arn:{partition}:iam::{account_id}:role/{CONFIG_SERVICE_LINKED_ROLE}"


def config_bucket_policy(bucket: str, account_id: str, partition: str = DEFAULT_PARTITION) -> PolicyDocument:
    """Bucket policy letting AWS Config deliver snapshots and history."""
    source = {'StringEquals': {'AWS:SourceAccount': account_id}}
    return {
        'Version': POLICY_VERSION,
        'Statement': [
            {
                'Sid': 'AWSConfigBucketPermissionsCheck',
                'Effect': 'Allow',
                'Principal': {'Service': CONFIG_SERVICE_PRINCIPAL},
                'Action': 's3:GetBucketAcl',
                'Resource': f"arn:{partition}:s3:::{bucket}",
                'Condition': source,
            },
            {
                'Sid': 'AWSConfigBucketExistenceCheck',
                'Effect': 'Allow',
                'Principal': {'Service': CONFIG_SERVICE_PRINCIPAL},
                'Action': 's3:ListBucket',
                'Resource': f"arn:{partition}:s3:::{bucket}",
                'Condition': source,
            },
            {
                'Sid': 'AWSConfigBucketDelivery',
                'Effect': 'Allow',
                'Principal': {'Service': CONFIG_SERVICE_PRINCIPAL},
                'Action': 's3:PutObject',
                'Resource': f"arn:{partition}:s3:::{bucket}/AWSLogs/{account_id}/Config/*",
                'Condition': {
                    'StringEquals': {
                        's3:x-amz-acl': 'bucket-owner-full-control',
                        'AWS:SourceAccount': account_id,
                    }
                },
            },
        ],
    }


def security_hub_standard_arn(region: str, partition: str = DEFAULT_PARTITION) -> str:
    """AWS Foundational Security Best Practices standard for a region."""
    return f"arn:{partition}:securityhub:{region}::standards/aws-foundational-security-best-practices/v/1.0.0"


def render(document: PolicyDocument) -> str:
    """Serialize a policy the way it is submitted to IAM."""
    return json.dumps(document, indent=2)

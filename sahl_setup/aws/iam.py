"""
IAM provisioning for the Sahl principal.

Creates the read-only policy, the role or user it is attached to, and for
users an access key pair. Existing resources are reused.

Typical usage:
    provisioner = IAMProvisioner(session, settings)
    policy = provisioner.ensure_policy()
    role = provisioner.ensure_role(trusted_arn)
    provisioner.ensure_attached('role', settings.principal_name)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from sahl_setup.aws.security_services import lookup
from sahl_setup.aws_utils import client_config, error_code, is_already_exists
from sahl_setup.config import AWSSettings
from sahl_setup.ensure import EnsureResult, ensure
from sahl_setup.errors import ProvisioningError, TransientProviderError
from sahl_setup.policies import POLICY_DESCRIPTION, READ_ONLY_ACTIONS, permission_policy, render, trust_policy
from sahl_setup.retry import retry

logger = logging.getLogger(__name__)

ROLE_DESCRIPTION = 'Read-only role assumed by the Sahl security monitoring application'
SAHL_TAGS = [
    {'Key': 'Purpose', 'Value': 'SahlSecurityMonitoring'},
    {'Key': 'CreatedBy', 'Value': 'SahlSetup'},
]

# Errors that clear up once IAM finishes propagating a new entity
PROPAGATION_ERROR_CODES = ('NoSuchEntity', 'InvalidClientTokenId', 'SignatureDoesNotMatch', 'AccessDenied')

WAITER_DELAY_SECONDS = 2
WAITER_MAX_ATTEMPTS = 15


@dataclass
class PolicyCheck:
    """Allowed actions read back from IAM, against the expected read-only set."""
    actions: List[str]
    missing: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)

    @property
    def matches(self) -> bool:
        return not self.missing and not self.unexpected


class IAMProvisioner:
    """Creates the Sahl IAM policy and principal."""

    def __init__(self, session: boto3.Session, settings: AWSSettings):
        self.settings = settings
        self.iam = session.client('iam', config=client_config())

    def _wait(self, waiter_name: str, **params) -> None:
        if self.settings.propagation_seconds <= 0:
            return
        try:
            self.iam.get_waiter(waiter_name).wait(
                WaiterConfig={'Delay': WAITER_DELAY_SECONDS, 'MaxAttempts': WAITER_MAX_ATTEMPTS},
                **params,
            )
        except WaiterError as e:
            logger.warning("Gave up waiting on %s: %s", waiter_name, e)

    # ─── Policy ──────────────────────────────────────────────────────────────

    def ensure_policy(self) -> EnsureResult:
        policy_arn = self.settings.policy_arn
        key = f"IAM policy {self.settings.policy_name}"

        def exists():
            response = lookup(key, lambda: self.iam.get_policy(PolicyArn=policy_arn))
            return response['Policy'] if response else None

        def create():
            response = self.iam.create_policy(
                PolicyName=self.settings.policy_name,
                PolicyDocument=render(permission_policy()),
                Description=POLICY_DESCRIPTION,
                Tags=SAHL_TAGS,
            )
            self._wait('policy_exists', PolicyArn=policy_arn)
            return response['Policy']

        return ensure(key, exists, create, is_conflict=is_already_exists)

    def get_policy_document(self, policy_arn: str) -> Dict[str, Any]:
        """Fetch the default version's document for a managed policy."""
        policy = self.iam.get_policy(PolicyArn=policy_arn)
        default_version_id = policy['Policy']['DefaultVersionId']
        version = self.iam.get_policy_version(PolicyArn=policy_arn, VersionId=default_version_id)
        return version['PolicyVersion']['Document']

    def policy_actions(self, policy_arn: str) -> List[str]:
        """Allowed actions in a managed policy, in document order."""
        document = self.get_policy_document(policy_arn)
        statements = document.get('Statement', [])
        if isinstance(statements, dict):
            statements = [statements]

        actions: List[str] = []
        for stmt in statements:
            if stmt.get('Effect') != 'Allow':
                continue
            action = stmt.get('Action', [])
            actions.extend([action] if isinstance(action, str) else action)
        return actions

    def verify_policy(self, policy_arn: Optional[str] = None) -> PolicyCheck:
        """
        Read the managed policy back and compare it with READ_ONLY_ACTIONS.

        Raises:
            ProvisioningError: The policy could not be read
        """
        policy_arn = policy_arn or self.settings.policy_arn
        try:
            actions = self.policy_actions(policy_arn)
        except ClientError as e:
            raise ProvisioningError(f"IAM policy {policy_arn}", error_code(e) or str(e), cause=e) from e

        check = PolicyCheck(
            actions=actions,
            missing=[a for a in READ_ONLY_ACTIONS if a not in actions],
            unexpected=[a for a in actions if a not in READ_ONLY_ACTIONS],
        )
        if not check.matches:
            logger.warning(
                "Policy %s differs from the expected actions: missing %s, unexpected %s",
                policy_arn, check.missing, check.unexpected,
            )
        return check

    # ─── Principals ──────────────────────────────────────────────────────────

    def ensure_role(self, trusted_principal_arn: str) -> EnsureResult:
        role_name = self.settings.principal_name
        key = f"IAM role {role_name}"

        def exists():
            response = lookup(key, lambda: self.iam.get_role(RoleName=role_name))
            return response['Role'] if response else None

        def create():
            response = self.iam.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=render(trust_policy(trusted_principal_arn)),
                Description=ROLE_DESCRIPTION,
                Tags=SAHL_TAGS,
            )
            self._wait('role_exists', RoleName=role_name)
            return response['Role']

        return ensure(key, exists, create, is_conflict=is_already_exists)

    def ensure_user(self) -> EnsureResult:
        user_name = self.settings.principal_name
        key = f"IAM user {user_name}"

        def exists():
            response = lookup(key, lambda: self.iam.get_user(UserName=user_name))
            return response['User'] if response else None

        def create():
            response = self.iam.create_user(UserName=user_name, Path='/', Tags=SAHL_TAGS)
            self._wait('user_exists', UserName=user_name)
            return response['User']

        return ensure(key, exists, create, is_conflict=is_already_exists)

    def ensure_attached(self, principal_kind: str, principal_name: str) -> EnsureResult:
        """Attach the Sahl policy to a role or user, retrying while IAM propagates."""
        policy_arn = self.settings.policy_arn
        key = f"policy attachment {self.settings.policy_name} -> {principal_kind} {principal_name}"

        if principal_kind == 'role':
            list_attached = lambda: self.iam.list_attached_role_policies(RoleName=principal_name)
            attach = lambda: self.iam.attach_role_policy(RoleName=principal_name, PolicyArn=policy_arn)
        elif principal_kind == 'user':
            list_attached = lambda: self.iam.list_attached_user_policies(UserName=principal_name)
            attach = lambda: self.iam.attach_user_policy(UserName=principal_name, PolicyArn=policy_arn)
        else:
            raise ValueError(f"Unknown principal kind: {principal_kind}")

        def exists():
            response = lookup(key, list_attached)
            for policy in (response or {}).get('AttachedPolicies', []):
                if policy['PolicyArn'] == policy_arn:
                    return policy_arn
            return None

        def attempt():
            try:
                attach()
            except ClientError as e:
                if error_code(e) == 'NoSuchEntity':
                    raise TransientProviderError(str(e)) from e
                raise
            return policy_arn

        def create():
            return retry(attempt, self.settings.retry, step=key)

        return ensure(key, exists, create)

    # ─── Access keys ─────────────────────────────────────────────────────────

    def create_access_key(self, user_name: str) -> Dict[str, str]:
        """
        Create a fresh access key pair. Not idempotent: every run mints a key.

        Raises:
            ProvisioningError: e.g. the user already has two keys
        """
        try:
            response = self.iam.create_access_key(UserName=user_name)
        except ClientError as e:
            raise ProvisioningError(f"access key for {user_name}", str(e), cause=e) from e
        key = response['AccessKey']
        logger.info("Created access key %s for %s", key['AccessKeyId'], user_name)
        return {'AccessKeyId': key['AccessKeyId'], 'SecretAccessKey': key['SecretAccessKey']}

    def verify_access_key(self, access_key_id: str, secret_access_key: str) -> Optional[Dict[str, Any]]:
        """
        Call STS with the new key pair.

        New keys take a few seconds to become usable; failures after the
        retry budget are reported as None rather than aborting the run.
        """
        session = boto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=self.settings.region,
        )
        sts = session.client('sts', config=client_config())

        def attempt():
            try:
                return sts.get_caller_identity()
            except ClientError as e:
                if error_code(e) in PROPAGATION_ERROR_CODES:
                    raise TransientProviderError(str(e)) from e
                raise

        try:
            return retry(attempt, self.settings.retry, step='access key verification')
        except ProvisioningError as e:
            logger.warning("Could not verify access keys: %s", e)
            return None

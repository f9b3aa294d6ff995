"""
Subscription-scoped Azure RBAC role assignments for the Sahl service principal.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from sahl_setup.config import AzureSettings
from sahl_setup.ensure import EnsureResult, ensure
from sahl_setup.errors import ProvisioningError, TransientProviderError
from sahl_setup.retry import retry

logger = logging.getLogger(__name__)

# New service principals take a while to replicate to ARM
PROPAGATION_ERROR_CODES = ('PrincipalNotFound',)
CONFLICT_ERROR_CODES = ('RoleAssignmentExists',)
AUTHORIZATION_ERROR_CODES = ('AuthorizationFailed', 'LinkedAuthorizationFailed')


def _error_code(error: HttpResponseError) -> str:
    code = getattr(getattr(error, 'error', None), 'code', None)
    if code:
        return code
    text = str(error)
    for known in PROPAGATION_ERROR_CODES + CONFLICT_ERROR_CODES + AUTHORIZATION_ERROR_CODES:
        if known in text:
            return known
    return ''


def is_assignment_conflict(error: BaseException) -> bool:
    if isinstance(error, ResourceExistsError):
        return True
    return isinstance(error, HttpResponseError) and _error_code(error) in CONFLICT_ERROR_CODES


def is_authorization_failure(error: BaseException) -> bool:
    """True when ARM refused the caller, e.g. it lacks Owner or User Access Administrator."""
    cause = getattr(error, 'cause', None) or error
    if not isinstance(cause, HttpResponseError):
        return False
    return _error_code(cause) in AUTHORIZATION_ERROR_CODES or cause.status_code == 403


@dataclass
class RoleAssignmentReport:
    """Assigned roles, plus the ones the caller was not allowed to assign."""
    results: List[EnsureResult] = field(default_factory=list)
    denied: Dict[str, str] = field(default_factory=dict)  # role name -> reason

    @property
    def assigned(self) -> List[str]:
        return [r.value for r in self.results]

    @property
    def complete(self) -> bool:
        return not self.denied


class RoleAssigner:
    """Assigns RBAC roles at the subscription scope."""

    def __init__(self, credential: Any, settings: AzureSettings,
                 client: Optional[AuthorizationManagementClient] = None):
        self.settings = settings
        self.client = client or AuthorizationManagementClient(credential, settings.subscription_id)
        self._definition_ids: Dict[str, str] = {}

    def role_definition_id(self, role_name: str) -> str:
        """Resolve a built-in role name like 'Security Reader' to its definition id."""
        if role_name not in self._definition_ids:
            try:
                definitions = list(self.client.role_definitions.list(
                    self.settings.scope, filter=f"roleName eq '{role_name}'"
                ))
            except HttpResponseError as e:
                raise ProvisioningError(f"role {role_name}", str(e), cause=e) from e
            if not definitions:
                raise ProvisioningError(f"role {role_name}", "no such role definition")
            self._definition_ids[role_name] = definitions[0].id
        return self._definition_ids[role_name]

    def assigned_definition_ids(self, principal_id: str) -> List[str]:
        try:
            assignments = list(self.client.role_assignments.list_for_scope(
                self.settings.scope, filter=f"principalId eq '{principal_id}'"
            ))
        except HttpResponseError as e:
            raise ProvisioningError(f"role assignments of {principal_id}", str(e), cause=e) from e
        return [a.role_definition_id.lower() for a in assignments if (a.scope or "").lower() == self.settings.scope.lower()]

    def ensure_role(self, principal_id: str, role_name: str) -> EnsureResult:
        definition_id = self.role_definition_id(role_name)
        key = f"role assignment {role_name}"

        def exists():
            if definition_id.lower() in self.assigned_definition_ids(principal_id):
                return role_name
            return None

        def attempt():
            try:
                self.client.role_assignments.create(
                    self.settings.scope,
                    str(uuid.uuid4()),
                    RoleAssignmentCreateParameters(
                        role_definition_id=definition_id,
                        principal_id=principal_id,
                        principal_type='ServicePrincipal',
                    ),
                )
            except HttpResponseError as e:
                if _error_code(e) in PROPAGATION_ERROR_CODES:
                    raise TransientProviderError(str(e)) from e
                raise
            return role_name

        def create():
            return retry(attempt, self.settings.retry, step=key)

        return ensure(key, exists, create, is_conflict=is_assignment_conflict, on_conflict=lambda: role_name)

    def ensure_roles(self, principal_id: str) -> RoleAssignmentReport:
        """
        Assign every configured role.

        Roles the caller is not authorized to assign are recorded in
        report.denied and the remaining roles are still attempted; any
        other failure propagates.
        """
        report = RoleAssignmentReport()
        for role in self.settings.roles:
            try:
                report.results.append(self.ensure_role(principal_id, role))
            except ProvisioningError as e:
                if not is_authorization_failure(e):
                    raise
                logger.warning("Not authorized to assign %s: %s", role, e)
                report.denied[role] = getattr(e.cause, 'message', None) or str(e)
        return report

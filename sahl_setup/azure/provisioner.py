"""
Azure AD app registration, service principal, Graph permissions, RBAC and
client secret for the Sahl monitoring principal.

Typical usage:
    provisioner = AzureProvisioner(credential, graph, settings)
    app = provisioner.ensure_application().value
    sp = provisioner.ensure_service_principal(app['appId']).value
    provisioner.ensure_graph_permissions(app)
    outcome = provisioner.grant_consent(app, sp)
    roles = provisioner.assign_roles(sp['id'])
    secret = provisioner.create_secret(app)
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential

from sahl_setup.azure.consent import ConsentContext, ConsentOutcome, ConsentResult, grant_admin_consent
from sahl_setup.azure.graph import GraphAPIError, GraphClient, as_transient
from sahl_setup.azure.permissions import (
    GRAPH_APP_ID,
    merge_resource_access,
    missing_permissions,
    permission_ids,
)
from sahl_setup.azure.rbac import RoleAssigner, RoleAssignmentReport
from sahl_setup.config import AzureSettings, utc_timestamp
from sahl_setup.ensure import EnsureResult, ensure
from sahl_setup.errors import ProvisioningError, TransientProviderError
from sahl_setup.retry import retry

logger = logging.getLogger(__name__)

SIGN_IN_AUDIENCE = 'AzureADMyOrg'
SECRET_DISPLAY_PREFIX = 'sahl-secret'
SELF_TEST_ENDPOINTS = ('users', 'groups', 'applications')


def _graph_call(step: str, fn: Callable[[], Any]) -> Any:
    """Run a Graph call, converting propagation errors to TransientProviderError."""
    try:
        return fn()
    except GraphAPIError as e:
        mapped = as_transient(e)
        if isinstance(mapped, TransientProviderError):
            raise mapped from e
        raise ProvisioningError(step, e.message, cause=e) from e


def _lookup(step: str, fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except GraphAPIError as e:
        raise ProvisioningError(step, e.message, cause=e) from e


class AzureProvisioner:
    """Creates (or reuses) every Azure object Sahl needs."""

    def __init__(
        self,
        credential: Any,
        graph: GraphClient,
        settings: AzureSettings,
        *,
        role_assigner: Optional[RoleAssigner] = None,
        confirm_reuse: Optional[Callable[[Dict[str, Any]], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credential = credential
        self.graph = graph
        self.settings = settings
        self.role_assigner = role_assigner or RoleAssigner(credential, settings)
        self.confirm_reuse = confirm_reuse
        self._sleep = sleep
        self._graph_sp_id: Optional[str] = None

    def _retry(self, fn: Callable[[], Any], step: str) -> Any:
        return retry(fn, self.settings.retry, step=step, sleep=self._sleep)

    def wait_for_propagation(self, reason: str) -> None:
        if self.settings.propagation_seconds > 0:
            logger.info("Waiting %.0fs for %s", self.settings.propagation_seconds, reason)
            self._sleep(self.settings.propagation_seconds)

    # ─── Application & service principal ────────────────────────────────────

    def find_application(self) -> Optional[Dict[str, Any]]:
        name = self.settings.app_name.replace("'", "''")
        apps = self.graph.get_all('applications', params={'$filter': f"displayName eq '{name}'"})
        return apps[0] if apps else None

    def ensure_application(self) -> EnsureResult:
        key = f"app registration {self.settings.app_name}"

        def exists():
            app = _lookup(key, self.find_application)
            if app is None:
                return None
            logger.warning("App '%s' already exists with ID %s", self.settings.app_name, app.get('appId'))
            if not self.settings.reuse_existing:
                raise ProvisioningError(
                    key, "an application with this name already exists; pick another --app-name"
                )
            if self.confirm_reuse is not None and not self.confirm_reuse(app):
                raise ProvisioningError(key, "existing application not reused (aborted by user)")
            return app

        def create():
            try:
                return self.graph.post('applications', {
                    'displayName': self.settings.app_name,
                    'signInAudience': SIGN_IN_AUDIENCE,
                })
            except GraphAPIError as e:
                raise ProvisioningError(key, e.message, cause=e) from e

        return ensure(key, exists, create)

    def ensure_service_principal(self, app_id: str) -> EnsureResult:
        key = f"service principal for {app_id}"

        def exists():
            found = _lookup(key, lambda: self.graph.get_all(
                'servicePrincipals', params={'$filter': f"appId eq '{app_id}'"}
            ))
            return found[0] if found else None

        def attempt():
            return _graph_call(key, lambda: self.graph.post('servicePrincipals', {'appId': app_id}))

        def create():
            # A brand new app may not be visible to servicePrincipals yet
            return self._retry(attempt, key)

        return ensure(
            key, exists, create,
            is_conflict=lambda e: isinstance(getattr(e, 'cause', None), GraphAPIError) and e.cause.is_already_exists,
        )

    def graph_service_principal_id(self) -> str:
        """Object id of Microsoft Graph's own service principal in this tenant."""
        if self._graph_sp_id is None:
            found = _lookup("Microsoft Graph service principal", lambda: self.graph.get_all(
                'servicePrincipals', params={'$filter': f"appId eq '{GRAPH_APP_ID}'"}
            ))
            if not found:
                raise ProvisioningError('Microsoft Graph service principal', 'not found in tenant')
            self._graph_sp_id = found[0]['id']
        return self._graph_sp_id

    # ─── Permissions & consent ───────────────────────────────────────────────

    def ensure_graph_permissions(self, app: Dict[str, Any]) -> EnsureResult:
        """Add the read-only Graph application roles to the app's requiredResourceAccess."""
        key = f"Graph permissions on {self.settings.app_name}"
        current = app.get('requiredResourceAccess') or []

        def exists():
            return None if missing_permissions(current) else current

        def create():
            merged = merge_resource_access(current)
            _graph_call(key, lambda: self.graph.patch(f"applications/{app['id']}", {
                'requiredResourceAccess': merged,
            }))
            app['requiredResourceAccess'] = merged
            return merged

        return ensure(key, exists, lambda: self._retry(create, key))

    def grant_consent(
        self,
        app: Dict[str, Any],
        service_principal: Dict[str, Any],
        on_attempt: Optional[Callable[[ConsentResult], None]] = None,
    ) -> ConsentOutcome:
        ctx = ConsentContext(
            graph=self.graph,
            app_id=app['appId'],
            app_name=self.settings.app_name,
            service_principal_id=service_principal['id'],
            graph_service_principal_id=self.graph_service_principal_id(),
            permission_ids=permission_ids(),
            retry=self.settings.retry,
            sleep=self._sleep,
        )
        return grant_admin_consent(ctx, on_attempt=on_attempt)

    # ─── RBAC ────────────────────────────────────────────────────────────────

    def assign_roles(self, service_principal_id: str) -> RoleAssignmentReport:
        return self.role_assigner.ensure_roles(service_principal_id)

    # ─── Secret & self-test ──────────────────────────────────────────────────

    def create_secret(self, app: Dict[str, Any]) -> Dict[str, str]:
        """
        Append a new client secret; existing secrets are left alone.

        Returns:
            {'secretText': ..., 'keyId': ..., 'endDateTime': ...}
        """
        end = datetime.now(timezone.utc) + timedelta(days=365 * self.settings.secret_years)
        body = {
            'passwordCredential': {
                'displayName': f"{SECRET_DISPLAY_PREFIX}-{utc_timestamp()}",
                'endDateTime': end.strftime('%Y-%m-%dT%H:%M:%SZ'),
            }
        }
        step = f"client secret for {self.settings.app_name}"
        created = self._retry(
            lambda: _graph_call(step, lambda: self.graph.post(f"applications/{app['id']}/addPassword", body)),
            step,
        )
        if not created.get('secretText'):
            raise ProvisioningError(step, 'Graph returned no secret text')
        logger.info("Created client secret %s (expires %s)", created.get('keyId'), created.get('endDateTime'))
        return created

    def self_test(self, client_id: str, client_secret: str) -> Dict[str, bool]:
        """
        Authenticate as the new principal and read users, groups and
        applications from Graph.

        Returns:
            {endpoint: readable}. A False entry means the secret works but
            that part of Graph is not readable yet, usually because admin
            consent is still pending.
        """
        credential = ClientSecretCredential(self.settings.tenant_id, client_id, client_secret)
        graph = GraphClient(credential, sleep=self._sleep)
        results: Dict[str, bool] = {}

        for endpoint in SELF_TEST_ENDPOINTS:
            def attempt(endpoint: str = endpoint) -> bool:
                try:
                    graph.get(endpoint, params={'$top': '1', '$select': 'id'})
                except ClientAuthenticationError as e:
                    # New secrets take a little while to be accepted
                    raise TransientProviderError(str(e)) from e
                except GraphAPIError as e:
                    mapped = as_transient(e)
                    if mapped is e:
                        raise
                    raise mapped from e
                return True

            try:
                results[endpoint] = self._retry(attempt, f"self-test read of {endpoint}")
            except (ProvisioningError, GraphAPIError) as e:
                logger.warning("Self-test read of %s failed: %s", endpoint, e)
                results[endpoint] = False
        return results

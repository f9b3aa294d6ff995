"""Azure provisioning: Graph client, consent chain, RBAC and the full flow against an in-memory tenant."""

import json
import os
import stat
import time
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from types import SimpleNamespace
from unittest import mock

import pytest
import requests
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from click.testing import CliRunner

from conftest import SUBSCRIPTION_ID, TENANT_ID
from sahl_setup.azure.account import Subscription
from sahl_setup.azure.consent import (
    ConsentContext,
    ConsentRegistry,
    ConsentResult,
    grant_admin_consent,
    missing_app_roles,
)
from sahl_setup.azure.graph import GraphAPIError, GraphClient, as_transient
from sahl_setup.azure.permissions import GRAPH_APP_ID, GRAPH_PERMISSIONS, missing_permissions
from sahl_setup.azure.provisioner import AzureProvisioner
from sahl_setup.azure.rbac import RoleAssigner, is_authorization_failure
from sahl_setup.cli import main
from sahl_setup.commands.azure import choose_subscription, parse_roles
from sahl_setup.config import (
    CredentialType,
    DEFAULT_AZURE_ROLES,
    OutputSettings,
    Provider,
    RetryPolicy,
    WorkflowVariant,
)
from sahl_setup.ensure import EnsureOutcome
from sahl_setup.errors import InputValidationError, PrerequisiteError, ProvisioningError, TransientProviderError
from sahl_setup.workflow import AzureFlow

GRAPH_SP_ID = 'graph-sp-object-id'
NOT_AUTHORIZED = (
    "(AuthorizationFailed) The client 'alice@contoso.com' does not have authorization to perform "
    "action 'Microsoft.Authorization/roleAssignments/write'"
)
ROLE_DEFINITION_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/providers/Microsoft.Authorization/"
    "roleDefinitions/acdd72a7-3385-48ef-bd42-f606fba81ae7"
)


class FakeGraph:
    """
    Just enough of a tenant for the provisioner: applications, service
    principals, app-role assignments and secrets, kept in memory.
    """

    def __init__(self):
        self.apps = []
        self.service_principals = [{'id': GRAPH_SP_ID, 'appId': GRAPH_APP_ID}]
        self.assignments = []
        self.memberships = [{'displayName': 'Global Administrator'}]
        self.forbidden = set()
        self.sp_not_ready = 0
        self.secrets = 0
        self.posts = []

    def forbid(self, *kinds):
        self.forbidden.update(kinds)

    @staticmethod
    def _filter_value(params):
        return (params or {}).get('$filter', '').split("'")[1]

    def get(self, endpoint, params=None):
        if endpoint == 'me':
            return {'userPrincipalName': 'admin@contoso.example'}
        raise GraphAPIError(404, 'Resource does not exist', endpoint)

    def get_all(self, endpoint, params=None):
        if endpoint == 'applications':
            name = self._filter_value(params)
            return [dict(a) for a in self.apps if a['displayName'] == name]
        if endpoint == 'servicePrincipals':
            app_id = self._filter_value(params)
            return [dict(sp) for sp in self.service_principals if sp['appId'] == app_id]
        if endpoint.endswith('/appRoleAssignments'):
            sp_id = endpoint.split('/')[1]
            return [dict(a) for a in self.assignments if a['principalId'] == sp_id]
        if endpoint == 'me/memberOf':
            return list(self.memberships)
        raise AssertionError(f"unexpected GET {endpoint}")

    def post(self, endpoint, body):
        self.posts.append(endpoint)
        if endpoint == 'applications':
            app = {
                'id': f"app-object-{len(self.apps) + 1}",
                'appId': f"app-client-{len(self.apps) + 1}",
                'displayName': body['displayName'],
                'requiredResourceAccess': [],
            }
            self.apps.append(app)
            return dict(app)
        if endpoint == 'servicePrincipals':
            if self.sp_not_ready:
                self.sp_not_ready -= 1
                raise GraphAPIError(404, 'Resource does not exist or one of its queried reference-property '
                                         'objects are not present.', endpoint)
            sp = {'id': f"sp-object-{len(self.service_principals)}", 'appId': body['appId']}
            self.service_principals.append(sp)
            return dict(sp)
        if endpoint.endswith('/appRoleAssignments') or endpoint.endswith('/appRoleAssignedTo'):
            kind = endpoint.rsplit('/', 1)[1]
            if kind in self.forbidden:
                raise GraphAPIError(403, 'Insufficient privileges to complete the operation.', endpoint,
                                    'Authorization_RequestDenied')
            self.assignments.append(dict(body))
            return dict(body, id=f"assignment-{len(self.assignments)}")
        if endpoint.endswith('/addPassword'):
            self.secrets += 1
            return {
                'keyId': f"key-{self.secrets}",
                'secretText': f"generated-secret-{self.secrets}",
                'endDateTime': body['passwordCredential']['endDateTime'],
            }
        raise AssertionError(f"unexpected POST {endpoint}")

    def patch(self, endpoint, body):
        app_object_id = endpoint.split('/')[1]
        for app in self.apps:
            if app['id'] == app_object_id:
                app.update(body)
                return {}
        raise GraphAPIError(404, 'Resource does not exist', endpoint)

    def batch(self, sub_requests):
        if 'batch' in self.forbidden:
            raise GraphAPIError(403, 'Insufficient privileges to complete the operation.', '$batch')
        responses = []
        for sub in sub_requests:
            self.assignments.append(dict(sub['body']))
            responses.append({'id': sub['id'], 'status': 201, 'body': {}})
        return responses


def graph_response(status=200, body=None, headers=None):
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body).encode() if body is not None else b''
    response.headers.update(headers or {})
    return response


def make_credential():
    credential = mock.Mock()
    credential.get_token.return_value = SimpleNamespace(token='token-1', expires_on=int(time.time()) + 3600)
    return credential


def make_rbac_client(assigned=()):
    client = mock.MagicMock()
    client.role_definitions.list.return_value = [SimpleNamespace(id=ROLE_DEFINITION_ID)]
    client.role_assignments.list_for_scope.return_value = list(assigned)
    return client


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def consent_ctx(graph):
    return ConsentContext(
        graph=graph,
        app_id='app-client-1',
        app_name='sahl-security-monitor',
        service_principal_id='sp-object-1',
        graph_service_principal_id=GRAPH_SP_ID,
        retry=RetryPolicy(attempts=3, delay_seconds=0),
        sleep=mock.Mock(),
    )


class TestGraphClient:

    def _client(self, *responses):
        session = mock.Mock()
        session.request.side_effect = list(responses)
        sleep = mock.Mock()
        return GraphClient(make_credential(), session=session, sleep=sleep), session, sleep

    def test_follows_next_links(self):
        next_link = 'https://graph.microsoft.com/v1.0/users?$skiptoken=abc'
        client, session, _ = self._client(
            graph_response(body={'value': [{'id': 1}, {'id': 2}], '@odata.nextLink': next_link}),
            graph_response(body={'value': [{'id': 3}]}),
        )

        assert client.get_all('users', params={'$top': '2'}) == [{'id': 1}, {'id': 2}, {'id': 3}]

        first, second = session.request.call_args_list
        assert first.args == ('GET', 'https://graph.microsoft.com/v1.0/users')
        assert first.kwargs['params'] == {'$top': '2'}
        assert second.args == ('GET', next_link)
        assert second.kwargs['params'] is None

    def test_backs_off_on_throttling(self):
        client, _, sleep = self._client(
            graph_response(429, {'error': {'message': 'Too many requests'}}, {'Retry-After': '5'}),
            graph_response(body={'id': 'me'}),
        )
        assert client.get('me') == {'id': 'me'}
        sleep.assert_called_once_with(5.0)
        assert client.throttle_count == 1

    def test_error_body_is_parsed(self):
        client, _, _ = self._client(graph_response(403, {'error': {
            'code': 'Authorization_RequestDenied', 'message': 'Insufficient privileges',
        }}))
        with pytest.raises(GraphAPIError) as exc_info:
            client.post('servicePrincipals/x/appRoleAssignments', {})
        assert exc_info.value.status_code == 403
        assert exc_info.value.code == 'Authorization_RequestDenied'
        assert exc_info.value.is_forbidden

    def test_empty_success_body(self):
        client, _, _ = self._client(graph_response(204))
        assert client.patch('applications/x', {'displayName': 'y'}) == {}

    def test_token_is_reused(self):
        client, _, _ = self._client(graph_response(body={}), graph_response(body={}))
        client.get('me')
        client.get('me')
        client.credential.get_token.assert_called_once()

    def test_batch_is_chunked(self):
        client, session, _ = self._client(
            graph_response(body={'responses': [{'id': str(i), 'status': 201} for i in range(20, 0, -1)]}),
            graph_response(body={'responses': [{'id': str(i), 'status': 201} for i in range(21, 26)]}),
        )
        sub_requests = [{'id': str(i), 'method': 'GET', 'url': '/me'} for i in range(1, 26)]

        responses = client.batch(sub_requests)

        assert session.request.call_count == 2
        assert [r['id'] for r in responses] == [str(i) for i in range(1, 26)]
        assert len(session.request.call_args_list[0].kwargs['json']['requests']) == 20

    def test_http_date_retry_after(self):
        later = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=10), usegmt=True)
        client, _, sleep = self._client(
            graph_response(503, {'error': {'message': 'busy'}}, {'Retry-After': later}),
            graph_response(body={'id': 'me'}),
        )
        assert client.get('me') == {'id': 'me'}
        waited = sleep.call_args.args[0]
        assert 2.0 <= waited <= 11.0

    @pytest.mark.parametrize('header', ['soon', 'nan', ''])
    def test_unparseable_retry_after_falls_back_to_backoff(self, header):
        client, _, sleep = self._client(
            graph_response(429, {'error': {'message': 'Too many requests'}}, {'Retry-After': header}),
            graph_response(body={'id': 'me'}),
        )
        assert client.get('me') == {'id': 'me'}
        sleep.assert_called_once_with(2.0)

    def test_dropped_connection_is_retried(self):
        client, session, sleep = self._client(
            requests.ConnectionError('Connection reset by peer'),
            graph_response(body={'id': 'me'}),
        )
        assert client.get('me') == {'id': 'me'}
        assert session.request.call_count == 2
        sleep.assert_called_once_with(2.0)

    def test_connection_retries_exhausted_is_transient(self):
        client, session, _ = self._client(*[requests.ConnectionError('unreachable') for _ in range(5)])

        with pytest.raises(GraphAPIError) as exc_info:
            client.get('users')

        assert session.request.call_count == 5
        assert exc_info.value.is_connection_error
        assert isinstance(as_transient(exc_info.value), TransientProviderError)


def test_as_transient_classification():
    assert isinstance(as_transient(GraphAPIError(403, 'denied', 'u')), GraphAPIError)
    assert not isinstance(as_transient(GraphAPIError(404, 'gone', 'u')), GraphAPIError)
    assert not isinstance(as_transient(GraphAPIError(503, 'busy', 'u')), GraphAPIError)
    assert not isinstance(as_transient(GraphAPIError(0, 'reset', 'u', 'ConnectionError')), GraphAPIError)


class TestConsentChain:

    def test_registry_order(self):
        assert ConsentRegistry.names() == ['app-role-assignment', 'admin-consent', 'batch', 'manual']

    def test_already_granted_skips_strategies(self, graph, consent_ctx):
        for permission_id in GRAPH_PERMISSIONS.values():
            graph.assignments.append({
                'principalId': 'sp-object-1', 'resourceId': GRAPH_SP_ID, 'appRoleId': permission_id,
            })
        strategy = mock.Mock()

        outcome = grant_admin_consent(consent_ctx, strategies=[strategy])

        assert outcome.granted
        assert outcome.method == 'already-granted'
        strategy.attempt.assert_not_called()

    def test_first_strategy_grants_everything(self, graph, consent_ctx):
        outcome = grant_admin_consent(consent_ctx)

        assert outcome.granted
        assert outcome.method == 'app-role-assignment'
        assert len(outcome.attempts) == 1
        assert missing_app_roles(consent_ctx) == []
        assert {a['resourceId'] for a in graph.assignments} == {GRAPH_SP_ID}

    def test_falls_through_to_admin_consent(self, graph, consent_ctx):
        graph.forbid('appRoleAssignments')
        seen = []

        outcome = grant_admin_consent(consent_ctx, on_attempt=seen.append)

        assert outcome.granted
        assert outcome.method == 'admin-consent'
        assert [r.strategy for r in seen] == ['app-role-assignment', 'admin-consent']
        assert not seen[0].granted
        assert 'admin rights' in seen[0].detail

    def test_stops_at_first_success(self, consent_ctx):
        failing = mock.Mock(NAME='first')
        failing.attempt.return_value = ConsentResult('first', False, 'nope')
        succeeding = mock.Mock(NAME='second')
        succeeding.attempt.return_value = ConsentResult('second', True)
        never = mock.Mock(NAME='third')

        outcome = grant_admin_consent(consent_ctx, strategies=[failing, succeeding, never])

        assert outcome.method == 'second'
        never.attempt.assert_not_called()

    def test_non_admin_gets_manual_steps(self, graph, consent_ctx):
        graph.forbid('appRoleAssignments', 'appRoleAssignedTo', 'batch')

        outcome = grant_admin_consent(consent_ctx)

        assert not outcome.granted
        assert [r.strategy for r in outcome.attempts] == ['app-role-assignment', 'admin-consent', 'batch', 'manual']
        assert 'app-client-1' in outcome.manual_url
        assert 'ApiPermissions' in outcome.manual_url
        assert any('sahl-security-monitor' in step for step in outcome.manual_steps)
        assert graph.assignments == []

    def test_batch_strategy_alone(self, graph, consent_ctx):
        strategy = next(s for s in ConsentRegistry.ordered() if s.NAME == 'batch')
        result = strategy.attempt(consent_ctx)
        assert result.granted
        assert len(graph.assignments) == len(GRAPH_PERMISSIONS)


class TestRoleAssigner:

    def test_creates_missing_assignment(self, azure_settings):
        client = make_rbac_client()
        assigner = RoleAssigner(mock.Mock(), azure_settings, client=client)

        result = assigner.ensure_role('sp-object-1', 'Reader')

        assert result.created
        scope, _, params = client.role_assignments.create.call_args.args
        assert scope == f"/subscriptions/{SUBSCRIPTION_ID}"
        assert params.role_definition_id == ROLE_DEFINITION_ID
        assert params.principal_id == 'sp-object-1'
        assert params.principal_type == 'ServicePrincipal'
        client.role_definitions.list.assert_called_once_with(
            f"/subscriptions/{SUBSCRIPTION_ID}", filter="roleName eq 'Reader'"
        )

    def test_existing_assignment_is_reused(self, azure_settings):
        existing = SimpleNamespace(role_definition_id=ROLE_DEFINITION_ID.upper(), scope=azure_settings.scope)
        client = make_rbac_client(assigned=[existing])

        result = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_role('sp-object-1', 'Reader')

        assert result.outcome is EnsureOutcome.ALREADY_PRESENT
        client.role_assignments.create.assert_not_called()

    def test_inherited_assignment_does_not_count(self, azure_settings):
        inherited = SimpleNamespace(role_definition_id=ROLE_DEFINITION_ID, scope='/providers/Microsoft.Management/managementGroups/root')
        client = make_rbac_client(assigned=[inherited])

        result = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_role('sp-object-1', 'Reader')

        assert result.created

    def test_retries_until_principal_replicates(self, azure_settings):
        client = make_rbac_client()
        client.role_assignments.create.side_effect = [
            HttpResponseError(message='PrincipalNotFound: Principal sp-object-1 does not exist in the directory'),
            SimpleNamespace(id='assignment'),
        ]

        result = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_role('sp-object-1', 'Reader')

        assert result.created
        assert client.role_assignments.create.call_count == 2

    def test_conflict_is_already_present(self, azure_settings):
        client = make_rbac_client()
        client.role_assignments.create.side_effect = ResourceExistsError(message='RoleAssignmentExists')

        result = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_role('sp-object-1', 'Reader')

        assert result.outcome is EnsureOutcome.ALREADY_PRESENT

    def test_unknown_role_fails(self, azure_settings):
        client = make_rbac_client()
        client.role_definitions.list.return_value = []
        with pytest.raises(ProvisioningError, match='no such role definition'):
            RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_role('sp-object-1', 'Nope')

    def test_all_default_roles(self, azure_settings):
        client = make_rbac_client()
        report = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_roles('sp-object-1')
        assert report.assigned == list(DEFAULT_AZURE_ROLES)
        assert report.complete

    def test_unauthorized_caller_gets_partial_report(self, azure_settings):
        azure_settings.roles = ['Reader', 'Security Reader']
        client = make_rbac_client()
        client.role_assignments.create.side_effect = [
            SimpleNamespace(id='assignment'),
            HttpResponseError(message=NOT_AUTHORIZED),
        ]

        report = RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_roles('sp-object-1')

        assert report.assigned == ['Reader']
        assert list(report.denied) == ['Security Reader']
        assert 'AuthorizationFailed' in report.denied['Security Reader']
        assert not report.complete
        # not a propagation error, so no retry
        assert client.role_assignments.create.call_count == 2

    def test_other_rbac_errors_still_abort(self, azure_settings):
        client = make_rbac_client()
        client.role_assignments.create.side_effect = HttpResponseError(message='(InvalidPrincipalType) bad type')
        with pytest.raises(ProvisioningError):
            RoleAssigner(mock.Mock(), azure_settings, client=client).ensure_roles('sp-object-1')

    def test_authorization_failure_classification(self):
        denied = HttpResponseError(message=NOT_AUTHORIZED)
        assert is_authorization_failure(denied)
        assert is_authorization_failure(ProvisioningError('role assignment Reader', 'x', cause=denied))
        assert not is_authorization_failure(HttpResponseError(message='PrincipalNotFound'))
        assert not is_authorization_failure(ProvisioningError('role Reader', 'no such role definition'))


class TestAzureProvisioner:

    def _provisioner(self, graph, settings, **kwargs):
        kwargs.setdefault('role_assigner', RoleAssigner(mock.Mock(), settings, client=make_rbac_client()))
        return AzureProvisioner(mock.Mock(), graph, settings, sleep=mock.Mock(), **kwargs)

    def test_application_created_then_reused(self, graph, azure_settings):
        provisioner = self._provisioner(graph, azure_settings)

        first = provisioner.ensure_application()
        second = provisioner.ensure_application()

        assert first.created
        assert second.outcome is EnsureOutcome.ALREADY_PRESENT
        assert second.value['appId'] == first.value['appId']
        assert len(graph.apps) == 1

    def test_existing_application_without_reuse_fails(self, graph, azure_settings):
        graph.apps.append({'id': 'o', 'appId': 'a', 'displayName': azure_settings.app_name})
        azure_settings.reuse_existing = False
        with pytest.raises(ProvisioningError, match='already exists'):
            self._provisioner(graph, azure_settings).ensure_application()

    def test_declined_reuse_aborts(self, graph, azure_settings):
        graph.apps.append({'id': 'o', 'appId': 'a', 'displayName': azure_settings.app_name})
        provisioner = self._provisioner(graph, azure_settings, confirm_reuse=lambda app: False)
        with pytest.raises(ProvisioningError, match='aborted'):
            provisioner.ensure_application()

    def test_service_principal_waits_for_replication(self, graph, azure_settings):
        graph.sp_not_ready = 2
        result = self._provisioner(graph, azure_settings).ensure_service_principal('app-client-1')
        assert result.created
        assert graph.posts.count('servicePrincipals') == 3

    def test_graph_permissions_patched_once(self, graph, azure_settings):
        provisioner = self._provisioner(graph, azure_settings)
        app = provisioner.ensure_application().value

        assert provisioner.ensure_graph_permissions(app).created
        assert missing_permissions(graph.apps[0]['requiredResourceAccess']) == []
        assert not provisioner.ensure_graph_permissions(app).created

    def test_secret_expiry_follows_settings(self, graph, azure_settings):
        azure_settings.secret_years = 1
        provisioner = self._provisioner(graph, azure_settings)
        app = provisioner.ensure_application().value

        secret = provisioner.create_secret(app)

        assert secret['secretText'] == 'generated-secret-1'
        assert graph.posts[-1] == f"applications/{app['id']}/addPassword"
        expires = datetime.strptime(secret['endDateTime'], '%Y-%m-%dT%H:%M:%SZ').replace(tzinfo=timezone.utc)
        assert 364 <= (expires - datetime.now(timezone.utc)).days <= 365

    def test_self_test_passes(self, graph, azure_settings):
        provisioner = self._provisioner(graph, azure_settings)
        with mock.patch('sahl_setup.azure.provisioner.ClientSecretCredential') as credential_cls, \
                mock.patch('sahl_setup.azure.provisioner.GraphClient') as graph_cls:
            graph_cls.return_value.get.return_value = {'value': [{'id': 'u1'}]}
            results = provisioner.self_test('app-client-1', 'generated-secret-1')

        assert results == {'users': True, 'groups': True, 'applications': True}
        credential_cls.assert_called_once_with(TENANT_ID, 'app-client-1', 'generated-secret-1')
        endpoints = [c.args[0] for c in graph_cls.return_value.get.call_args_list]
        assert endpoints == ['users', 'groups', 'applications']

    def test_self_test_reports_missing_consent(self, graph, azure_settings):
        provisioner = self._provisioner(graph, azure_settings)
        with mock.patch('sahl_setup.azure.provisioner.ClientSecretCredential'), \
                mock.patch('sahl_setup.azure.provisioner.GraphClient') as graph_cls:
            graph_cls.return_value.get.side_effect = GraphAPIError(403, 'Insufficient privileges', 'users')
            results = provisioner.self_test('app-client-1', 'generated-secret-1')
        assert not any(results.values())

    def test_self_test_reports_each_endpoint(self, graph, azure_settings):
        def get(endpoint, params=None):
            if endpoint == 'applications':
                raise GraphAPIError(403, 'Insufficient privileges', endpoint)
            return {'value': []}

        provisioner = self._provisioner(graph, azure_settings)
        with mock.patch('sahl_setup.azure.provisioner.ClientSecretCredential'), \
                mock.patch('sahl_setup.azure.provisioner.GraphClient') as graph_cls:
            graph_cls.return_value.get.side_effect = get
            results = provisioner.self_test('app-client-1', 'generated-secret-1')

        assert results == {'users': True, 'groups': True, 'applications': False}


class TestAzureFlow:

    def _flow(self, graph, settings, tmp_path, rbac_client=None, **kwargs):
        settings.self_test = False
        variant = WorkflowVariant(Provider.AZURE, CredentialType.SERVICE_PRINCIPAL)
        output = OutputSettings(path=tmp_path / 'azure-details.json', **kwargs)
        return AzureFlow(
            variant, settings, output, make_credential(),
            graph=graph,
            role_assigner=RoleAssigner(mock.Mock(), settings, client=rbac_client or make_rbac_client()),
            sleep=mock.Mock(),
        )

    def test_non_admin_run_still_emits_credentials(self, graph, azure_settings, tmp_path, capsys):
        graph.memberships = []
        graph.forbid('appRoleAssignments', 'appRoleAssignedTo', 'batch')
        flow = self._flow(graph, azure_settings, tmp_path)

        bundle, path = flow.run()

        assert not flow.consent.granted
        assert not bundle.consent_granted
        data = json.loads(path.read_text())
        assert data['tenantId'] == TENANT_ID
        assert data['clientId'] == 'app-client-1'
        assert data['clientSecret'] == 'generated-secret-1'
        assert data['subscriptionId'] == SUBSCRIPTION_ID
        assert data['adminConsentProvided'] is False
        assert data['azureRoles'] == list(DEFAULT_AZURE_ROLES)
        assert len(data['microsoftGraphPermissions']) == len(GRAPH_PERMISSIONS)

        assert 'ApiPermissions/appId/app-client-1' in flow.consent.manual_url
        assert 'Admin consent is still required' in capsys.readouterr().out

    def test_admin_run_grants_consent(self, graph, azure_settings, tmp_path):
        bundle, path = self._flow(graph, azure_settings, tmp_path).run()

        assert bundle.consent_granted
        assert bundle.consent_method == 'app-role-assignment'
        assert json.loads(path.read_text())['adminConsentProvided'] is True

    def test_rerun_reuses_app_and_adds_secret(self, graph, azure_settings, tmp_path):
        self._flow(graph, azure_settings, tmp_path).run()
        bundle, _ = self._flow(graph, azure_settings, tmp_path).run()

        assert len(graph.apps) == 1
        assert len(graph.service_principals) == 2
        assert bundle.client_secret == 'generated-secret-2'
        assert bundle.consent_method == 'already-granted'

    def test_masked_secret_on_terminal(self, graph, azure_settings, tmp_path, capsys):
        self._flow(graph, azure_settings, tmp_path, show_secret=False, env_script=True).run()
        out = capsys.readouterr().out
        assert 'gene************et-1' in out
        # export lines always carry the real secret
        assert "export AZURE_CLIENT_SECRET='generated-secret-1'" in out
        assert '<CLIENT_SECRET>' in out

    def test_unassignable_roles_do_not_block_the_secret(self, graph, azure_settings, tmp_path, capsys):
        rbac = make_rbac_client()
        rbac.role_assignments.create.side_effect = HttpResponseError(message=NOT_AUTHORIZED)
        flow = self._flow(graph, azure_settings, tmp_path, rbac_client=rbac)

        bundle, path = flow.run()

        assert bundle.client_secret == 'generated-secret-1'
        assert bundle.failed_roles == list(DEFAULT_AZURE_ROLES)
        data = json.loads(path.read_text())
        assert data['clientSecret'] == 'generated-secret-1'
        assert data['azureRoles'] == []
        assert data['failedAzureRoles'] == list(DEFAULT_AZURE_ROLES)
        out = capsys.readouterr().out
        assert 'Not authorized to assign Reader' in out
        assert 'Some subscription roles could not be assigned' in out
        assert 'az role assignment create' in out

    def test_prints_verification_links_and_test_commands(self, graph, azure_settings, tmp_path, capsys):
        self._flow(graph, azure_settings, tmp_path).run()
        out = capsys.readouterr().out
        assert 'Verification links' in out
        assert 'API permissions' in out
        assert 'az login --service-principal -u app-client-1' in out
        assert not (tmp_path / 'test-azure-connection.sh').exists()

    def test_connection_test_script_on_request(self, graph, azure_settings, tmp_path):
        self._flow(graph, azure_settings, tmp_path, test_script=True).run()

        script = tmp_path / 'test-azure-connection.sh'
        assert stat.S_IMODE(os.stat(script).st_mode) == 0o700
        text = script.read_text()
        assert text.startswith('#!/bin/bash\n')
        assert '-p generated-secret-1' in text
        for endpoint in ('users', 'groups', 'applications'):
            assert f"https://graph.microsoft.com/v1.0/{endpoint}" in text

    def test_self_test_needs_every_endpoint(self, graph, azure_settings, tmp_path, capsys):
        flow = self._flow(graph, azure_settings, tmp_path)
        flow.settings.self_test = True
        readable = {'users': True, 'groups': True, 'applications': False}
        with mock.patch.object(AzureProvisioner, 'self_test', return_value=readable):
            flow.run()

        assert flow.self_test_passed is False
        out = capsys.readouterr().out
        assert 'cannot read applications' in out
        assert 'Self-test failed' in out

    def test_skipped_self_test_is_unknown(self, graph, azure_settings, tmp_path):
        flow = self._flow(graph, azure_settings, tmp_path)
        flow.run()
        assert flow.self_test_passed is None


class TestSubscriptionChoice:

    def _subs(self, *states):
        return [
            Subscription(f"0000000{i}-0000-0000-0000-000000000000", TENANT_ID, f"sub {i}", state)
            for i, state in enumerate(states, 1)
        ]

    def test_single_enabled_subscription_is_picked(self):
        subs = self._subs('Disabled', 'Enabled')
        chosen = choose_subscription(None, None, interactive=True, subscriptions=subs)
        assert chosen is subs[1]

    def test_environment_selects(self, monkeypatch):
        subs = self._subs('Enabled', 'Enabled')
        monkeypatch.setenv('AZURE_SUBSCRIPTION_ID', subs[1].subscription_id)
        assert choose_subscription(None, None, interactive=False, subscriptions=subs) is subs[1]

    def test_unknown_subscription_rejected(self):
        with pytest.raises(InputValidationError, match='not visible'):
            choose_subscription(None, SUBSCRIPTION_ID, interactive=False, subscriptions=self._subs('Enabled'))

    def test_no_enabled_subscription(self):
        with pytest.raises(PrerequisiteError):
            choose_subscription(None, None, interactive=False, subscriptions=self._subs('Disabled'))


def test_parse_roles():
    assert parse_roles(None) == list(DEFAULT_AZURE_ROLES)
    assert parse_roles(' Reader , Security Reader,, ') == ['Reader', 'Security Reader']
    assert parse_roles(' , ') == list(DEFAULT_AZURE_ROLES)


def test_cli_without_azure_login_exits_1():
    error = PrerequisiteError('No Azure login detected', 'Sign in first:\n  az login')
    with mock.patch('sahl_setup.commands.azure.get_credential', side_effect=error):
        result = CliRunner().invoke(main, ['azure', '--non-interactive'])
    assert result.exit_code == 1
    assert 'az login' in result.output

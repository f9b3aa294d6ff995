"""
Azure sign-in context: credential, subscription/tenant discovery and
caller privilege checks.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential, CredentialUnavailableError
from azure.mgmt.resource import SubscriptionClient

from sahl_setup.azure.graph import GraphAPIError, GraphClient
from sahl_setup.azure.permissions import ADMIN_ROLE_NAMES
from sahl_setup.errors import PrerequisiteError

logger = logging.getLogger(__name__)

LOGIN_REMEDIATION = "Sign in first:\n  az login"
ARM_SCOPE = 'https://management.azure.com/.default'


@dataclass
class Subscription:
    subscription_id: str
    tenant_id: str
    display_name: str = ''
    state: str = ''

    @property
    def enabled(self) -> bool:
        return (self.state or '').lower() == 'enabled'


def get_credential() -> Any:
    """
    Credential reusing the operator's `az login` session.

    Raises:
        PrerequisiteError: Azure CLI missing or not signed in
    """
    credential = AzureCliCredential()
    try:
        credential.get_token(ARM_SCOPE)
    except (CredentialUnavailableError, ClientAuthenticationError) as e:
        raise PrerequisiteError(f"No Azure login detected: {e}", LOGIN_REMEDIATION) from e
    return credential


def list_subscriptions(credential: Any, client: Optional[SubscriptionClient] = None) -> List[Subscription]:
    client = client or SubscriptionClient(credential)
    return [
        Subscription(
            subscription_id=s.subscription_id,
            tenant_id=s.tenant_id,
            display_name=s.display_name or '',
            state=str(s.state.value if hasattr(s.state, 'value') else s.state or ''),
        )
        for s in client.subscriptions.list()
    ]


def signed_in_user(graph: GraphClient) -> Optional[str]:
    """UPN of the signed-in user, or None when signed in as a service principal."""
    try:
        me = graph.get('me', params={'$select': 'userPrincipalName'})
    except GraphAPIError as e:
        logger.debug("Could not read /me: %s", e)
        return None
    return me.get('userPrincipalName')


def admin_roles(graph: GraphClient) -> List[str]:
    """
    Directory roles of the caller that can grant admin consent.

    Best effort: an empty list means "unknown or none", consent is still attempted.
    """
    try:
        memberships = graph.get_all('me/memberOf')
    except GraphAPIError as e:
        logger.debug("Could not read /me/memberOf: %s", e)
        return []
    return [
        m.get('displayName') for m in memberships
        if m.get('displayName') in ADMIN_ROLE_NAMES
    ]

"""
Azure provisioning: app registration, service principal, Graph consent and RBAC.
"""

from .consent import ConsentRegistry, ConsentOutcome, grant_admin_consent
from .graph import GraphAPIError, GraphClient
from .provisioner import AzureProvisioner
from .rbac import RoleAssigner

__all__ = [
    'AzureProvisioner',
    'ConsentOutcome',
    'ConsentRegistry',
    'GraphAPIError',
    'GraphClient',
    'RoleAssigner',
    'grant_admin_consent',
]

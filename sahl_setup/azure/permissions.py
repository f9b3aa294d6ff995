"""
Microsoft Graph application permissions and Azure RBAC roles granted to Sahl.

Only read permissions. GUIDs are the Graph app-role ids (type "Role"),
which are the same in every tenant.
"""

from typing import Any, Dict, Iterable, List

GRAPH_APP_ID = '00000003-0000-0000-c000-000000000000'

# Permission name -> Graph app-role id
GRAPH_PERMISSIONS: Dict[str, str] = {
    'User.Read.All': 'df021288-bdef-4463-88db-98f22de89214',
    'Group.Read.All': '5b567255-7703-4780-807c-7be8301ae99b',
    'Directory.Read.All': '7ab1d382-f21e-4acd-a863-ba3e13f7da61',
    'Application.Read.All': '9a5d68dd-52b0-4cc2-bd40-abcf44ac3a30',
    'Policy.Read.All': '246dd0d5-5bd0-4def-940b-0421030a5b68',
    'AuditLog.Read.All': 'b0afded3-3588-46d8-8b3d-9842eff778da',
    'UserAuthenticationMethod.Read.All': '38d9df27-64da-44fd-b7c5-a6fbac20248f',
    'SecurityEvents.Read.All': 'bf394140-e372-4bf9-a898-299cfc7564e5',
    'RoleManagement.Read.Directory': '483bed4a-2ad3-4361-a73b-c83ccdbdc53c',
}

PERMISSION_DESCRIPTIONS: Dict[str, str] = {
    'User.Read.All': 'Read all users',
    'Group.Read.All': 'Read all groups',
    'Directory.Read.All': 'Read directory data',
    'Application.Read.All': 'Read all applications',
    'Policy.Read.All': 'Read all policies',
    'AuditLog.Read.All': 'Read audit logs',
    'UserAuthenticationMethod.Read.All': 'Read user auth methods',
    'SecurityEvents.Read.All': 'Read security events',
    'RoleManagement.Read.Directory': 'Read directory role assignments',
}

ADMIN_ROLE_NAMES = ('Global Administrator', 'Privileged Role Administrator')


def permission_names() -> List[str]:
    return list(GRAPH_PERMISSIONS)


def permission_ids(names: Iterable[str] = ()) -> List[str]:
    names = list(names) or permission_names()
    return [GRAPH_PERMISSIONS[name] for name in names]


def merge_resource_access(existing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Add the Sahl Graph roles to an app's current requiredResourceAccess.

    Other APIs and extra Graph entries are kept so re-running never strips
    permissions someone added by hand.
    """
    merged: List[Dict[str, Any]] = []
    graph_entry = None
    for entry in existing or []:
        if entry.get('resourceAppId') == GRAPH_APP_ID:
            graph_entry = {
                'resourceAppId': GRAPH_APP_ID,
                'resourceAccess': list(entry.get('resourceAccess', [])),
            }
            merged.append(graph_entry)
        else:
            merged.append(entry)

    if graph_entry is None:
        graph_entry = {'resourceAppId': GRAPH_APP_ID, 'resourceAccess': []}
        merged.append(graph_entry)

    present = {(a.get('id'), a.get('type')) for a in graph_entry['resourceAccess']}
    for permission_id in GRAPH_PERMISSIONS.values():
        if (permission_id, 'Role') not in present:
            graph_entry['resourceAccess'].append({'id': permission_id, 'type': 'Role'})
    return merged


def missing_permissions(resource_access: List[Dict[str, Any]]) -> List[str]:
    """Names of Sahl Graph roles absent from a requiredResourceAccess block."""
    granted = set()
    for entry in resource_access or []:
        if entry.get('resourceAppId') != GRAPH_APP_ID:
            continue
        granted.update(a.get('id') for a in entry.get('resourceAccess', []) if a.get('type') == 'Role')
    return [name for name, pid in GRAPH_PERMISSIONS.items() if pid not in granted]

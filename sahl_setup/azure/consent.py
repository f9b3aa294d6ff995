"""
Admin consent for Microsoft Graph application permissions.

Application permissions only take effect once an admin grants them, i.e.
once the service principal holds an app-role assignment on the Graph
service principal for each permission. Several mechanisms can create those
assignments and each can fail for different reasons (caller not an admin,
objects not replicated yet, throttling), so they are modelled as ordered,
pluggable strategies tried until one works:

    app-role-assignment  POST /servicePrincipals/{sp}/appRoleAssignments
    admin-consent        POST /servicePrincipals/{graph}/appRoleAssignedTo
    batch                the first mechanism, all at once through /$batch
    manual               never succeeds; hands back the portal link

Each automated strategy retries transient errors and is only counted as
successful once the assignments are verified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Type

from sahl_setup.azure.graph import GraphAPIError, GraphClient, as_transient
from sahl_setup.azure.permissions import GRAPH_PERMISSIONS
from sahl_setup.config import RetryPolicy
from sahl_setup.credentials import portal_url
from sahl_setup.errors import ConsentError, ProvisioningError, TransientProviderError
from sahl_setup.retry import retry

logger = logging.getLogger(__name__)

MANUAL_STEPS = (
    "Go to Azure Portal > Microsoft Entra ID > App registrations",
    "Find your application: '{app_name}'",
    "Go to 'API permissions'",
    "Click 'Grant admin consent for [Your Tenant]'",
)


@dataclass
class ConsentContext:
    """Everything a strategy needs; built once per run."""
    graph: GraphClient
    app_id: str
    app_name: str
    service_principal_id: str
    graph_service_principal_id: str
    permission_ids: List[str] = field(default_factory=lambda: list(GRAPH_PERMISSIONS.values()))
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    sleep: Optional[Callable[[float], None]] = None

    @property
    def manual_url(self) -> str:
        return portal_url(self.app_id, 'ApiPermissions')


@dataclass
class ConsentResult:
    strategy: str
    granted: bool
    detail: str = ''


@dataclass
class ConsentOutcome:
    """Result of the whole chain."""
    granted: bool
    method: str
    attempts: List[ConsentResult] = field(default_factory=list)
    manual_url: str = ''
    manual_steps: List[str] = field(default_factory=list)


def assigned_app_roles(ctx: ConsentContext) -> Set[str]:
    """Graph app-role ids currently granted to the service principal."""
    assignments = ctx.graph.get_all(f"servicePrincipals/{ctx.service_principal_id}/appRoleAssignments")
    return {
        a['appRoleId'] for a in assignments
        if a.get('resourceId') == ctx.graph_service_principal_id
    }


def missing_app_roles(ctx: ConsentContext) -> List[str]:
    granted = assigned_app_roles(ctx)
    return [pid for pid in ctx.permission_ids if pid not in granted]


# ═══════════════════════════════════════════════════════════════════════════════
# Strategy registry
# ═══════════════════════════════════════════════════════════════════════════════
class ConsentStrategy:
    """Base class for consent mechanisms."""

    NAME = 'base'
    ORDER = 100

    def attempt(self, ctx: ConsentContext) -> ConsentResult:
        """Try to grant every missing permission. Must not raise."""
        try:
            self.grant(ctx)
        except ConsentError as e:
            logger.warning("Consent via %s failed: %s", self.NAME, e)
            return ConsentResult(self.NAME, False, str(e))
        except (ProvisioningError, GraphAPIError) as e:
            logger.warning("Consent via %s gave up: %s", self.NAME, e)
            return ConsentResult(self.NAME, False, str(e))

        try:
            missing = missing_app_roles(ctx)
        except GraphAPIError as e:
            return ConsentResult(self.NAME, False, f"could not verify grants: {e}")
        if missing:
            return ConsentResult(self.NAME, False, f"{len(missing)} permission(s) still not granted")
        return ConsentResult(self.NAME, True, 'all permissions granted and verified')

    def grant(self, ctx: ConsentContext) -> None:
        raise NotImplementedError

    def _with_retry(self, ctx: ConsentContext, fn: Callable[[], None], step: str) -> None:
        kwargs = {'sleep': ctx.sleep} if ctx.sleep else {}
        retry(fn, ctx.retry, step=step, **kwargs)


class ConsentRegistry:
    """
    Registry of consent strategies, tried in ORDER.

    Usage:
        @ConsentRegistry.register
        class MyStrategy(ConsentStrategy):
            NAME = 'mine'
            ORDER = 25
    """

    _strategies: Dict[str, Type[ConsentStrategy]] = {}

    @classmethod
    def register(cls, strategy_class: Type[ConsentStrategy]) -> Type[ConsentStrategy]:
        cls._strategies[strategy_class.NAME] = strategy_class
        logger.debug("Registered consent strategy %s", strategy_class.NAME)
        return strategy_class

    @classmethod
    def ordered(cls) -> List[ConsentStrategy]:
        return [s() for s in sorted(cls._strategies.values(), key=lambda s: s.ORDER)]

    @classmethod
    def names(cls) -> List[str]:
        return [s.NAME for s in cls.ordered()]


def _raise_for_grant_error(e: GraphAPIError) -> None:
    """Shared classification for assignment errors."""
    if e.is_already_exists:
        return
    if e.is_forbidden:
        raise ConsentError(f"caller lacks admin rights: {e.message}") from e
    mapped = as_transient(e)
    if isinstance(mapped, TransientProviderError):
        raise mapped from e
    raise ConsentError(e.message) from e


@ConsentRegistry.register
class AppRoleAssignmentStrategy(ConsentStrategy):
    """Direct Graph API grant, one assignment per permission."""

    NAME = 'app-role-assignment'
    ORDER = 10

    def grant(self, ctx: ConsentContext) -> None:
        for permission_id in missing_app_roles(ctx):
            def assign(permission_id=permission_id):
                try:
                    ctx.graph.post(
                        f"servicePrincipals/{ctx.service_principal_id}/appRoleAssignments",
                        {
                            'principalId': ctx.service_principal_id,
                            'resourceId': ctx.graph_service_principal_id,
                            'appRoleId': permission_id,
                        },
                    )
                except GraphAPIError as e:
                    _raise_for_grant_error(e)
            self._with_retry(ctx, assign, f"app role {permission_id}")


@ConsentRegistry.register
class AdminConsentStrategy(ConsentStrategy):
    """Tenant admin consent through the resource side (what the CLI admin-consent does)."""

    NAME = 'admin-consent'
    ORDER = 20

    def grant(self, ctx: ConsentContext) -> None:
        for permission_id in missing_app_roles(ctx):
            def assign(permission_id=permission_id):
                try:
                    ctx.graph.post(
                        f"servicePrincipals/{ctx.graph_service_principal_id}/appRoleAssignedTo",
                        {
                            'principalId': ctx.service_principal_id,
                            'resourceId': ctx.graph_service_principal_id,
                            'appRoleId': permission_id,
                        },
                    )
                except GraphAPIError as e:
                    _raise_for_grant_error(e)
            self._with_retry(ctx, assign, f"admin consent {permission_id}")


@ConsentRegistry.register
class BatchConsentStrategy(ConsentStrategy):
    """All assignments in a single Graph $batch call."""

    NAME = 'batch'
    ORDER = 30

    def grant(self, ctx: ConsentContext) -> None:
        def send():
            missing = missing_app_roles(ctx)
            if not missing:
                return
            sub_requests = [
                {
                    'id': str(i),
                    'method': 'POST',
                    'url': f"/servicePrincipals/{ctx.service_principal_id}/appRoleAssignments",
                    'headers': {'Content-Type': 'application/json'},
                    'body': {
                        'principalId': ctx.service_principal_id,
                        'resourceId': ctx.graph_service_principal_id,
                        'appRoleId': permission_id,
                    },
                }
                for i, permission_id in enumerate(missing, 1)
            ]
            try:
                responses = ctx.graph.batch(sub_requests)
            except GraphAPIError as e:
                _raise_for_grant_error(e)
                return
            for response in responses:
                status = int(response.get('status', 0))
                if 200 <= status < 300:
                    continue
                error = response.get('body', {}).get('error', {})
                _raise_for_grant_error(
                    GraphAPIError(status, error.get('message', 'unknown'), '$batch', error.get('code', ''))
                )

        self._with_retry(ctx, send, 'batch consent')


@ConsentRegistry.register
class ManualConsentStrategy(ConsentStrategy):
    """Last resort: tell the operator where to click."""

    NAME = 'manual'
    ORDER = 99

    def attempt(self, ctx: ConsentContext) -> ConsentResult:
        return ConsentResult(self.NAME, False, f"grant admin consent at {ctx.manual_url}")


# ═══════════════════════════════════════════════════════════════════════════════
# Chain
# ═══════════════════════════════════════════════════════════════════════════════
def grant_admin_consent(
    ctx: ConsentContext,
    strategies: Optional[List[ConsentStrategy]] = None,
    on_attempt: Optional[Callable[[ConsentResult], None]] = None,
) -> ConsentOutcome:
    """
    Try each strategy in order until one grants every permission.

    Never raises for consent failures: an unresolved outcome carries the
    portal link and manual steps instead.
    """
    try:
        if not missing_app_roles(ctx):
            logger.info("All Graph permissions already granted")
            return ConsentOutcome(True, 'already-granted')
    except GraphAPIError as e:
        logger.warning("Could not read existing grants: %s", e)

    attempts: List[ConsentResult] = []
    for strategy in strategies if strategies is not None else ConsentRegistry.ordered():
        logger.info("Trying consent strategy %s", strategy.NAME)
        result = strategy.attempt(ctx)
        attempts.append(result)
        if on_attempt:
            on_attempt(result)
        if result.granted:
            return ConsentOutcome(True, strategy.NAME, attempts)

    return ConsentOutcome(
        False,
        '',
        attempts,
        manual_url=ctx.manual_url,
        manual_steps=[step.format(app_name=ctx.app_name) for step in MANUAL_STEPS],
    )

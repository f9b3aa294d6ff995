"""
Idempotent resource ensurer.

Every cloud resource the workflow touches goes through ensure(): ask the
provider whether it exists, create it only when absent, and treat an
"already exists" error from the create call as success.

Per resource the state moves ABSENT -> CREATING -> PRESENT, or
CREATING -> FAILED on an unrecoverable provider error. PRESENT is terminal;
re-running against a live account reports ALREADY_PRESENT.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from sahl_setup.errors import ProvisioningError, SahlSetupError

logger = logging.getLogger(__name__)


class ResourceState(Enum):
    ABSENT = "absent"
    CREATING = "creating"
    PRESENT = "present"
    FAILED = "failed"


class EnsureOutcome(Enum):
    CREATED = "created"
    ALREADY_PRESENT = "already-present"


@dataclass
class EnsureResult:
    """Outcome of ensuring one resource, plus whatever the provider returned."""
    key: str
    outcome: EnsureOutcome
    value: Any = None
    history: List[ResourceState] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.outcome is EnsureOutcome.CREATED

    @property
    def state(self) -> ResourceState:
        return self.history[-1] if self.history else ResourceState.ABSENT


def ensure(
    key: str,
    exists: Callable[[], Optional[Any]],
    create: Callable[[], Any],
    *,
    is_conflict: Callable[[BaseException], bool] = lambda e: False,
    on_conflict: Optional[Callable[[], Any]] = None,
) -> EnsureResult:
    """
    Make sure a resource exists.

    Args:
        key: Human-readable resource identifier, e.g. "IAM role Foo"
        exists: Returns the existing resource, or None when absent
        create: Creates the resource and returns it
        is_conflict: True for provider errors meaning "already exists"
        on_conflict: Re-reads the resource after a conflict (defaults to exists)

    Returns:
        EnsureResult with CREATED or ALREADY_PRESENT

    Raises:
        ProvisioningError: Any other provider failure
    """
    history = [ResourceState.ABSENT]

    current = exists()
    if current is not None:
        logger.info("%s already present", key)
        return EnsureResult(key, EnsureOutcome.ALREADY_PRESENT, current, [ResourceState.PRESENT])

    history.append(ResourceState.CREATING)
    logger.info("Creating %s", key)
    try:
        value = create()
    except Exception as e:
        if is_conflict(e):
            logger.info("%s was created concurrently or already exists: %s", key, e)
            history.append(ResourceState.PRESENT)
            value = (on_conflict or exists)()
            return EnsureResult(key, EnsureOutcome.ALREADY_PRESENT, value, history)
        history.append(ResourceState.FAILED)
        logger.error("Failed to create %s: %s", key, e)
        if isinstance(e, ProvisioningError):
            raise
        if isinstance(e, SahlSetupError):
            raise ProvisioningError(key, str(e), cause=e) from e
        raise ProvisioningError(key, f"unexpected provider error: {e}", cause=e) from e

    history.append(ResourceState.PRESENT)
    return EnsureResult(key, EnsureOutcome.CREATED, value, history)

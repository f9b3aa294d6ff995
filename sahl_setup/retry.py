"""
Bounded retry with a fixed sleep, for waiting out provider-side propagation.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from sahl_setup.config import RetryPolicy
from sahl_setup.errors import ProvisioningError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    step: str,
    retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it returns, up to policy.attempts times.

    Only exceptions listed in retry_on are retried; anything else propagates
    on the first occurrence. When attempts run out the last transient error
    is wrapped in ProvisioningError.
    """
    attempts = max(1, policy.attempts)
    last_error: BaseException = TransientProviderError("no attempts made")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last_error = e
            if attempt < attempts:
                logger.warning("%s failed, retrying... (%d/%d): %s", step, attempt, attempts, e)
                sleep(policy.delay_seconds)
            else:
                logger.error("%s failed after %d attempts: %s", step, attempts, e)

    raise ProvisioningError(step, f"gave up after {attempts} attempts: {last_error}", cause=last_error)

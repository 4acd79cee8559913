"""Retrying reads from collaborators.

Supplier and inventory lookups are retried with exponential backoff on
``TransientStoreError``; any failure left after that becomes a
``LookupFailure``.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.finalization.errors import LookupFailure, TransientStoreError
from services.shared.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def fetch_with_retry(
    settings: Settings,
    resource: str,
    fetch: Callable[[], Awaitable[T]],
) -> T:
    """Run a collaborator read with retry logic.

    Args:
        settings: Settings with lookup retry configuration
        resource: Name of what is being fetched (for errors and logs)
        fetch: Zero-argument coroutine function performing the read

    Returns:
        Result of the read

    Raises:
        LookupFailure: If the read still fails after all attempts
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(settings.lookup_retry_attempts),
            wait=wait_exponential_jitter(
                initial=settings.lookup_retry_initial_wait,
                max=settings.lookup_retry_max_wait,
            ),
            reraise=True,
        ):
            with attempt:
                result = await fetch()
    except Exception as e:
        logger.error(f"Fetching {resource} failed: {e}")
        raise LookupFailure(resource, str(e)) from e

    return result

"""Async task definitions for catalog synchronization.

Uses arq (async Redis queue) for background task processing. Committed line
items are pushed to the external catalog by a worker process instead of the
request that committed them.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from datetime import datetime
from typing import Any

from arq import ArqRedis
from pydantic import BaseModel

from services.finalization.memory import InMemoryCatalogSync
from services.finalization.ports import CatalogSync
from services.finalization.schema import LineItem
from services.shared.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Result records expire after a day
RESULT_TTL_SECONDS = 86400


class SyncJobResult(BaseModel):
    """Result of a background catalog sync job.

    Attributes:
        job_id: Unique job identifier
        status: Job status (processing, completed, failed)
        owner_id: Owner whose line items are synced
        item_count: Number of line items in the job
        error: Error message (if failed)
        created_at: Job creation timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    status: str
    owner_id: str
    item_count: int = 0
    error: str | None = None
    created_at: str
    completed_at: str | None = None


async def sync_inventory_task(
    ctx: dict[str, Any],
    owner_id: str,
    line_items: list[dict[str, Any]],
) -> dict[str, Any]:
    """Push committed line items to the external catalog.

    Failures are recorded on the job result and logged; they never affect
    the commit that scheduled the job.

    Args:
        ctx: arq context (contains redis connection and job id)
        owner_id: Owner of the line items
        line_items: Serialized committed line items

    Returns:
        SyncJobResult as dict
    """
    job_id = ctx.get("job_id", "unknown")
    logger.info(f"Syncing {len(line_items)} line items for {owner_id} (job {job_id})")

    catalog: CatalogSync = ctx.get("catalog_sync") or InMemoryCatalogSync()
    redis = ctx["redis"]

    result = SyncJobResult(
        job_id=job_id,
        status="processing",
        owner_id=owner_id,
        item_count=len(line_items),
        created_at=datetime.utcnow().isoformat(),
    )
    await redis.set(f"sync:{job_id}", result.model_dump_json(), ex=RESULT_TTL_SECONDS)

    try:
        items = [LineItem.model_validate(item) for item in line_items]
        await catalog.sync_inventory(owner_id, items)
        result.status = "completed"
    except Exception as e:
        logger.exception(f"Sync job {job_id} failed with error: {e}")
        result.status = "failed"
        result.error = str(e)

    result.completed_at = datetime.utcnow().isoformat()
    await redis.set(f"sync:{job_id}", result.model_dump_json(), ex=RESULT_TTL_SECONDS)
    logger.info(f"Sync job {job_id} completed with status: {result.status}")

    return result.model_dump()


class ArqCatalogSync(CatalogSync):
    """CatalogSync that enqueues a worker job instead of syncing inline."""

    def __init__(self, redis: ArqRedis) -> None:
        self.redis = redis

    async def sync_inventory(self, owner_id: str, line_items: list[LineItem]) -> None:
        payload = [item.model_dump(mode="json") for item in line_items]
        job = await self.redis.enqueue_job("sync_inventory_task", owner_id, payload)
        if job is None:
            logger.warning(f"Sync job for {owner_id} was not enqueued (duplicate job id)")
        else:
            logger.info(f"Enqueued sync job {job.job_id} for {owner_id}")


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts. The catalog client is shared by all jobs.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["catalog_sync"] = InMemoryCatalogSync()
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


def parse_redis_settings(settings: Settings) -> Any:
    """Build arq RedisSettings from the configured Redis URL."""
    from arq.connections import RedisSettings as ArqRedisSettings

    return ArqRedisSettings.from_dsn(settings.redis_url)


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout settings
    """

    functions = [sync_inventory_task]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        return parse_redis_settings(get_settings())

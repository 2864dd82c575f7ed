"""ARQ job enqueueing utilities.

WHAT:
    Async helper to enqueue cache refresh jobs to the ARQ worker.

WHY:
    - Lets the API hand long refreshes to the worker
    - Creates the Redis pool on demand and reuses it

USAGE:
    from reportcache.workers.arq_enqueue import enqueue_refresh_job

    await enqueue_refresh_job([CacheKey("client-1", "2025-10", ProviderEnum.meta)])
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from arq import create_pool
from arq.connections import ArqRedis

from reportcache.services.cache_store import CacheKey
from reportcache.workers.arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
    return _arq_pool


def keys_to_payload(keys: Iterable[CacheKey]) -> list:
    return [
        {"client_id": k.client_id, "period_id": k.period_id, "provider": k.provider.value}
        for k in keys
    ]


async def enqueue_refresh_job(keys: Iterable[CacheKey], pool: Optional[ArqRedis] = None) -> Dict[str, Any]:
    """Enqueue a refresh job for the given keys.

    Returns:
        Dict with job_id and status
    """
    pool = pool or await get_arq_pool()
    payload = keys_to_payload(keys)

    job = await pool.enqueue_job("process_refresh_job", payload, _queue_name=QUEUE_NAME)

    if job:
        logger.info("[ARQ] Enqueued refresh job %s for %d keys", job.job_id, len(payload))
        return {"job_id": job.job_id, "status": "enqueued"}
    logger.warning("[ARQ] Refresh job was not enqueued (duplicate job id?)")
    return {"job_id": None, "status": "skipped_or_duplicate"}

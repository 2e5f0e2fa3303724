"""
Redis queue service for pipeline jobs, cancellation and promotion approvals.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, List, Optional
from datetime import datetime

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "rollgate:jobs"
PIPELINE_STATUS = "rollgate:status"
CANCEL_REQUESTS = "rollgate:cancel"
PENDING_PROMOTIONS = "rollgate:promotions:pending"
APPROVALS = "rollgate:approvals"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(run_id: str, config: Dict[str, Any], trigger: Dict[str, Any]):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()

    job = {
        "run_id": run_id,
        "config": config,
        "trigger": trigger,
        "queued_at": datetime.utcnow().isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.close()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.close()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.close()

async def request_cancel(run_id: str):
    """Ask the worker running `run_id` to stop it."""
    client = await get_redis_client()

    try:
        await client.hset(CANCEL_REQUESTS, run_id, datetime.utcnow().isoformat())
    finally:
        await client.close()

async def list_pending_promotions() -> List[Dict[str, Any]]:
    """Promotions currently parked waiting for approval."""
    client = await get_redis_client()

    try:
        pending = await client.hgetall(PENDING_PROMOTIONS)
    finally:
        await client.close()

    return [json.loads(data) for data in pending.values()]

async def approve_promotion(promotion_id: str, approver: str) -> bool:
    """Approve a parked promotion. Returns False if nothing is waiting on it."""
    client = await get_redis_client()

    try:
        if not await client.hexists(PENDING_PROMOTIONS, promotion_id):
            return False
        await client.hset(APPROVALS, promotion_id, approver)
        return True
    finally:
        await client.close()

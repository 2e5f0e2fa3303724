"""
Cross-process signals backed by Redis: cancellation, promotion approvals
and per-environment promotion locks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import LockError

from orchestrator.src.errors import ApprovalTimeout, ManifestPatchConflict
from orchestrator.src.models.run import PromotionRequest

logger = logging.getLogger(__name__)

CANCEL_KEY = "rollgate:cancel"
PENDING_PROMOTIONS_KEY = "rollgate:promotions:pending"
APPROVALS_KEY = "rollgate:approvals"
ENVIRONMENT_LOCK_PREFIX = "rollgate:lock:env:"

class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()

async def watch_cancellation(
    client: redis.Redis,
    run_id: str,
    token: CancellationToken,
    poll_interval: float = 3.0,
):
    """Poll for an external cancel request until it arrives or the task is cancelled."""
    while not token.cancelled:
        if await client.hexists(CANCEL_KEY, run_id):
            logger.info(f"Cancellation requested for run {run_id}")
            token.cancel()
            return
        await asyncio.sleep(poll_interval)

class ApprovalGate:
    """
    Parks a promotion until someone approves it through the API.
    Waiting is a plain await, so other runs keep going meanwhile.
    """

    def __init__(self, client: redis.Redis, poll_interval: float = 5.0):
        self.client = client
        self.poll_interval = poll_interval

    async def wait(self, request: PromotionRequest, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        await self.client.hset(PENDING_PROMOTIONS_KEY, request.id, request.model_dump_json())
        logger.info(f"Promotion {request.id} to '{request.environment}' awaiting approval")

        try:
            while True:
                approver = await self.client.hget(APPROVALS_KEY, request.id)
                if approver:
                    logger.info(f"Promotion {request.id} approved by {approver}")
                    return approver

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ApprovalTimeout(
                        f"Promotion to '{request.environment}' not approved within {timeout:g}s"
                    )
                await asyncio.sleep(min(self.poll_interval, remaining))
        finally:
            await self.client.hdel(PENDING_PROMOTIONS_KEY, request.id)
            await self.client.hdel(APPROVALS_KEY, request.id)

class EnvironmentLocks:
    """
    Mutual exclusion per environment. Always serializes within this process;
    with a Redis client it also serializes across worker processes.
    """

    def __init__(self, client: Optional[redis.Redis] = None, timeout: int = 300):
        self.client = client
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, environment: str):
        local_lock = self._locks.setdefault(environment, asyncio.Lock())
        async with local_lock:
            if self.client is None:
                yield
                return

            redis_lock = self.client.lock(
                f"{ENVIRONMENT_LOCK_PREFIX}{environment}",
                timeout=self.timeout,
                blocking_timeout=self.timeout,
            )
            if not await redis_lock.acquire():
                raise ManifestPatchConflict(
                    f"Timed out waiting for the promotion lock on '{environment}'"
                )
            try:
                yield
            finally:
                try:
                    await redis_lock.release()
                except LockError as e:
                    logger.warning(f"Promotion lock for '{environment}' expired before release: {e}")

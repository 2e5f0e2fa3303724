from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from api.src.db.database import get_db
from api.src.services.queue import get_redis_client, get_queue_length, PENDING_PROMOTIONS

router = APIRouter(tags=["health"])

async def check_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def check_redis() -> str:
    client = await get_redis_client()
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"
    finally:
        await client.close()

async def queue_depths() -> dict:
    """Queued runs and promotions parked on approval."""
    client = await get_redis_client()
    try:
        return {
            "queue_length": await get_queue_length(),
            "pending_approvals": await client.hlen(PENDING_PROMOTIONS),
        }
    finally:
        await client.close()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "rollgate-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    state = await check_database(db)
    status = "healthy" if state == "healthy" else "unhealthy"
    return {"status": status, "database": "connected" if status == "healthy" else state}

@router.get("/health/redis")
async def redis_health_check():
    state = await check_redis()
    status = "healthy" if state == "healthy" else "unhealthy"
    return {"status": status, "redis": "connected" if status == "healthy" else state}

@router.get("/health/queue")
async def queue_health_check():
    try:
        return {"status": "healthy", **await queue_depths()}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await check_database(db),
        "redis": await check_redis(),
    }

    try:
        depths = await queue_depths()
    except Exception:
        depths = {"queue_length": 0, "pending_approvals": 0}

    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"

    return {"status": overall, "services": {**health, **depths}}

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, PipelineStage, Repository
from api.src.models.run import PipelineRunResponse, RepositoryResponse
from api.src.services.queue import get_run_status, request_cancel

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = ("succeeded", "failed", "cancelled")

def _run_query():
    return select(PipelineRun).options(
        selectinload(PipelineRun.stages),
        selectinload(PipelineRun.promotions),
    )

async def _get_run_or_404(run_id: UUID, db: AsyncSession) -> PipelineRun:
    result = await db.execute(_run_query().where(PipelineRun.id == run_id))
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    trigger_event: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = _run_query().order_by(PipelineRun.created_at.desc())

    if status:
        query = query.where(PipelineRun.status == status)
    if trigger_event:
        query = query.where(PipelineRun.trigger_event == trigger_event)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await _get_run_or_404(run_id, db)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await _get_run_or_404(run_id, db)

    # Get live status from Redis
    redis_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": redis_status,
        "error": run.error,
        "error_kind": run.error_kind,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "order": stage.stage_order,
                "needs": stage.needs or [],
                "bypassed": stage.bypassed,
            }
            for stage in sorted(run.stages, key=lambda s: s.stage_order)
        ],
        "promotions": [
            {
                "environment": promotion.environment,
                "image": promotion.image_reference,
                "status": promotion.status,
            }
            for promotion in run.promotions
        ],
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get logs for all stages in a pipeline run."""
    query = (
        select(PipelineStage)
        .where(PipelineStage.run_id == run_id)
        .order_by(PipelineStage.stage_order)
    )
    result = await db.execute(query)
    stages = result.scalars().all()

    if not stages:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return {
        "run_id": str(run_id),
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "logs": stage.logs,
                "error": stage.error,
                "started_at": stage.started_at,
                "finished_at": stage.finished_at,
            }
            for stage in stages
        ]
    }

@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Request cancellation of a queued or running pipeline run."""
    run = await _get_run_or_404(run_id, db)

    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    await request_cancel(str(run_id))
    return {"run_id": str(run_id), "status": "cancelling"}

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    trigger_query = (
        select(PipelineRun.trigger_event, func.count(PipelineRun.id))
        .group_by(PipelineRun.trigger_event)
    )
    result = await db.execute(trigger_query)
    trigger_counts = {row[0]: row[1] for row in result.all()}

    repo_count_query = select(func.count(Repository.id))
    result = await db.execute(repo_count_query)
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "triggers": trigger_counts,
        "total_runs": sum(status_counts.values()),
    }

"""
Creating and queueing pipeline runs.
"""

import logging
from typing import Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.models.pipeline import Repository, PipelineRun, PipelineStage
from api.src.services.queue import enqueue_pipeline_run

logger = logging.getLogger(__name__)

async def get_or_create_repository(db: AsyncSession, name: str, full_name: str, clone_url: str) -> Repository:
    result = await db.execute(select(Repository).where(Repository.full_name == full_name))
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(name=name, full_name=full_name, clone_url=clone_url)
        db.add(repository)
        await db.flush()

    return repository

async def create_pipeline_run(
    db: AsyncSession,
    repository: Repository,
    config: Dict[str, Any],
    trigger: Dict[str, Any],
) -> PipelineRun:
    """Persist a run with one pending row per stage, then queue it."""
    pipeline_run = PipelineRun(
        repository_id=repository.id,
        commit_sha=trigger["commit_sha"],
        branch=trigger["branch"],
        trigger_event=trigger["kind"],
        status="queued",
        triggered_by=trigger.get("author"),
        image_tag=trigger.get("image_tag"),
        promote_from=trigger.get("promote_from"),
        promote_to=trigger.get("promote_to"),
        config=config,
    )
    db.add(pipeline_run)
    await db.flush()

    for i, stage_config in enumerate(config["stages"]):
        db.add(PipelineStage(
            run_id=pipeline_run.id,
            name=stage_config["name"],
            stage_order=i,
            needs=stage_config["needs"],
            status="pending",
        ))

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        config=config,
        trigger=trigger,
    )

    logger.info(f"Pipeline run {pipeline_run.id} ({trigger['kind']}) created and queued")
    return pipeline_run

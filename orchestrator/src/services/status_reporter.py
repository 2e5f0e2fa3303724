"""
Report pipeline, stage and promotion status to the database.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from orchestrator.src.config import get_settings
from orchestrator.src.models.db import PipelineRun, PipelineStage, Promotion
from orchestrator.src.models.run import PipelineRunState, PromotionRequest
from orchestrator.src.models.stage import StageResult, StageStatus
from orchestrator.src.services.pipeline import RunReporter

logger = logging.getLogger(__name__)

PIPELINE_STATUS = "rollgate:status"

_session_factory: Optional[sessionmaker] = None

def get_session_factory() -> sessionmaker:
    """Sync database connection for the orchestrator, created on first use."""
    global _session_factory
    if _session_factory is None:
        engine = create_engine(get_settings().database_url)
        _session_factory = sessionmaker(bind=engine)
    return _session_factory

def update_run_status(run: PipelineRunState):
    values = {
        "status": run.status.value,
        "error": run.error,
        "error_kind": run.error_kind,
        "updated_at": datetime.utcnow(),
    }
    if run.started_at:
        values["started_at"] = run.started_at
    if run.finished_at:
        values["finished_at"] = run.finished_at

    with get_session_factory()() as session:
        session.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run.run_id)
            .values(**values)
        )
        session.commit()
    logger.info(f"Updated run {run.run_id} status to {run.status.value}")

def update_stage_status(run_id: str, name: str, status: str, result: Optional[StageResult] = None):
    values = {"status": status, "updated_at": datetime.utcnow()}

    if result is None:
        values["started_at"] = datetime.utcnow()
    else:
        values.update(
            outputs=result.outputs,
            artifacts=result.artifacts,
            error=result.error,
            error_kind=result.error_kind,
            bypassed=result.bypassed or result.advisory,
            finished_at=result.finished_at,
        )
        if result.logs is not None:
            values["logs"] = result.logs
        if result.started_at:
            values["started_at"] = result.started_at

    with get_session_factory()() as session:
        session.execute(
            update(PipelineStage)
            .where(PipelineStage.run_id == run_id)
            .where(PipelineStage.name == name)
            .values(**values)
        )
        session.commit()
    logger.debug(f"Updated stage '{name}' of run {run_id} to {status}")

def save_promotion(request: PromotionRequest):
    with get_session_factory()() as session:
        session.merge(Promotion(
            id=request.id,
            run_id=request.run_id,
            environment=request.environment,
            image_reference=request.image_reference,
            manifest_path=request.manifest_path,
            status=request.status.value,
            requested_by=request.requested_by,
            approver=request.approver,
            revision=request.revision,
            committed_at=request.committed_at,
            created_at=request.created_at,
        ))
        session.commit()
    logger.info(f"Recorded promotion {request.id} to '{request.environment}': {request.status.value}")

class DatabaseReporter(RunReporter):
    """
    Mirrors run progress into Postgres, off the event loop, and the live
    run status into Redis when a client is given.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client

    async def run_updated(self, run: PipelineRunState):
        await asyncio.to_thread(update_run_status, run)
        if self.client is not None:
            await self.client.hset(PIPELINE_STATUS, run.run_id, run.status.value)

    async def stage_started(self, run: PipelineRunState, stage_name: str):
        await asyncio.to_thread(update_stage_status, run.run_id, stage_name, StageStatus.RUNNING.value)

    async def stage_finished(self, run: PipelineRunState, result: StageResult):
        await asyncio.to_thread(update_stage_status, run.run_id, result.name, result.status.value, result)

    async def promotion_recorded(self, run: PipelineRunState, request: PromotionRequest):
        await asyncio.to_thread(save_promotion, request)

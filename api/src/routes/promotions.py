"""
Manual promotion dispatch and approval endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Optional
import logging

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import Promotion, Repository
from api.src.models.run import ApprovalRequest, ManualDispatchRequest, PromotionResponse
from api.src.services.github import clone_repository, fetch_pipeline_config, resolve_head, cleanup_repo
from api.src.services.pipeline_parser import parse_pipeline_dict, PipelineConfigError
from api.src.services.queue import approve_promotion, list_pending_promotions
from api.src.services.runs import create_pipeline_run
from api.src.services.triggers import DispatchError, dispatch_trigger, validate_dispatch

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/promotions", tags=["promotions"])

@router.post("/dispatch")
async def dispatch_promotion(request: ManualDispatchRequest, db: AsyncSession = Depends(get_db)):
    """Start a run that promotes `image_tag` from one environment to the next."""
    result = await db.execute(select(Repository).where(Repository.full_name == request.repository))
    repository = result.scalar_one_or_none()

    if not repository:
        raise HTTPException(status_code=404, detail=f"Repository '{request.repository}' not registered")

    ref = request.ref or settings.default_dispatch_ref
    repo_path = None
    try:
        repo_path = await clone_repository(repository.clone_url, branch=ref)
        commit_sha = resolve_head(repo_path)
        pipeline_config = await fetch_pipeline_config(repo_path)

        if not pipeline_config:
            raise HTTPException(status_code=422, detail=f"No pipeline configuration found on '{ref}'")

        validated_config = parse_pipeline_dict(pipeline_config)
        validate_dispatch(request, validated_config["environments"])

    except (PipelineConfigError, DispatchError) as e:
        logger.error(f"Rejected dispatch for {request.repository}: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except RuntimeError as e:
        logger.error(f"Failed to process repository: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    pipeline_run = await create_pipeline_run(
        db,
        repository,
        validated_config,
        dispatch_trigger(request, repository.clone_url, commit_sha, ref),
    )

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "promote_from": request.promote_from,
        "promote_to": request.promote_to,
        "image_tag": request.image_tag,
    }

@router.get("/pending")
async def pending_promotions():
    """Promotions waiting for approval."""
    return {"promotions": await list_pending_promotions()}

@router.post("/{promotion_id}/approve")
async def approve(promotion_id: str, approval: ApprovalRequest):
    """Approve a promotion that is waiting for approval."""
    if not await approve_promotion(promotion_id, approval.approver):
        raise HTTPException(status_code=404, detail="No pending promotion with that id")

    logger.info(f"Promotion {promotion_id} approved by {approval.approver}")
    return {"promotion_id": promotion_id, "status": "approved", "approver": approval.approver}

@router.get("", response_model=List[PromotionResponse])
async def list_promotions(
    environment: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    """Promotion history, newest first."""
    query = select(Promotion).order_by(Promotion.created_at.desc())

    if environment:
        query = query.where(Promotion.environment == environment)

    result = await db.execute(query.limit(limit).offset(offset))
    return result.scalars().all()

"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from api.src.db.database import get_db
from api.src.services.github import (
    verify_signature,
    parse_pull_request_payload,
    clone_repository,
    fetch_pipeline_config,
    cleanup_repo,
)
from api.src.services.pipeline_parser import parse_pipeline_dict, PipelineConfigError
from api.src.services.runs import get_or_create_repository, create_pipeline_run
from api.src.services.triggers import pull_request_trigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

async def process_pull_request_event(
    payload: dict,
    db: AsyncSession,
):
    """Process GitHub pull_request event and create pipeline run."""

    webhook_data = parse_pull_request_payload(payload)

    if webhook_data is None:
        action = payload.get("action", "")
        return {"status": "skipped", "reason": f"Pull request action '{action}' does not trigger a run"}

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    repository = await get_or_create_repository(
        db,
        name=webhook_data["repo_name"],
        full_name=webhook_data["repo_full_name"],
        clone_url=webhook_data["clone_url"],
    )

    # Clone repo and fetch pipeline config
    repo_path = None
    try:
        repo_path = await clone_repository(
            webhook_data["clone_url"],
            webhook_data["commit_sha"]
        )

        pipeline_config = await fetch_pipeline_config(repo_path)

        if not pipeline_config:
            logger.info(f"No pipeline config found in {webhook_data['repo_full_name']}")
            return {"status": "skipped", "reason": "No pipeline configuration found"}

        validated_config = parse_pipeline_dict(pipeline_config)

    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline config: {e}")
        return {"status": "error", "reason": str(e)}
    except Exception as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    pipeline_run = await create_pipeline_run(
        db,
        repository,
        validated_config,
        pull_request_trigger(webhook_data),
    )

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "trigger": webhook_data["trigger_event"],
        "stages": len(validated_config["stages"]),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    if x_hub_signature_256:
        if not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "pull_request":
        return await process_pull_request_event(payload, db)

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }

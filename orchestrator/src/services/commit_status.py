"""
Report run status back to GitHub as a commit status, so a failing run can
block the merge that triggered it.
"""

import logging
from typing import Optional

import httpx

from orchestrator.src.models.run import PipelineRunState, RunStatus

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
STATUS_CONTEXT = "rollgate/pipeline"

GITHUB_STATES = {
    RunStatus.PENDING: "pending",
    RunStatus.RUNNING: "pending",
    RunStatus.SUCCEEDED: "success",
    RunStatus.FAILED: "failure",
    RunStatus.CANCELLED: "error",
}

def commit_state(run: PipelineRunState) -> str:
    return GITHUB_STATES[run.status]

def describe(run: PipelineRunState) -> str:
    if run.status == RunStatus.FAILED and run.error:
        description = f"{run.error_kind}: {run.error}"
    else:
        description = f"Pipeline {run.status.value}"
    # GitHub caps descriptions at 140 characters
    return description[:140]

class CommitStatusReporter:
    def __init__(self, token: str, api_url: str = GITHUB_API, target_url: Optional[str] = None):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.target_url = target_url

    async def report(self, run: PipelineRunState) -> bool:
        if not self.token:
            return False

        payload = {
            "state": commit_state(run),
            "description": describe(run),
            "context": STATUS_CONTEXT,
        }
        if self.target_url:
            payload["target_url"] = self.target_url.format(run_id=run.run_id)

        url = f"{self.api_url}/repos/{run.trigger.repository}/statuses/{run.trigger.commit_sha}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to report commit status for run {run.run_id}: {e}")
            return False

        if response.status_code >= 400:
            logger.warning(f"GitHub rejected commit status for run {run.run_id}: {response.status_code}")
            return False
        return True

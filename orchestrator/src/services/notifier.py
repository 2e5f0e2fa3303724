"""
End-of-run notifications to a Slack incoming webhook.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from orchestrator.src.errors import NotificationFailure
from orchestrator.src.models.run import PipelineRunState, RunStatus, TriggerKind

logger = logging.getLogger(__name__)

STATUS_STYLE = {
    RunStatus.SUCCEEDED: ("good", ":white_check_mark:", "Pipeline succeeded!"),
    RunStatus.FAILED: ("danger", ":x:", "Pipeline failed! Please check the logs."),
    RunStatus.CANCELLED: ("warning", ":warning:", "Pipeline was cancelled."),
}

class SlackNotifier:
    def __init__(
        self,
        webhook_url: str,
        run_url_template: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.run_url_template = run_url_template
        self.timeout_seconds = timeout_seconds

    def build_payload(self, run: PipelineRunState) -> Dict[str, Any]:
        color, icon, message = STATUS_STYLE.get(
            run.status, ("gray", ":question:", f"Pipeline completed with status: {run.status.value}")
        )
        trigger = run.trigger
        commit_url = f"https://github.com/{trigger.repository}/commit/{trigger.commit_sha}"

        fields: List[Dict[str, Any]] = [
            {"title": "Repository", "value": trigger.repository, "short": True},
            {"title": "Branch", "value": trigger.branch, "short": True},
            {"title": "Trigger", "value": trigger.kind.value, "short": True},
            {"title": "Commit", "value": f"<{commit_url}|{trigger.commit_sha}>", "short": False},
            {"title": "Author", "value": trigger.author or "unknown", "short": True},
        ]

        artifact_tag = trigger.image_tag or trigger.commit_sha
        fields.append({"title": "Image Tag", "value": artifact_tag, "short": True})

        if trigger.kind == TriggerKind.MANUAL_DISPATCH:
            fields.append({"title": "Source Environment", "value": trigger.promote_from, "short": True})
            fields.append({"title": "Target Environment", "value": trigger.promote_to, "short": True})

        for promotion in run.promotions:
            fields.append({
                "title": f"Promotion ({promotion.environment})",
                "value": f"{promotion.image_reference} - {promotion.status.value}",
                "short": False,
            })

        for result in run.results:
            for path in result.artifacts:
                fields.append({"title": f"Report ({result.name})", "value": path, "short": True})

        if run.error:
            fields.append({"title": "Error", "value": f"{run.error_kind}: {run.error}", "short": False})

        if self.run_url_template:
            fields.append({
                "title": "Run",
                "value": f"<{self.run_url_template.format(run_id=run.run_id)}|{run.run_id}>",
                "short": False,
            })

        return {
            "text": f"*CI/CD Pipeline - {run.status.value}* {icon}\n{message}",
            "attachments": [
                {"fallback": "Run Details", "color": color, "fields": fields},
            ],
        }

    async def notify(self, run: PipelineRunState) -> bool:
        """Best-effort delivery. Failures are logged and never raised."""
        if not self.webhook_url:
            logger.debug("No Slack webhook configured; skipping notification")
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.webhook_url,
                    json=self.build_payload(run),
                    timeout=self.timeout_seconds,
                )
            if response.status_code >= 400:
                raise NotificationFailure(f"Slack returned {response.status_code}")
            logger.info(f"Sent notification for run {run.run_id}")
            return True
        except Exception as e:
            failure = e if isinstance(e, NotificationFailure) else NotificationFailure(str(e))
            logger.warning(f"Notification for run {run.run_id} failed ({failure.kind}): {failure}")
            return False

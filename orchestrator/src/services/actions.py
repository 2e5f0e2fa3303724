"""
Built-in stage actions (`uses:`) for publishing images and promoting them.
"""

import asyncio
import logging
from typing import Dict

from orchestrator.src.errors import BuildFailure, PipelineError, RegistryError
from orchestrator.src.models.run import (
    Artifact,
    Environment,
    PromotionRequest,
    PromotionStatus,
    RunContext,
    TriggerKind,
)
from orchestrator.src.models.stage import Stage
from orchestrator.src.services.executor import ActionHandler, ActionResult, WaitAllowance
from orchestrator.src.services.promoter import EnvironmentPromoter
from orchestrator.src.services.registry import RegistryClient
from orchestrator.src.services.retry import retry_async

logger = logging.getLogger(__name__)

PUSH_ACTION = "registry/push"
COPY_ACTION = "registry/promote"
GITOPS_ACTION = "gitops/promote"

ENVIRONMENT_BOUND_ACTIONS = {PUSH_ACTION, COPY_ACTION, GITOPS_ACTION}

def target_environment(stage: Stage, context: RunContext) -> str:
    """Environment a stage acts on: its `environment` param, else the dispatch target."""
    name = stage.params.get("environment")
    if name:
        return name
    if context.trigger.kind == TriggerKind.MANUAL_DISPATCH and context.trigger.promote_to:
        return context.trigger.promote_to
    raise BuildFailure(f"Stage '{stage.name}' needs an 'environment' parameter")

class ImageActions:
    def __init__(self, registries: Dict[str, RegistryClient], retry_attempts: int = 3, retry_backoff: float = 2.0):
        self.registries = registries
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def _registry(self, environment: Environment) -> RegistryClient:
        client = self.registries.get(environment.registry)
        if client is None:
            raise RegistryError(
                f"No '{environment.registry}' registry configured for '{environment.name}'",
                retryable=False,
            )
        return client

    async def _retry(self, operation, description: str):
        return await retry_async(
            operation,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            retry_on=(RegistryError,),
            description=description,
        )

    async def _publish(self, client: RegistryClient, source_reference: str, artifact: Artifact,
                       environment: Environment, context: RunContext) -> ActionResult:
        await self._retry(client.authenticate, f"Login to {client.kind}")
        await client.tag(source_reference, artifact)
        manifest_digest = await self._retry(lambda: client.push(artifact), f"Push {artifact.reference}")

        artifact = artifact.model_copy(update={"manifest_digest": manifest_digest})
        context.artifacts[environment.name] = artifact

        return ActionResult(
            outputs={
                "pushed_image": artifact.reference,
                "pushed_digest": manifest_digest,
                "scan_ref": client.scan_reference(artifact),
            },
            artifacts=[artifact.reference],
        )

    async def push(self, stage: Stage, context: RunContext) -> ActionResult:
        """Tag the image built earlier in this run and push it to an environment's registry."""
        environment = context.environment(target_environment(stage, context))
        source = stage.params.get("source") or context.env.get("IMAGE")
        if not source:
            raise BuildFailure(f"Stage '{stage.name}' has no image to push; set the 'image' output or 'source'")

        client = self._registry(environment)
        tag = client.tag_for(environment, context.trigger.commit_sha, stage.params.get("tag"))
        digest = stage.params.get("digest") or context.env.get("IMAGE_DIGEST")
        if not digest:
            digest = await self._retry(lambda: client.local_digest(source), f"Inspect {source}")
        artifact = client.artifact(environment, tag, digest)

        return await self._publish(client, source, artifact, environment, context)

    async def promote(self, stage: Stage, context: RunContext) -> ActionResult:
        """Copy an already published image from one environment's registry into another's."""
        trigger = context.trigger
        target = context.environment(target_environment(stage, context))
        source_name = stage.params.get("from") or trigger.promote_from
        if not source_name:
            raise BuildFailure(f"Stage '{stage.name}' has no source environment to promote from")
        source = context.environment(source_name)

        source_client = self._registry(source)
        target_client = self._registry(target)

        source_tag = stage.params.get("source_tag") or trigger.source_tag or trigger.image_tag
        if not source_tag:
            raise BuildFailure(f"Stage '{stage.name}' has no image tag to promote")
        source_artifact = source_client.artifact(source, source_tag)
        digest = await self._retry(lambda: source_client.pull(source_artifact), f"Pull {source_artifact.reference}")

        tag = target_client.tag_for(target, trigger.commit_sha, trigger.image_tag or source_tag)
        artifact = target_client.artifact(target, tag, digest)
        logger.info(f"Promoting {source_artifact.reference} -> {artifact.reference}")

        return await self._publish(target_client, source_artifact.reference, artifact, target, context)

class ManifestActions:
    def __init__(self, promoter: EnvironmentPromoter):
        self.promoter = promoter

    async def promote(self, stage: Stage, context: RunContext) -> ActionResult:
        """Point an environment's manifest at the artifact published for it in this run."""
        environment = context.environment(target_environment(stage, context))
        artifact = context.artifacts.get(environment.name)
        if artifact is None:
            raise PipelineError(f"No artifact was published for '{environment.name}' in this run")

        request = PromotionRequest.create(context.run_id, artifact, environment, context.trigger.author)
        try:
            request = await self.promoter.execute(request, environment)
        except (PipelineError, asyncio.CancelledError):
            # Timed out or cancelled stages still leave a failed promotion on the run
            context.promotions.append(request.model_copy(update={"status": PromotionStatus.FAILED}))
            raise
        context.promotions.append(request)

        return ActionResult(outputs={
            "promotion_id": request.id,
            "manifest_revision": request.revision or "",
        })

    def approval_window(self, stage: Stage, context: RunContext) -> float:
        """Seconds the stage may spend waiting for approval on top of its own timeout."""
        name = stage.params.get("environment") or context.trigger.promote_to
        environment = context.environments.get(name) if name else None
        if environment is not None and environment.requires_approval:
            return self.promoter.approval_timeout
        return 0

def build_actions(images: ImageActions, manifests: ManifestActions) -> Dict[str, ActionHandler]:
    return {
        PUSH_ACTION: images.push,
        COPY_ACTION: images.promote,
        GITOPS_ACTION: manifests.promote,
    }

def build_allowances(manifests: ManifestActions) -> Dict[str, WaitAllowance]:
    return {GITOPS_ACTION: manifests.approval_window}

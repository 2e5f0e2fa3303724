"""
Stage executor - runs one pipeline stage with a bounded timeout.
"""

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from orchestrator.src.config import get_settings
from orchestrator.src.errors import BuildFailure, PipelineError
from orchestrator.src.k8s import (
    get_batch_api,
    build_job,
    get_job_status,
    delete_job,
)
from orchestrator.src.models.run import RunContext
from orchestrator.src.models.stage import Stage, StageOutcome, StageResult, StageStatus
from orchestrator.src.services.artifact_store import ArtifactStore
from orchestrator.src.services.log_collector import collect_logs

logger = logging.getLogger(__name__)

OUTPUT_PATTERN = re.compile(r"^::set-output name=([A-Za-z0-9_.-]+)::(.*)$", re.MULTILINE)

def parse_outputs(logs: str) -> Dict[str, str]:
    """Extract `::set-output name=key::value` lines; later lines win."""
    return {name: value.strip() for name, value in OUTPUT_PATTERN.findall(logs or "")}

def stage_environment(stage: Stage, context: RunContext) -> Dict[str, str]:
    env = dict(context.env)
    env.update(stage.env)
    env.update({
        "ROLLGATE_RUN_ID": context.run_id,
        "ROLLGATE_STAGE": stage.name,
        "ROLLGATE_COMMIT_SHA": context.trigger.commit_sha,
        "ROLLGATE_BRANCH": context.trigger.branch,
        "ROLLGATE_TRIGGER": context.trigger.kind.value,
    })
    return env

@dataclass
class ActionResult:
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)

ActionHandler = Callable[[Stage, RunContext], Awaitable[ActionResult]]

# Extra seconds an action may spend waiting on an external signal
WaitAllowance = Callable[[Stage, RunContext], float]

class StageRunner(ABC):
    """Runs a stage's shell commands somewhere and reports the raw outcome."""

    @abstractmethod
    async def run(self, stage: Stage, context: RunContext) -> StageOutcome:
        ...

class LocalRunner(StageRunner):
    """Runs commands as a subprocess inside the run's checked-out workspace."""

    async def run(self, stage: Stage, context: RunContext) -> StageOutcome:
        # Join commands with && so it fails fast on error
        shell_command = " && ".join(stage.commands)
        env = {**os.environ, **stage_environment(stage, context)}

        process = await asyncio.create_subprocess_shell(
            shell_command,
            cwd=str(context.workspace),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        return StageOutcome(
            exit_code=process.returncode,
            logs=stdout.decode("utf-8", errors="replace"),
        )

class KubernetesRunner(StageRunner):
    """Runs each stage as a Kubernetes Job and collects its pod logs."""

    def __init__(self, poll_interval: float = 2.0):
        self.poll_interval = poll_interval
        self.settings = get_settings()

    async def run(self, stage: Stage, context: RunContext) -> StageOutcome:
        batch_v1 = get_batch_api()
        job = build_job(
            run_id=context.run_id,
            stage_name=stage.name,
            image=stage.image,
            commands=stage.commands,
            env_vars=stage_environment(stage, context),
            timeout=stage.timeout,
            clone_url=context.trigger.clone_url,
            commit_sha=context.trigger.commit_sha,
        )
        job_name = job.metadata.name
        logger.info(f"Creating job {job_name}")

        try:
            await asyncio.to_thread(
                batch_v1.create_namespaced_job,
                namespace=self.settings.k8s_namespace,
                body=job,
            )
        except ApiException as e:
            if e.status != 409:
                raise
            # Job already exists, delete and recreate
            logger.warning(f"Job {job_name} already exists, deleting...")
            await asyncio.to_thread(delete_job, job_name)
            await asyncio.sleep(2)
            await asyncio.to_thread(
                batch_v1.create_namespaced_job,
                namespace=self.settings.k8s_namespace,
                body=job,
            )

        try:
            succeeded = await self.wait_for_job(job_name)
        except asyncio.CancelledError:
            await asyncio.to_thread(delete_job, job_name)
            raise

        logs = await collect_logs(job_name)
        return StageOutcome(exit_code=0 if succeeded else 1, logs=logs)

    async def wait_for_job(self, job_name: str) -> bool:
        """
        Wait for a job to complete.
        Returns True if succeeded, False if failed. The caller bounds the wait.
        """
        batch_v1 = get_batch_api()

        while True:
            try:
                job = await asyncio.to_thread(
                    batch_v1.read_namespaced_job,
                    name=job_name,
                    namespace=self.settings.k8s_namespace,
                )
                status = get_job_status(job)

                if status == "succeeded":
                    return True
                elif status == "failed":
                    return False

                # Still running or pending
                await asyncio.sleep(self.poll_interval)

            except ApiException as e:
                logger.error(f"Error checking job status: {e}")
                await asyncio.sleep(self.poll_interval * 2)

class StageExecutor:
    def __init__(
        self,
        runner: StageRunner,
        store: ArtifactStore,
        actions: Optional[Dict[str, ActionHandler]] = None,
        allowances: Optional[Dict[str, WaitAllowance]] = None,
    ):
        self.runner = runner
        self.store = store
        self.actions = actions or {}
        self.allowances = allowances or {}

    async def execute(self, stage: Stage, context: RunContext) -> StageResult:
        """
        Execute a single stage.
        Never raises for stage-level failures; they come back as a failed result.
        """
        started_at = datetime.utcnow()
        logger.info(f"[{context.run_id}] Starting stage '{stage.name}'")

        def failed(error: str, kind: str, logs: Optional[str] = None, timed_out: bool = False) -> StageResult:
            return StageResult(
                name=stage.name,
                status=StageStatus.FAILURE,
                logs=logs,
                error=error,
                error_kind=kind,
                timed_out=timed_out,
                started_at=started_at,
                finished_at=datetime.utcnow(),
            )

        timeout = stage.timeout
        try:
            if stage.uses:
                timeout += self._allowance(stage, context)
                result = await asyncio.wait_for(self._run_action(stage, context), timeout=timeout)
                outputs, artifacts, logs = result.outputs, result.artifacts, None
            else:
                outcome = await asyncio.wait_for(self.runner.run(stage, context), timeout=stage.timeout)
                if outcome.exit_code != 0:
                    return failed(
                        f"Stage '{stage.name}' exited with code {outcome.exit_code}",
                        BuildFailure.kind,
                        logs=outcome.logs,
                    )
                outputs = parse_outputs(outcome.logs)
                logs = outcome.logs
                artifacts = self.store.publish(context.run_id, stage.name, context.workspace, stage.artifacts)
        except asyncio.TimeoutError:
            logger.error(f"[{context.run_id}] Stage '{stage.name}' timed out after {timeout:g}s")
            return failed(f"Stage '{stage.name}' timed out after {timeout:g}s", BuildFailure.kind, timed_out=True)
        except PipelineError as e:
            logger.error(f"[{context.run_id}] Stage '{stage.name}' failed: {e}")
            return failed(e.message, e.kind)
        except Exception as e:
            logger.exception(f"[{context.run_id}] Stage '{stage.name}' failed with exception")
            return failed(str(e), BuildFailure.kind)

        return StageResult(
            name=stage.name,
            status=StageStatus.SUCCESS,
            outputs=outputs,
            artifacts=artifacts,
            logs=logs,
            started_at=started_at,
            finished_at=datetime.utcnow(),
        )

    async def _run_action(self, stage: Stage, context: RunContext) -> ActionResult:
        handler = self.actions.get(stage.uses)
        if handler is None:
            raise BuildFailure(f"Unknown action '{stage.uses}' in stage '{stage.name}'")
        return await handler(stage, context)

    def _allowance(self, stage: Stage, context: RunContext) -> float:
        allowance = self.allowances.get(stage.uses)
        return allowance(stage, context) if allowance else 0

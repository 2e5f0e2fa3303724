"""
Queue worker - pulls runs from Redis and drives them through the orchestrator.
"""

import asyncio
import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from orchestrator.src.config import Settings, get_settings
from orchestrator.src.errors import BuildFailure
from orchestrator.src.models.run import (
    Environment,
    PipelineRunState,
    RunContext,
    TriggerEvent,
)
from orchestrator.src.models.stage import Stage
from orchestrator.src.services.actions import ImageActions, ManifestActions, build_actions, build_allowances
from orchestrator.src.services.artifact_store import ArtifactStore
from orchestrator.src.services.commit_status import CommitStatusReporter
from orchestrator.src.services.executor import KubernetesRunner, LocalRunner, StageExecutor, StageRunner
from orchestrator.src.services.gates import GateEvaluator
from orchestrator.src.services.notifier import SlackNotifier
from orchestrator.src.services.pipeline import PipelineOrchestrator
from orchestrator.src.services.promoter import (
    ArgoCDReconciler,
    EnvironmentPromoter,
    FileManifestStore,
    GitManifestStore,
    ManifestStore,
)
from orchestrator.src.services.registry import build_registry_clients
from orchestrator.src.services.signals import (
    CANCEL_KEY,
    ApprovalGate,
    CancellationToken,
    EnvironmentLocks,
    watch_cancellation,
)
from orchestrator.src.services.status_reporter import DatabaseReporter

logger = logging.getLogger(__name__)

PIPELINE_QUEUE = "rollgate:jobs"

def load_stages(config: Dict[str, Any]) -> List[Stage]:
    return [Stage(**stage) for stage in config.get("stages", [])]

def load_environments(config: Dict[str, Any]) -> Dict[str, Environment]:
    return {
        name: Environment(name=name, **values)
        for name, values in config.get("environments", {}).items()
    }

def build_runner(settings: Settings) -> StageRunner:
    if settings.runner == "kubernetes":
        return KubernetesRunner()
    return LocalRunner()

def build_manifest_store(settings: Settings) -> ManifestStore:
    if settings.manifest_store == "file":
        return FileManifestStore(settings.manifest_root)
    return GitManifestStore(
        repo_url=settings.gitops_repo_url,
        checkout_dir=settings.manifest_root,
        branch=settings.gitops_branch,
        token=settings.gitops_token,
    )

def build_orchestrator(settings: Settings, client: redis.Redis) -> PipelineOrchestrator:
    """Wire the orchestrator and its collaborators from settings."""
    promoter = EnvironmentPromoter(
        store=build_manifest_store(settings),
        locks=EnvironmentLocks(client, timeout=settings.promotion_lock_timeout),
        approvals=ApprovalGate(client, poll_interval=settings.approval_poll_interval),
        reconciler=ArgoCDReconciler(settings.argocd_url, settings.argocd_token) if settings.argocd_url else None,
        approval_timeout=settings.approval_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff=settings.retry_backoff,
    )
    images = ImageActions(
        build_registry_clients(settings),
        retry_attempts=settings.retry_attempts,
        retry_backoff=settings.retry_backoff,
    )
    manifests = ManifestActions(promoter)
    executor = StageExecutor(
        runner=build_runner(settings),
        store=ArtifactStore(settings.artifact_store_dir),
        actions=build_actions(images, manifests),
        allowances=build_allowances(manifests),
    )

    return PipelineOrchestrator(
        executor=executor,
        gates=GateEvaluator(default_min_coverage=settings.min_coverage),
        reporter=DatabaseReporter(client),
        notifier=SlackNotifier(settings.slack_webhook_url) if settings.slack_webhook_url else None,
        commit_status=CommitStatusReporter(settings.github_token) if settings.github_token else None,
        integration_branch=settings.integration_branch,
        release_prefix=settings.release_branch_prefix,
    )

def checkout_workspace(workspace: Path, clone_url: Optional[str], commit_sha: str):
    """Clone the triggering revision into the run's workspace."""
    workspace.mkdir(parents=True, exist_ok=True)
    if not clone_url:
        return

    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", clone_url, str(workspace)],
            check=True,
            capture_output=True,
            timeout=120,
        )
        subprocess.run(
            ["git", "fetch", "--depth", "1", "origin", commit_sha],
            cwd=workspace,
            capture_output=True,
            timeout=60,
        )
        subprocess.run(
            ["git", "checkout", commit_sha],
            cwd=workspace,
            check=True,
            capture_output=True,
            timeout=30,
        )
    except subprocess.TimeoutExpired:
        raise BuildFailure("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        raise BuildFailure(f"Failed to clone repository: {e.stderr.decode()}")

async def handle_job(
    job: Dict[str, Any],
    orchestrator: PipelineOrchestrator,
    client: redis.Redis,
    settings: Settings,
) -> PipelineRunState:
    run_id = job["run_id"]
    config = job.get("config", {})
    trigger = TriggerEvent(**job["trigger"])

    run = PipelineRunState(run_id=run_id, trigger=trigger)
    workspace = Path(settings.workspace_dir) / run_id
    context = RunContext(
        run_id=run_id,
        trigger=trigger,
        workspace=workspace,
        environments=load_environments(config),
        env={str(k): str(v) for k, v in config.get("env", {}).items()},
    )

    token = CancellationToken()
    watcher = asyncio.create_task(
        watch_cancellation(client, run_id, token, poll_interval=settings.cancel_poll_interval)
    )

    try:
        if settings.runner == "local":
            try:
                await asyncio.to_thread(checkout_workspace, workspace, trigger.clone_url, trigger.commit_sha)
            except BuildFailure as e:
                return await orchestrator.abort(run, e)
        return await orchestrator.run(run, load_stages(config), context, cancel=token)
    finally:
        watcher.cancel()
        await client.hdel(CANCEL_KEY, run_id)
        shutil.rmtree(workspace, ignore_errors=True)

async def worker_loop():
    """Main worker loop."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    orchestrator = build_orchestrator(settings, client)
    slots = asyncio.Semaphore(settings.max_concurrent_runs)
    active = set()

    async def process(job: Dict[str, Any]):
        run_id = job.get("run_id", "unknown")
        try:
            run = await handle_job(job, orchestrator, client, settings)
            logger.info(f"Run {run_id} completed: {run.status.value}")
        except Exception as e:
            logger.exception(f"Failed to execute pipeline {run_id}: {e}")
        finally:
            slots.release()

    logger.info(f"Worker started, waiting for jobs (max {settings.max_concurrent_runs} concurrent runs)...")

    try:
        while True:
            await slots.acquire()
            try:
                result = await client.brpop(PIPELINE_QUEUE, timeout=5)
            except Exception as e:
                slots.release()
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
                continue

            if not result:
                slots.release()
                continue

            _, job_data = result
            try:
                job = json.loads(job_data)
            except json.JSONDecodeError as e:
                slots.release()
                logger.error(f"Discarding malformed job: {e}")
                continue
            logger.info(f"Received job for run {job.get('run_id', 'unknown')}")

            task = asyncio.create_task(process(job))
            active.add(task)
            task.add_done_callback(active.discard)
    finally:
        for task in active:
            task.cancel()
        await asyncio.gather(*active, return_exceptions=True)
        await client.close()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")

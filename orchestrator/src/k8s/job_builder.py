"""
Kubernetes Job builder for pipeline stages.
"""

from kubernetes import client
from typing import List, Dict, Optional
import hashlib
import shlex

from orchestrator.src.config import get_settings

settings = get_settings()

DEFAULT_STAGE_IMAGE = "alpine/git:latest"

def build_job_name(run_id: str, stage_name: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = stage_name.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:30].strip("-")

    # Use short hash of run_id + stage for uniqueness
    digest = hashlib.md5(f"{run_id}:{stage_name}".encode()).hexdigest()[:10]

    return f"rg-{digest}-{safe_name}"

def build_checkout_commands(clone_url: Optional[str], commit_sha: Optional[str]) -> List[str]:
    """Commands that check out the run's source revision inside the pod."""
    if not clone_url:
        return []
    commands = [f"git clone --depth 1 {shlex.quote(clone_url)} /workspace/repo"]
    if commit_sha:
        commands.append(f"cd /workspace/repo && git fetch --depth 1 origin {shlex.quote(commit_sha)}")
        commands.append(f"git checkout {shlex.quote(commit_sha)}")
    commands.append("cd /workspace/repo")
    return commands

def build_job(
    run_id: str,
    stage_name: str,
    image: Optional[str],
    commands: List[str],
    env_vars: Optional[Dict[str, str]] = None,
    timeout: int = 600,
    clone_url: Optional[str] = None,
    commit_sha: Optional[str] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job for a pipeline stage.
    """
    job_name = build_job_name(run_id, stage_name)

    env = [
        client.V1EnvVar(name=key, value=str(value))
        for key, value in (env_vars or {}).items()
    ]

    # Join commands with && so it fails fast on error
    shell_command = " && ".join(build_checkout_commands(clone_url, commit_sha) + list(commands))

    labels = {
        "app": "rollgate",
        "run-id": run_id,
        "stage": job_name[-30:].strip("-"),
    }

    container = client.V1Container(
        name="stage",
        image=image or DEFAULT_STAGE_IMAGE,
        command=["/bin/sh", "-c"],
        args=[shell_command],
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "1", "memory": "1Gi"},
        ),
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=client.V1PodSpec(
            containers=[container],
            restart_policy="Never",
        ),
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Don't retry failed stages
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"

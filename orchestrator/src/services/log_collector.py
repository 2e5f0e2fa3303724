"""
Collect stage logs from Kubernetes pods.
"""

import asyncio
import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from orchestrator.src.k8s.client import get_core_api
from orchestrator.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

LOG_TAIL_LINES = 2000

async def get_job_pod_name(job_name: str) -> Optional[str]:
    """Get the pod name for a stage job."""
    core_v1 = get_core_api()

    try:
        pods = await asyncio.to_thread(
            core_v1.list_namespaced_pod,
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

    if pods.items:
        return pods.items[0].metadata.name
    return None

async def collect_logs(job_name: str) -> str:
    """Collect logs from a stage job's pod."""
    pod_name = await get_job_pod_name(job_name)
    if not pod_name:
        return "No pod found for job"

    try:
        return await asyncio.to_thread(
            get_core_api().read_namespaced_pod_log,
            name=pod_name,
            namespace=settings.k8s_namespace,
            tail_lines=LOG_TAIL_LINES,
        )
    except ApiException as e:
        logger.error(f"Failed to collect logs for {pod_name}: {e}")
        return f"Error collecting logs: {e.reason}"

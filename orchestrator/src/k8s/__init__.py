from orchestrator.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    delete_job,
)
from orchestrator.src.k8s.job_builder import (
    build_job,
    build_job_name,
    build_checkout_commands,
    get_job_status,
)

__all__ = [
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "delete_job",
    "build_job",
    "build_job_name",
    "build_checkout_commands",
    "get_job_status",
]

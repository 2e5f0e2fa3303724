"""
Kubernetes client initialization for the Job-based stage runner.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging

from orchestrator.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "rollgate"}

_batch_v1 = None
_core_v1 = None

def _load_config():
    if settings.k8s_in_cluster:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    else:
        # Local kubeconfig (kind, minikube, Docker Desktop)
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")

def init_k8s_client() -> bool:
    """Initialize Kubernetes API clients. Returns False if the cluster is unreachable."""
    global _batch_v1, _core_v1

    try:
        _load_config()
        api_client = client.ApiClient()
        _batch_v1 = client.BatchV1Api(api_client)
        _core_v1 = client.CoreV1Api(api_client)

        _core_v1.list_namespace(limit=1)
        logger.info("Kubernetes client initialized successfully")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

def get_batch_api() -> client.BatchV1Api:
    if _batch_v1 is None:
        init_k8s_client()
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def ensure_namespace():
    """Create the stage namespace if it does not exist yet."""
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=settings.k8s_namespace)
        return
    except ApiException as e:
        if e.status != 404:
            raise

    namespace = client.V1Namespace(
        metadata=client.V1ObjectMeta(name=settings.k8s_namespace, labels=MANAGED_BY_LABEL)
    )
    core_v1.create_namespace(body=namespace)
    logger.info(f"Created namespace '{settings.k8s_namespace}'")

def delete_job(job_name: str, namespace: str = None):
    """Delete a stage Job together with its pods. Missing jobs are ignored."""
    namespace = namespace or settings.k8s_namespace

    try:
        get_batch_api().delete_namespaced_job(
            name=job_name,
            namespace=namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")

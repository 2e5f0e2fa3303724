from orchestrator.src.services.executor import StageExecutor, LocalRunner, KubernetesRunner
from orchestrator.src.services.gates import GateEvaluator, GateDecision, GateOutcome
from orchestrator.src.services.registry import RegistryClient, build_registry_clients
from orchestrator.src.services.promoter import EnvironmentPromoter, patch_image_reference
from orchestrator.src.services.notifier import SlackNotifier
from orchestrator.src.services.pipeline import PipelineOrchestrator, RunReporter

__all__ = [
    "StageExecutor",
    "LocalRunner",
    "KubernetesRunner",
    "GateEvaluator",
    "GateDecision",
    "GateOutcome",
    "RegistryClient",
    "build_registry_clients",
    "EnvironmentPromoter",
    "patch_image_reference",
    "SlackNotifier",
    "PipelineOrchestrator",
    "RunReporter",
]

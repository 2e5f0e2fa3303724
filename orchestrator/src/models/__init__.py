from orchestrator.src.models.stage import (
    StageStatus,
    FailurePolicy,
    StageCategory,
    GateRule,
    GatePolicy,
    Stage,
    StageResult,
    StageOutcome,
)
from orchestrator.src.models.run import (
    ENVIRONMENT_ORDER,
    TriggerKind,
    TriggerEvent,
    RunStatus,
    PromotionPolicy,
    PromotionStatus,
    TagScheme,
    Environment,
    Artifact,
    PromotionRequest,
    PipelineRunState,
    RunContext,
)

__all__ = [
    "StageStatus",
    "FailurePolicy",
    "StageCategory",
    "GateRule",
    "GatePolicy",
    "Stage",
    "StageResult",
    "StageOutcome",
    "ENVIRONMENT_ORDER",
    "TriggerKind",
    "TriggerEvent",
    "RunStatus",
    "PromotionPolicy",
    "PromotionStatus",
    "TagScheme",
    "Environment",
    "Artifact",
    "PromotionRequest",
    "PipelineRunState",
    "RunContext",
]

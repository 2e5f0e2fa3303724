from api.src.models.pipeline import Repository, PipelineRun, PipelineStage, Promotion
from api.src.models.run import (
    PipelineRunResponse,
    StageResponse,
    PromotionResponse,
    RepositoryResponse,
    ManualDispatchRequest,
    ApprovalRequest,
)

__all__ = [
    "Repository",
    "PipelineRun",
    "PipelineStage",
    "Promotion",
    "PipelineRunResponse",
    "StageResponse",
    "PromotionResponse",
    "RepositoryResponse",
    "ManualDispatchRequest",
    "ApprovalRequest",
]

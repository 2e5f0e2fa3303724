from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID

class StageResponse(BaseModel):
    id: UUID
    name: str
    stage_order: int
    needs: Optional[List[str]] = None
    status: str
    outputs: Optional[Dict[str, str]] = None
    artifacts: Optional[List[str]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    bypassed: Optional[bool] = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PromotionResponse(BaseModel):
    id: UUID
    run_id: UUID
    environment: str
    image_reference: str
    manifest_path: str
    status: str
    requested_by: Optional[str] = None
    approver: Optional[str] = None
    revision: Optional[str] = None
    committed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    trigger_event: str
    status: str
    triggered_by: Optional[str] = None
    image_tag: Optional[str] = None
    promote_from: Optional[str] = None
    promote_to: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    stages: List[StageResponse] = []
    promotions: List[PromotionResponse] = []

    class Config:
        from_attributes = True

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True

class ManualDispatchRequest(BaseModel):
    """Promote an already published image from one environment to the next."""
    repository: str
    image_tag: str
    promote_from: str
    promote_to: str
    source_tag: Optional[str] = None
    ref: Optional[str] = None
    requested_by: Optional[str] = None

class ApprovalRequest(BaseModel):
    approver: str

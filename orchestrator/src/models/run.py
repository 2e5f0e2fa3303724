"""
Pipeline run, trigger, environment and artifact models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict
from datetime import datetime
from enum import Enum
from pathlib import Path
import uuid

from orchestrator.src.errors import InvalidTransition, InvalidTrigger
from orchestrator.src.models.stage import StageResult

ENVIRONMENT_ORDER = ("dev", "qa", "staging", "prod")

class TriggerKind(str, Enum):
    PULL_REQUEST_OPENED = "pull_request_opened"
    PULL_REQUEST_MERGED = "pull_request_merged"
    MANUAL_DISPATCH = "manual_dispatch"

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATUSES = {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}

ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
}

class PromotionPolicy(str, Enum):
    AUTO = "auto"
    APPROVAL = "approval"

class TagScheme(str, Enum):
    SHA = "sha"
    SEMVER = "semver"

class PromotionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMMITTED = "committed"
    UNCHANGED = "unchanged"
    FAILED = "failed"

class TriggerEvent(BaseModel):
    kind: TriggerKind
    repository: str
    branch: str
    commit_sha: str
    base_branch: Optional[str] = None
    author: Optional[str] = None
    clone_url: Optional[str] = None
    pull_request: Optional[int] = None
    # Manual dispatch inputs
    image_tag: Optional[str] = None
    source_tag: Optional[str] = None
    promote_from: Optional[str] = None
    promote_to: Optional[str] = None

class Environment(BaseModel):
    name: str
    registry: str
    repository: str
    manifest_path: str
    promotion: PromotionPolicy = PromotionPolicy.AUTO
    tag_scheme: TagScheme = TagScheme.SHA
    application: Optional[str] = None

    @property
    def requires_approval(self) -> bool:
        return self.promotion == PromotionPolicy.APPROVAL

class Artifact(BaseModel):
    registry: str
    host: str
    repository: str
    tag: str
    digest: Optional[str] = None
    manifest_digest: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.host}/{self.repository}:{self.tag}"

class PromotionRequest(BaseModel):
    id: str
    run_id: str
    environment: str
    image_reference: str
    manifest_path: str
    status: PromotionStatus = PromotionStatus.PENDING
    requested_by: Optional[str] = None
    approver: Optional[str] = None
    revision: Optional[str] = None
    created_at: datetime
    committed_at: Optional[datetime] = None

    @classmethod
    def create(cls, run_id: str, artifact: Artifact, environment: Environment,
               requested_by: Optional[str] = None) -> "PromotionRequest":
        return cls(
            id=str(uuid.uuid4()),
            run_id=run_id,
            environment=environment.name,
            image_reference=artifact.reference,
            manifest_path=environment.manifest_path,
            requested_by=requested_by,
            created_at=datetime.utcnow(),
        )

class PipelineRunState(BaseModel):
    run_id: str
    trigger: TriggerEvent
    status: RunStatus = RunStatus.PENDING
    results: List[StageResult] = []
    promotions: List[PromotionRequest] = []
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RunStatus.SUCCEEDED else 1

    def result(self, name: str) -> Optional[StageResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def transition(self, status: RunStatus):
        if status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"Run {self.run_id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        now = datetime.utcnow()
        if status == RunStatus.RUNNING:
            self.started_at = now
        elif status in TERMINAL_STATUSES:
            self.finished_at = now

    def record(self, result: StageResult):
        if self.is_terminal:
            raise InvalidTransition(f"Run {self.run_id} is {self.status.value}; results are frozen")
        self.results.append(result)

    def record_promotion(self, request: PromotionRequest):
        if self.is_terminal:
            raise InvalidTransition(f"Run {self.run_id} is {self.status.value}; promotions are frozen")
        self.promotions.append(request)

    def fail_with(self, message: str, kind: str):
        """Keep the first blocking error only."""
        if self.error is None:
            self.error = message
            self.error_kind = kind

class RunContext(BaseModel):
    """Mutable state shared by the stages of one run."""
    run_id: str
    trigger: TriggerEvent
    workspace: Path
    environments: Dict[str, Environment] = {}
    env: Dict[str, str] = {}
    artifacts: Dict[str, Artifact] = {}
    promotions: List[PromotionRequest] = []

    def merge_outputs(self, outputs: Dict[str, str]):
        for key, value in outputs.items():
            self.env[key.upper().replace("-", "_")] = value

    def environment(self, name: str) -> Environment:
        try:
            return self.environments[name]
        except KeyError:
            raise InvalidTrigger(f"Environment '{name}' is not defined for this pipeline")

"""
Stage definition and execution models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict
from datetime import datetime
from enum import Enum

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

class FailurePolicy(str, Enum):
    HARD = "hard"
    ADVISORY = "advisory"

class StageCategory(str, Enum):
    BUILD = "build"
    QUALITY = "quality"
    SECURITY = "security"
    PUBLISH = "publish"
    PROMOTE = "promote"
    GENERAL = "general"

class GateRule(BaseModel):
    """Numeric comparison applied to one stage output."""
    metric: str
    min: Optional[float] = None
    max: Optional[float] = None

class GatePolicy(BaseModel):
    failure_policy: FailurePolicy = FailurePolicy.HARD
    category: StageCategory = StageCategory.GENERAL
    rule: Optional[GateRule] = None
    bypass: bool = False

class Stage(BaseModel):
    name: str
    needs: List[str] = []
    image: Optional[str] = None
    commands: List[str] = []
    uses: Optional[str] = None
    params: Dict[str, str] = {}
    env: Dict[str, str] = {}
    timeout: int = 600
    policy: FailurePolicy = FailurePolicy.HARD
    category: StageCategory = StageCategory.GENERAL
    gate: Optional[GateRule] = None
    when: List[str] = []
    artifacts: List[str] = []
    bypass: bool = False

    @property
    def gate_policy(self) -> GatePolicy:
        return GatePolicy(
            failure_policy=self.policy,
            category=self.category,
            rule=self.gate,
            bypass=self.bypass,
        )

class StageResult(BaseModel):
    name: str
    status: StageStatus
    outputs: Dict[str, str] = {}
    artifacts: List[str] = []
    logs: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    advisory: bool = False
    bypassed: bool = False
    timed_out: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def satisfied(self) -> bool:
        """Whether dependents may start after this result."""
        if self.status == StageStatus.SUCCESS:
            return True
        return self.status == StageStatus.FAILURE and (self.advisory or self.bypassed)

    @classmethod
    def skipped(cls, name: str, reason: str) -> "StageResult":
        now = datetime.utcnow()
        return cls(name=name, status=StageStatus.SKIPPED, error=reason, finished_at=now)

class StageOutcome(BaseModel):
    """Raw outcome of running a stage's commands."""
    exit_code: int
    logs: str = ""
    timed_out: bool = False

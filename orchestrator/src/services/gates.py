"""
Gate evaluation - decides whether a stage result halts the run.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from orchestrator.src.errors import (
    PipelineError,
    BuildFailure,
    QualityGateFailure,
    SecurityFindingFailure,
    RegistryError,
)
from orchestrator.src.models.stage import (
    FailurePolicy,
    GatePolicy,
    GateRule,
    StageCategory,
    StageResult,
    StageStatus,
)

logger = logging.getLogger(__name__)

CATEGORY_ERRORS = {
    StageCategory.BUILD: BuildFailure,
    StageCategory.GENERAL: BuildFailure,
    StageCategory.QUALITY: QualityGateFailure,
    StageCategory.SECURITY: SecurityFindingFailure,
    StageCategory.PUBLISH: RegistryError,
    StageCategory.PROMOTE: PipelineError,
}

class GateDecision(str, Enum):
    CONTINUE = "continue"
    HALT = "halt"

@dataclass
class GateOutcome:
    decision: GateDecision
    result: StageResult
    error: Optional[PipelineError] = None

class GateEvaluator:
    def __init__(self, default_min_coverage: float = 85.0):
        self.default_min_coverage = default_min_coverage

    def check_rule(self, rule: GateRule, result: StageResult) -> Optional[str]:
        """Return a violation message, or None when the rule holds."""
        raw = result.outputs.get(rule.metric)
        if raw is None:
            return f"Stage '{result.name}' did not report metric '{rule.metric}'"
        try:
            value = float(str(raw).strip().rstrip("%"))
        except ValueError:
            return f"Metric '{rule.metric}' is not numeric: {raw!r}"

        minimum = rule.min
        if minimum is None and rule.max is None and rule.metric == "coverage":
            minimum = self.default_min_coverage

        if minimum is not None and value < minimum:
            return f"{rule.metric}={value:g} is below the required {minimum:g}"
        if rule.max is not None and value > rule.max:
            return f"{rule.metric}={value:g} exceeds the allowed {rule.max:g}"
        return None

    def decide(self, result: StageResult, policy: GatePolicy) -> GateOutcome:
        if result.status == StageStatus.SKIPPED:
            return GateOutcome(GateDecision.CONTINUE, result)

        if result.status == StageStatus.SUCCESS and policy.rule:
            violation = self.check_rule(policy.rule, result)
            if violation:
                result = result.model_copy(update={
                    "status": StageStatus.FAILURE,
                    "error": violation,
                    "error_kind": CATEGORY_ERRORS[policy.category].kind,
                })

        if result.status == StageStatus.SUCCESS:
            return GateOutcome(GateDecision.CONTINUE, result)

        error_cls = CATEGORY_ERRORS[policy.category]
        error_kind = result.error_kind or error_cls.kind
        error = error_cls(result.error or f"Stage '{result.name}' failed")
        error.kind = error_kind

        if result.timed_out:
            return GateOutcome(GateDecision.HALT, result.model_copy(update={"error_kind": error_kind}), error)

        if policy.failure_policy == FailurePolicy.ADVISORY:
            logger.info(f"Advisory stage '{result.name}' failed; continuing: {result.error}")
            return GateOutcome(
                GateDecision.CONTINUE,
                result.model_copy(update={"advisory": True, "error_kind": error_kind}),
            )

        if policy.bypass:
            logger.warning(
                f"Gate bypassed for stage '{result.name}' ({error_kind}): {result.error}"
            )
            return GateOutcome(
                GateDecision.CONTINUE,
                result.model_copy(update={"bypassed": True, "error_kind": error_kind}),
            )

        return GateOutcome(GateDecision.HALT, result.model_copy(update={"error_kind": error_kind}), error)

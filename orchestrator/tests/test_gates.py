"""Tests for gate evaluation."""

from orchestrator.src.models.stage import (
    FailurePolicy,
    GatePolicy,
    GateRule,
    StageCategory,
    StageResult,
    StageStatus,
)
from orchestrator.src.services.gates import GateDecision, GateEvaluator

def success(name="stage", **outputs):
    return StageResult(name=name, status=StageStatus.SUCCESS, outputs=outputs)

def failure(name="stage", error="exit 1", timed_out=False):
    return StageResult(name=name, status=StageStatus.FAILURE, error=error, timed_out=timed_out)

def test_success_continues():
    outcome = GateEvaluator().decide(success(), GatePolicy())
    assert outcome.decision == GateDecision.CONTINUE
    assert outcome.result.status == StageStatus.SUCCESS

def test_hard_failure_halts_with_category_kind():
    policy = GatePolicy(category=StageCategory.SECURITY)
    outcome = GateEvaluator().decide(failure(error="2 critical CVEs"), policy)

    assert outcome.decision == GateDecision.HALT
    assert outcome.result.error_kind == "security_finding_failure"
    assert outcome.error.message == "2 critical CVEs"

def test_coverage_below_threshold_fails_quality_gate():
    policy = GatePolicy(category=StageCategory.QUALITY, rule=GateRule(metric="coverage", min=85))
    outcome = GateEvaluator().decide(success("coverage", coverage="39"), policy)

    assert outcome.decision == GateDecision.HALT
    assert outcome.result.status == StageStatus.FAILURE
    assert outcome.result.error_kind == "quality_gate_failure"
    assert "below the required 85" in outcome.result.error

def test_coverage_uses_default_threshold():
    policy = GatePolicy(category=StageCategory.QUALITY, rule=GateRule(metric="coverage"))
    evaluator = GateEvaluator(default_min_coverage=80)

    assert evaluator.decide(success(coverage="81.5%"), policy).decision == GateDecision.CONTINUE
    assert evaluator.decide(success(coverage="79"), policy).decision == GateDecision.HALT

def test_missing_metric_fails():
    policy = GatePolicy(rule=GateRule(metric="coverage", min=85))
    outcome = GateEvaluator().decide(success(), policy)
    assert outcome.decision == GateDecision.HALT
    assert "did not report metric" in outcome.result.error

def test_max_rule():
    policy = GatePolicy(category=StageCategory.SECURITY, rule=GateRule(metric="critical", max=0))
    assert GateEvaluator().decide(success(critical="0"), policy).decision == GateDecision.CONTINUE
    assert GateEvaluator().decide(success(critical="3"), policy).decision == GateDecision.HALT

def test_advisory_failure_continues():
    policy = GatePolicy(failure_policy=FailurePolicy.ADVISORY, category=StageCategory.SECURITY)
    outcome = GateEvaluator().decide(failure(), policy)

    assert outcome.decision == GateDecision.CONTINUE
    assert outcome.result.advisory
    assert outcome.result.satisfied

def test_bypass_continues_and_is_recorded(caplog):
    policy = GatePolicy(category=StageCategory.QUALITY, bypass=True)
    outcome = GateEvaluator().decide(failure("lint"), policy)

    assert outcome.decision == GateDecision.CONTINUE
    assert outcome.result.bypassed
    assert "Gate bypassed for stage 'lint'" in caplog.text

def test_timeout_halts_even_when_advisory():
    policy = GatePolicy(failure_policy=FailurePolicy.ADVISORY)
    outcome = GateEvaluator().decide(failure(timed_out=True), policy)
    assert outcome.decision == GateDecision.HALT

def test_skipped_continues():
    outcome = GateEvaluator().decide(StageResult.skipped("publish", "not eligible"), GatePolicy())
    assert outcome.decision == GateDecision.CONTINUE
    assert not outcome.result.satisfied

"""
Pipeline orchestrator - runs a run's stage DAG, applies gates, and drives the
run through Pending -> Running -> {Succeeded, Failed, Cancelled}.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from orchestrator.src.errors import InvalidTrigger, PipelineError
from orchestrator.src.models.run import (
    ENVIRONMENT_ORDER,
    Environment,
    PipelineRunState,
    PromotionRequest,
    PromotionStatus,
    RunContext,
    RunStatus,
    TriggerEvent,
    TriggerKind,
)
from orchestrator.src.models.stage import Stage, StageResult, StageStatus
from orchestrator.src.services.actions import ENVIRONMENT_BOUND_ACTIONS
from orchestrator.src.services.commit_status import CommitStatusReporter
from orchestrator.src.services.executor import StageExecutor
from orchestrator.src.services.gates import GateDecision, GateEvaluator
from orchestrator.src.services.notifier import SlackNotifier
from orchestrator.src.services.signals import CancellationToken

logger = logging.getLogger(__name__)

CANCELLED_KIND = "cancelled"

class RunReporter:
    """Receives run progress. The base class ignores everything."""

    async def run_updated(self, run: PipelineRunState):
        pass

    async def stage_started(self, run: PipelineRunState, stage_name: str):
        pass

    async def stage_finished(self, run: PipelineRunState, result: StageResult):
        pass

    async def promotion_recorded(self, run: PipelineRunState, request: PromotionRequest):
        pass

def eligible_environments(
    trigger: TriggerEvent,
    integration_branch: str = "develop",
    release_prefix: str = "release/",
) -> Set[str]:
    """Environments a trigger may promote into."""
    if trigger.kind == TriggerKind.MANUAL_DISPATCH:
        return {trigger.promote_to} if trigger.promote_to else set()

    base = trigger.base_branch or trigger.branch
    if base == integration_branch:
        return {"dev", "qa"}
    if base.startswith(release_prefix):
        return {"staging"}
    return set()

def validate_dispatch(trigger: TriggerEvent, environments: Dict[str, Environment]):
    if not trigger.image_tag:
        raise InvalidTrigger("Manual dispatch requires an image_tag")
    for name in (trigger.promote_from, trigger.promote_to):
        if name not in environments:
            raise InvalidTrigger(f"Unknown environment '{name}'")
    if ENVIRONMENT_ORDER.index(trigger.promote_from) >= ENVIRONMENT_ORDER.index(trigger.promote_to):
        raise InvalidTrigger(
            f"Cannot promote from '{trigger.promote_from}' to '{trigger.promote_to}'"
        )

def dependency_order(stages: List[Stage]) -> List[Stage]:
    """Topological order of the stage DAG, stable with respect to declaration order."""
    by_name: Dict[str, Stage] = {}
    for stage in stages:
        if stage.name in by_name:
            raise InvalidTrigger(f"Duplicate stage name '{stage.name}'")
        by_name[stage.name] = stage

    for stage in stages:
        for need in stage.needs:
            if need not in by_name:
                raise InvalidTrigger(f"Stage '{stage.name}' needs unknown stage '{need}'")

    ordered: List[Stage] = []
    placed: Set[str] = set()
    remaining = list(stages)
    while remaining:
        ready = [s for s in remaining if all(n in placed for n in s.needs)]
        if not ready:
            cycle = ", ".join(s.name for s in remaining)
            raise InvalidTrigger(f"Dependency cycle between stages: {cycle}")
        for stage in ready:
            ordered.append(stage)
            placed.add(stage.name)
            remaining.remove(stage)
    return ordered

def stage_environment(stage: Stage, trigger: TriggerEvent) -> Optional[str]:
    name = stage.params.get("environment")
    if name:
        return name
    if stage.uses in ENVIRONMENT_BOUND_ACTIONS and trigger.kind == TriggerKind.MANUAL_DISPATCH:
        return trigger.promote_to
    return None

def skip_reason(stage: Stage, trigger: TriggerEvent, eligible: Set[str]) -> Optional[str]:
    """Why a stage does not apply to this trigger, or None when it does."""
    if stage.when and trigger.kind.value not in stage.when:
        return f"Stage '{stage.name}' does not run on {trigger.kind.value}"

    environment = stage_environment(stage, trigger)
    if environment is None and stage.uses in ENVIRONMENT_BOUND_ACTIONS:
        return f"Stage '{stage.name}' has no target environment"
    if environment is not None and environment not in eligible:
        return f"Environment '{environment}' is not eligible for this trigger"
    return None

class PipelineOrchestrator:
    def __init__(
        self,
        executor: StageExecutor,
        gates: GateEvaluator,
        reporter: Optional[RunReporter] = None,
        notifier: Optional[SlackNotifier] = None,
        commit_status: Optional[CommitStatusReporter] = None,
        integration_branch: str = "develop",
        release_prefix: str = "release/",
    ):
        self.executor = executor
        self.gates = gates
        self.reporter = reporter or RunReporter()
        self.notifier = notifier
        self.commit_status = commit_status
        self.integration_branch = integration_branch
        self.release_prefix = release_prefix

    async def run(
        self,
        run: PipelineRunState,
        stages: List[Stage],
        context: RunContext,
        cancel: Optional[CancellationToken] = None,
    ) -> PipelineRunState:
        cancel = cancel or CancellationToken()
        trigger = context.trigger

        try:
            ordered = dependency_order(stages)
            if trigger.kind == TriggerKind.MANUAL_DISPATCH:
                validate_dispatch(trigger, context.environments)
        except InvalidTrigger as e:
            return await self.abort(run, e)

        eligible = eligible_environments(trigger, self.integration_branch, self.release_prefix)
        logger.info(
            f"Run {run.run_id} ({trigger.kind.value} on {trigger.branch}): "
            f"{len(ordered)} stages, eligible environments {sorted(eligible) or 'none'}"
        )
        if self.commit_status:
            await self.commit_status.report(run)

        by_name = {stage.name: stage for stage in ordered}
        pending: List[str] = []
        for stage in ordered:
            reason = skip_reason(stage, trigger, eligible)
            if reason:
                await self._record(run, StageResult.skipped(stage.name, reason))
            else:
                pending.append(stage.name)

        running: Dict[asyncio.Task, str] = {}
        halted_by: Optional[str] = None
        cancel_waiter = asyncio.create_task(cancel.wait())

        try:
            while pending or running:
                if not cancel.cancelled and halted_by is None:
                    await self._schedule(run, context, by_name, pending, running)

                if not running:
                    break

                done, _ = await asyncio.wait(
                    set(running) | {cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if cancel_waiter in done and running:
                    logger.info(f"Run {run.run_id} cancelled; stopping {len(running)} running stage(s)")
                    for task in running:
                        task.cancel()
                    await asyncio.gather(*running, return_exceptions=True)
                    done = set(running)

                for task in [t for t in done if t in running]:
                    name = running.pop(task)
                    halted = await self._complete(run, context, by_name[name], task)
                    if halted and halted_by is None:
                        halted_by = name
        finally:
            cancel_waiter.cancel()

        if halted_by is not None:
            reason = f"Run halted after stage '{halted_by}' failed"
        elif cancel.cancelled:
            reason = "Run was cancelled"
        else:
            reason = "Upstream stage did not succeed"
        for name in pending:
            await self._record(run, StageResult.skipped(name, reason))

        await self._finish(run, self._final_status(run, halted_by, cancel))
        return run

    async def abort(self, run: PipelineRunState, error: PipelineError) -> PipelineRunState:
        """Fail a run that cannot start."""
        logger.error(f"Run {run.run_id} rejected ({error.kind}): {error}")
        run.fail_with(error.message, error.kind)
        await self._finish(run, RunStatus.FAILED)
        return run

    async def _schedule(
        self,
        run: PipelineRunState,
        context: RunContext,
        by_name: Dict[str, Stage],
        pending: List[str],
        running: Dict[asyncio.Task, str],
    ):
        """Start every pending stage whose predecessors are all satisfied."""
        progressed = True
        while progressed:
            progressed = False
            for name in list(pending):
                stage = by_name[name]
                predecessors = [run.result(need) for need in stage.needs]

                blocked = next(
                    (p for p in predecessors if p is not None and not p.satisfied), None
                )
                if blocked is not None:
                    pending.remove(name)
                    await self._record(run, StageResult.skipped(
                        name, f"Upstream stage '{blocked.name}' did not succeed"
                    ))
                    progressed = True
                    continue

                if all(p is not None for p in predecessors):
                    pending.remove(name)
                    if run.status == RunStatus.PENDING:
                        run.transition(RunStatus.RUNNING)
                        await self.reporter.run_updated(run)
                    await self.reporter.stage_started(run, name)
                    task = asyncio.create_task(self.executor.execute(stage, context))
                    running[task] = name

    async def _complete(self, run: PipelineRunState, context: RunContext, stage: Stage, task: asyncio.Task) -> bool:
        """Record a finished stage. Returns True if its gate halts the run."""
        try:
            result = task.result()
        except asyncio.CancelledError:
            result = StageResult(
                name=stage.name,
                status=StageStatus.FAILURE,
                error=f"Stage '{stage.name}' was cancelled while running",
                error_kind=CANCELLED_KIND,
                finished_at=datetime.utcnow(),
            )
            await self._record(run, result)
            self._drain_promotions(run, context)
            return False

        outcome = self.gates.decide(result, stage.gate_policy)
        result = outcome.result
        await self._record(run, result)

        if result.outputs and result.satisfied:
            context.merge_outputs(result.outputs)
        for request in self._drain_promotions(run, context):
            await self.reporter.promotion_recorded(run, request)

        if outcome.decision == GateDecision.HALT:
            error = outcome.error or PipelineError(result.error or f"Stage '{stage.name}' failed")
            logger.error(f"Run {run.run_id} halted by stage '{stage.name}' ({result.error_kind}): {result.error}")
            run.fail_with(error.message, result.error_kind or error.kind)
            return True
        return False

    def _drain_promotions(self, run: PipelineRunState, context: RunContext) -> List[PromotionRequest]:
        drained = list(context.promotions)
        context.promotions.clear()
        for request in drained:
            run.record_promotion(request)
        return drained

    def _final_status(self, run: PipelineRunState, halted_by: Optional[str], cancel: CancellationToken) -> RunStatus:
        if halted_by is not None:
            return RunStatus.FAILED
        if cancel.cancelled:
            return RunStatus.CANCELLED

        failed_promotion = next((p for p in run.promotions if p.status == PromotionStatus.FAILED), None)
        if failed_promotion is not None:
            run.fail_with(f"Promotion to '{failed_promotion.environment}' did not commit", "promotion_failed")
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    async def _record(self, run: PipelineRunState, result: StageResult):
        run.record(result)
        if result.status == StageStatus.SKIPPED:
            logger.info(f"[{run.run_id}] Stage '{result.name}' skipped: {result.error}")
        else:
            logger.info(f"[{run.run_id}] Stage '{result.name}' finished: {result.status.value}")
        await self.reporter.stage_finished(run, result)

    async def _finish(self, run: PipelineRunState, status: RunStatus):
        run.transition(status)
        logger.info(f"Run {run.run_id} finished with status: {status.value}")
        await self.reporter.run_updated(run)
        if self.commit_status:
            await self.commit_status.report(run)
        if self.notifier:
            await self.notifier.notify(run)

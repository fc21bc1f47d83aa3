"""Pipeline controller driving runs through their stages.

Receives normalized webhook events and drives matching runs through the
stage sequence:
source → test → deploy (pull-request validation runs stop after test).

A run advances to the next stage only when the previous stage succeeded; a
failed stage halts the run in the failed state. Nothing is retried: a new
triggering event is needed to try again. Every transition is persisted
through the state machine, together with per-stage status, artifact
references, timestamps and failure detail, so an abandoned run can be
diagnosed from its last persisted state.

Runs execute concurrently as independent asyncio tasks. The only
cross-run coordination in this module is the per-stack deploy lock: a
deploy that finds another run deploying the same stack logs a warning,
emits DEPLOY_QUEUED and waits its turn.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.definition.models import (
    ActionCategory,
    PipelineDefinition,
    StageDefinition,
)
from deploy_pipeline.errors import PipelineError, StageTimeoutError
from deploy_pipeline.events.emitter import EventEmitter
from deploy_pipeline.events.models import EventType, PipelineEvent
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.executor import StageExecutor
from deploy_pipeline.stages.models import RunContext, StageResult
from deploy_pipeline.state.machine import RunNotFoundError, RunStateMachine
from deploy_pipeline.state.models import (
    RUNNING_STATES,
    STAGE_STATES,
    FailureDetail,
    RunRecord,
    RunState,
    RunTrigger,
    StageRecord,
    StageStatus,
)
from deploy_pipeline.triggers.matcher import TriggerMatcher
from deploy_pipeline.triggers.models import EntryPoint
from deploy_pipeline.webhook.models import WebhookEvent

logger = logging.getLogger(__name__)

# Stage that runs next from each resting state
NEXT_CATEGORY: Dict[RunState, ActionCategory] = {
    RunState.PENDING: ActionCategory.SOURCE,
    RunState.SOURCE_DONE: ActionCategory.TEST,
    RunState.TEST_DONE: ActionCategory.DEPLOY,
}

# Categories each entry point executes
ENTRY_POINT_CATEGORIES: Dict[EntryPoint, tuple] = {
    EntryPoint.SOURCE: (
        ActionCategory.SOURCE,
        ActionCategory.TEST,
        ActionCategory.DEPLOY,
    ),
    EntryPoint.PULL_REQUEST_VALIDATION: (
        ActionCategory.SOURCE,
        ActionCategory.TEST,
    ),
}


class PipelineController:
    """Owns the stage graph and drives runs through it.

    Accepts all dependencies via constructor injection. Roles are bound
    once per definition and reused by every run.

    Attributes:
        definition: The pipeline definition, immutable for the life of
            the controller.
        state_machine: Persists run transitions.
        executor: Executes individual stages.
        roles: Bound role per stage name.
        matcher: Decides which events start runs.
        event_emitter: Emits run events for observability.
        repository_owner: Owner of the source repository.
        repository_name: Name of the source repository.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        state_machine: RunStateMachine,
        executor: StageExecutor,
        roles: Mapping[str, Role],
        matcher: TriggerMatcher,
        event_emitter: EventEmitter,
        repository_owner: str,
        repository_name: str,
    ):
        missing = [s.name for s in definition.stages if s.name not in roles]
        if missing:
            raise ValueError(f"No role bound for stages: {', '.join(missing)}")

        self.definition = definition
        self.state_machine = state_machine
        self.executor = executor
        self.roles = dict(roles)
        self.matcher = matcher
        self.event_emitter = event_emitter
        self.repository_owner = repository_owner
        self.repository_name = repository_name

        self._tasks: Dict[int, asyncio.Task] = {}
        self._cancel_reasons: Dict[int, str] = {}
        self._stack_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def handle_event(self, event: WebhookEvent) -> Optional[RunRecord]:
        """Start a run for an event if it matches a trigger filter.

        Args:
            event: Normalized (signature-verified) webhook event.

        Returns:
            The created run, or None when the event was discarded.
        """
        match = self.matcher.match(event)
        if not match.matched:
            await self._safe_emit(
                EventType.TRIGGER_REJECTED,
                details={
                    "reason": "no_match",
                    "event_type": event.event_type.value,
                    "ref": event.ref,
                    "base_ref": event.base_ref,
                },
            )
            return None

        run = await self.start_run(match.entry_point, RunTrigger.from_event(event))
        self.launch(run.run_id)
        return run

    def stages_for(self, entry_point: EntryPoint) -> List[StageDefinition]:
        """Stages a run entering at entry_point executes, in order."""
        categories = ENTRY_POINT_CATEGORIES[entry_point]
        return [s for s in self.definition.stages if s.category in categories]

    async def start_run(self, entry_point: EntryPoint, trigger: RunTrigger) -> RunRecord:
        """Create a run in the pending state.

        The run is persisted but not executed; call launch() or
        execute_run() to drive it.
        """
        run = await self.state_machine.create(
            self.definition.name,
            entry_point,
            trigger,
            [(s.name, s.category) for s in self.stages_for(entry_point)],
        )
        await self._safe_emit(
            EventType.STATE_TRANSITION,
            run.run_id,
            {"from_state": None, "to_state": RunState.PENDING.value},
        )
        return run

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def launch(self, run_id: int) -> asyncio.Task:
        """Run execute_run as a background task tracked for cancellation."""
        task = asyncio.create_task(self.execute_run(run_id), name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        return task

    def is_active(self, run_id: int) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    async def execute_run(self, run_id: int) -> RunRecord:
        """Advance a run until it reaches a terminal state.

        Returns:
            The run in its final persisted state.

        Raises:
            asyncio.CancelledError: After the run has been recorded as
                cancelled.
        """
        version = None
        try:
            while True:
                run = await self.advance(run_id)
                if (
                    run.is_terminal
                    or run.current_state in RUNNING_STATES
                    or run.version == version
                ):
                    return run
                version = run.version
        except asyncio.CancelledError:
            await self._record_cancelled(run_id)
            raise
        except Exception as exc:
            return await self._fail_unexpected(run_id, exc)

    async def advance(self, run_id: int) -> RunRecord:
        """Perform exactly one step of a run.

        From a resting state this executes the next stage to completion
        (or failure). A run whose entry point has no further stage is
        completed. Terminal runs, and runs whose stage is still executing
        elsewhere, are returned unchanged.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        run = await self.state_machine.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        if run.is_terminal:
            logger.debug(
                "Run already terminal",
                extra={"run_id": run_id, "state": run.current_state.value},
            )
            return run

        if self.is_active(run_id) and self._tasks[run_id] is not asyncio.current_task():
            logger.debug("Run is executing in another task", extra={"run_id": run_id})
            return run

        if run.current_state in RUNNING_STATES:
            logger.warning(
                "Run abandoned mid-stage; a new event is required",
                extra={"run_id": run_id, "state": run.current_state.value},
            )
            return run

        category = NEXT_CATEGORY[run.current_state]
        if category not in ENTRY_POINT_CATEGORIES[run.entry_point]:
            return await self._complete(run)

        return await self._run_stage(run, self.definition.stage(category))

    async def _run_stage(self, run: RunRecord, stage: StageDefinition) -> RunRecord:
        """Execute one stage and record its outcome."""
        running_state, done_state = STAGE_STATES[stage.category]

        record = run.stages[stage.name].model_copy(
            update={
                "status": StageStatus.IN_PROGRESS,
                "started_at": datetime.now(timezone.utc),
            }
        )
        run = await self._transition(
            run, running_state, {"stage": stage.name}, stage=record
        )

        inputs = {
            name: run.artifacts[name]
            for name in stage.input_artifacts
            if name in run.artifacts
        }
        context = RunContext(
            run_id=run.run_id,
            pipeline_name=run.pipeline_name,
            entry_point=run.entry_point,
            trigger=run.trigger,
            repository_owner=self.repository_owner,
            repository_name=self.repository_name,
        )
        role = self.roles[stage.name]

        if stage.category == ActionCategory.DEPLOY:
            result = await self._deploy(stage, inputs, role, context)
        else:
            result = await self.executor.execute(stage, inputs, role, context)

        record = record.model_copy(
            update={
                "status": StageStatus.SUCCEEDED if result.succeeded else StageStatus.FAILED,
                "ended_at": datetime.now(timezone.utc),
                "output_artifacts": result.outputs,
                "log_excerpt": result.log_excerpt,
            }
        )

        if not result.succeeded:
            return await self._fail(run, stage, record, result)

        run = await self._transition(
            run,
            done_state,
            {"stage": stage.name, "artifacts": [ref.label for ref in result.outputs]},
            stage=record,
            artifacts=result.outputs,
        )
        if run.current_state == RunState.SUCCEEDED:
            await self._emit_completion(run)
        return run

    async def _deploy(
        self,
        stage: StageDefinition,
        inputs: Mapping[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> StageResult:
        """Execute the deploy stage holding the lock of every target stack."""
        stack_names = sorted(
            {a.configuration["StackName"] for a in stage.actions}
        )
        locks = [self._stack_locks.setdefault(n, asyncio.Lock()) for n in stack_names]

        busy = [n for n, lock in zip(stack_names, locks) if lock.locked()]
        if busy:
            logger.warning(
                "Deployment in flight for target stack; queueing",
                extra={"run_id": context.run_id, "stacks": busy},
            )
            await self._safe_emit(
                EventType.DEPLOY_QUEUED, context.run_id, {"stacks": busy}
            )

        async with AsyncExitStack() as stack:
            for lock in locks:
                await stack.enter_async_context(lock)
            return await self.executor.execute(stage, inputs, role, context)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel(self, run_id: int, reason: str = "Cancelled by operator") -> RunRecord:
        """Abort a run.

        An executing run has its task cancelled; the in-flight stage is
        signalled to stop and the run is recorded as cancelled. A run that
        is not executing moves straight to cancelled. Terminal runs are
        returned unchanged.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            logger.info("Cancelling run in flight", extra={"run_id": run_id, "reason": reason})
            self._cancel_reasons[run_id] = reason
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            # A task cancelled before its first step never records itself
            return await self._record_cancelled(run_id)

        run = await self.state_machine.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.is_terminal:
            return run

        self._cancel_reasons[run_id] = reason
        return await self._record_cancelled(run_id)

    async def _record_cancelled(self, run_id: int) -> RunRecord:
        reason = self._cancel_reasons.pop(run_id, "Cancelled")
        run = await self.state_machine.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.is_terminal:
            return run

        stage_name = None
        stage_record = None
        for record in run.stages.values():
            if record.status == StageStatus.IN_PROGRESS:
                stage_name = record.name
                stage_record = record.model_copy(
                    update={
                        "status": StageStatus.CANCELLED,
                        "ended_at": datetime.now(timezone.utc),
                    }
                )

        run = await self._transition(
            run,
            RunState.CANCELLED,
            {"stage": stage_name, "reason": reason},
            stage=stage_record,
            failure=FailureDetail(
                error_type="Cancelled", message=reason, stage=stage_name
            ),
        )
        logger.info("Run cancelled", extra={"run_id": run_id, "stage": stage_name})
        await self._safe_emit(
            EventType.CANCELLED, run_id, {"stage": stage_name, "reason": reason}
        )
        return run

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        run: RunRecord,
        to_state: RunState,
        details: Optional[dict] = None,
        **changes,
    ) -> RunRecord:
        """Transition state and emit a state-transition event."""
        updated = await self.state_machine.transition(
            run.run_id, to_state, details, **changes
        )
        await self._safe_emit(
            EventType.STATE_TRANSITION,
            run.run_id,
            {
                "from_state": run.current_state.value,
                "to_state": to_state.value,
                **(details or {}),
            },
        )
        return updated

    async def _complete(self, run: RunRecord) -> RunRecord:
        run = await self._transition(run, RunState.SUCCEEDED, {"entry_point": run.entry_point.value})
        await self._emit_completion(run)
        return run

    async def _fail(
        self,
        run: RunRecord,
        stage: StageDefinition,
        record: StageRecord,
        result: StageResult,
    ) -> RunRecord:
        """Transition to FAILED and emit an error (or timeout) event."""
        error = result.error or PipelineError(
            f"Stage {stage.name} failed", stage=stage.name
        )
        failure = FailureDetail.from_error(error)

        logger.error(
            "Pipeline stage failed",
            extra={
                "run_id": run.run_id,
                "stage": stage.name,
                "error_type": failure.error_type,
                "error": failure.message,
            },
        )

        run = await self._transition(
            run, RunState.FAILED, {"stage": stage.name}, stage=record, failure=failure
        )

        event_type = (
            EventType.TIMEOUT if isinstance(error, StageTimeoutError) else EventType.ERROR
        )
        await self._safe_emit(
            event_type,
            run.run_id,
            {
                "stage": failure.stage,
                "action": failure.action,
                "provider": failure.provider,
                "error_type": failure.error_type,
                "error_message": failure.message,
            },
        )
        return run

    async def _fail_unexpected(self, run_id: int, exc: Exception) -> RunRecord:
        """Record a run as failed after an error outside any stage."""
        logger.exception("Pipeline run crashed", extra={"run_id": run_id})

        run = await self.state_machine.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id) from exc
        if run.is_terminal or run.current_state not in RUNNING_STATES:
            return run

        failure = FailureDetail(error_type=type(exc).__name__, message=str(exc))
        try:
            run = await self._transition(run, RunState.FAILED, failure=failure)
        except Exception:
            logger.exception(
                "Failed to transition to FAILED state",
                extra={"run_id": run_id},
            )
            return run

        await self._safe_emit(
            EventType.ERROR,
            run_id,
            {"error_type": failure.error_type, "error_message": failure.message},
        )
        return run

    async def _emit_completion(self, run: RunRecord) -> None:
        """Emit a COMPLETION event."""
        ended = run.ended_at or datetime.now(timezone.utc)
        logger.info(
            "Pipeline run completed",
            extra={"run_id": run.run_id, "entry_point": run.entry_point.value},
        )
        await self._safe_emit(
            EventType.COMPLETION,
            run.run_id,
            {
                "entry_point": run.entry_point.value,
                "duration_seconds": (ended - run.started_at).total_seconds(),
                "artifacts": [ref.label for ref in run.artifacts.values()],
            },
        )

    async def _safe_emit(
        self,
        event_type: EventType,
        run_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the run."""
        event = PipelineEvent(
            event_type=event_type,
            pipeline=self.definition.name,
            run_id=run_id,
            details=details or {},
        )
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={"event_type": event_type.value, "run_id": run_id},
            )

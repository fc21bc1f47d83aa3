"""Run state machine implementation.

This module implements the RunStateMachine class that moves runs through
controller states with validation, timestamp recording and failure detail
storage. Persistence goes through the RunRepository protocol, implemented
in repository.py.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.definition.models import ActionCategory
from deploy_pipeline.state.models import (
    FailureDetail,
    RunRecord,
    RunState,
    RunTrigger,
    StageRecord,
    StateTransition,
    is_terminal_state,
    is_valid_transition,
)
from deploy_pipeline.triggers.models import EntryPoint


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_state: RunState,
        to_state: RunState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Invalid transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when a run does not exist in the repository."""

    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        run_id: The run with the conflict.
        expected_version: The version that was expected.
        actual_version: The actual version in storage, if known.
    """

    def __init__(
        self,
        run_id: int,
        expected_version: int,
        actual_version: Optional[int] = None,
    ):
        self.run_id = run_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = f"Version conflict for run {run_id}: expected {expected_version}"
        if actual_version is not None:
            message += f", found {actual_version}"
        super().__init__(message)


@runtime_checkable
class RunRepository(Protocol):
    """Protocol defining the interface for run persistence.

    The repository is responsible for:
    - Allocating monotonically increasing run identifiers
    - Persisting run records
    - Retrieving runs by id or state
    - Implementing optimistic locking via the version field
    """

    async def next_run_id(self) -> int:
        """Allocate the next run identifier."""
        ...

    async def save(self, run: RunRecord) -> None:
        """Persist a newly created run."""
        ...

    async def get(self, run_id: int) -> Optional[RunRecord]:
        """Get a run by id, or None if it does not exist."""
        ...

    async def list_by_state(self, state: RunState) -> List[RunRecord]:
        """List runs currently in the given state."""
        ...

    async def update_with_version(self, run: RunRecord) -> bool:
        """Update a run only if the stored version is run.version - 1.

        Returns:
            True if update succeeded, False on version conflict.
        """
        ...


class RunStateMachine:
    """State machine for pipeline runs.

    The state machine enforces the following invariants:
    - Only valid transitions (as defined in VALID_TRANSITIONS) are allowed
    - Every transition is recorded with a timestamp in state_history
    - Terminal states (succeeded, failed, cancelled) are never left
    - Transitions to failed or cancelled carry a FailureDetail
    - Each update increments the version for optimistic locking

    Attributes:
        repository: The run repository for persistence.

    Example:
        >>> machine = RunStateMachine(InMemoryRunRepository())
        >>> run = await machine.create("infra", EntryPoint.SOURCE, trigger, stages)
        >>> run = await machine.transition(run.run_id, RunState.SOURCE_RUNNING)
    """

    def __init__(self, repository: RunRepository):
        self.repository = repository

    async def create(
        self,
        pipeline_name: str,
        entry_point: EntryPoint,
        trigger: RunTrigger,
        stages: Sequence[Tuple[str, ActionCategory]],
    ) -> RunRecord:
        """Create a new run in the PENDING state and persist it.

        Args:
            pipeline_name: Name of the pipeline definition.
            entry_point: Entry point the trigger matched.
            trigger: The triggering event.
            stages: (stage name, category) pairs the run will execute.

        Returns:
            The newly created run.
        """
        if not pipeline_name:
            raise ValueError("pipeline_name cannot be empty")

        run_id = await self.repository.next_run_id()
        now = datetime.now(timezone.utc)

        run = RunRecord(
            run_id=run_id,
            pipeline_name=pipeline_name,
            entry_point=entry_point,
            trigger=trigger,
            current_state=RunState.PENDING,
            stages={
                name: StageRecord(name=name, category=category)
                for name, category in stages
            },
            started_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating pipeline run",
            extra={
                "run_id": run_id,
                "pipeline": pipeline_name,
                "entry_point": entry_point.value,
                "ref": trigger.ref,
            },
        )

        await self.repository.save(run)
        return run

    async def transition(
        self,
        run_id: int,
        to_state: RunState,
        details: Optional[Dict[str, Any]] = None,
        stage: Optional[StageRecord] = None,
        artifacts: Optional[Sequence[ArtifactRef]] = None,
        failure: Optional[FailureDetail] = None,
    ) -> RunRecord:
        """Move a run to a new state, persisting stage and artifact updates.

        Args:
            run_id: The run identifier.
            to_state: The target state.
            details: Optional metadata recorded on the transition.
            stage: Updated stage record to store alongside the transition.
            artifacts: Artifact references produced by the finishing stage.
            failure: Failure detail; required for failed and cancelled.

        Returns:
            The updated run.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            InvalidTransitionError: If the transition is not valid.
            VersionConflictError: If a concurrent update occurred.
        """
        details = details or {}

        run = await self.repository.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        from_state = run.current_state
        if not is_valid_transition(from_state, to_state):
            logger.warning(
                "Invalid run transition attempted",
                extra={
                    "run_id": run_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )
            raise InvalidTransitionError(from_state, to_state)

        if to_state in (RunState.FAILED, RunState.CANCELLED) and failure is None:
            logger.warning(
                "Terminal failure transition without detail",
                extra={"run_id": run_id, "to_state": to_state.value},
            )
            failure = FailureDetail(
                error_type="Unknown",
                message="Unknown error (no details provided)",
            )

        now = datetime.now(timezone.utc)
        transition = StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=now,
            details=details,
        )

        stages = dict(run.stages)
        if stage is not None:
            stages[stage.name] = stage

        run_artifacts = dict(run.artifacts)
        for ref in artifacts or []:
            run_artifacts[ref.name] = ref

        updated = run.model_copy(
            update={
                "current_state": to_state,
                "stages": stages,
                "artifacts": run_artifacts,
                "state_history": run.state_history + [transition],
                "failure": failure if failure is not None else run.failure,
                "ended_at": now if is_terminal_state(to_state) else run.ended_at,
                "updated_at": now,
                "version": run.version + 1,
            }
        )

        logger.info(
            "Transitioning pipeline run",
            extra={
                "run_id": run_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "version": updated.version,
            },
        )

        if not await self.repository.update_with_version(updated):
            raise VersionConflictError(run_id, run.version)

        return updated

    async def get(self, run_id: int) -> Optional[RunRecord]:
        return await self.repository.get(run_id)

    async def list_by_state(self, state: RunState) -> List[RunRecord]:
        """List all runs in a given state.

        Useful for monitoring and for finding runs abandoned mid-stage after
        a crash.
        """
        return await self.repository.list_by_state(state)

"""Run repositories.

Two implementations of the RunRepository protocol:
- InMemoryRunRepository: process-local, used when no database is configured
- PostgresRunRepository: asyncpg with connection pooling, atomic
  transactions and optimistic locking via the version field

The Postgres schema is migrations/001_pipeline_runs.sql.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.state.models import (
    FailureDetail,
    RunRecord,
    RunState,
    RunTrigger,
    StageRecord,
    StateTransition,
)
from deploy_pipeline.triggers.models import EntryPoint


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class InMemoryRunRepository:
    """Process-local run storage.

    Records are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self._runs: Dict[int, RunRecord] = {}
        self._next_id = 0
        self._lock = asyncio.Lock()

    async def next_run_id(self) -> int:
        async with self._lock:
            self._next_id += 1
            return self._next_id

    async def save(self, run: RunRecord) -> None:
        async with self._lock:
            if run.run_id in self._runs:
                raise DatabaseError(f"Run already exists: {run.run_id}")
            self._runs[run.run_id] = run.model_copy(deep=True)

    async def get(self, run_id: int) -> Optional[RunRecord]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list_by_state(self, state: RunState) -> List[RunRecord]:
        return [
            run.model_copy(deep=True)
            for run in sorted(self._runs.values(), key=lambda r: r.run_id)
            if run.current_state == state
        ]

    async def update_with_version(self, run: RunRecord) -> bool:
        async with self._lock:
            stored = self._runs.get(run.run_id)
            if stored is None or stored.version != run.version - 1:
                return False
            self._runs[run.run_id] = run.model_copy(deep=True)
            return True

    async def health_check(self) -> bool:
        return True


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresRunRepository:
    """PostgreSQL implementation of the RunRepository protocol.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresRunRepository("postgresql://...") as repo:
        ...     run = await repo.get(42)
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresRunRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    def _row_values(run: RunRecord) -> List[Any]:
        return [
            run.current_state.value,
            json.dumps(
                {name: stage.model_dump(mode="json") for name, stage in run.stages.items()}
            ),
            json.dumps(
                {name: ref.model_dump(mode="json") for name, ref in run.artifacts.items()}
            ),
            json.dumps(run.failure.model_dump(mode="json")) if run.failure else None,
            run.ended_at,
            run.updated_at,
            run.version,
        ]

    async def _insert_transitions(
        self,
        conn: asyncpg.Connection,
        run_id: int,
        transitions: List[StateTransition],
    ) -> None:
        for transition in transitions:
            await conn.execute(
                """
                INSERT INTO run_transitions (
                    run_id,
                    from_state,
                    to_state,
                    timestamp,
                    details
                ) VALUES ($1, $2, $3, $4, $5)
                """,
                run_id,
                transition.from_state.value,
                transition.to_state.value,
                transition.timestamp,
                json.dumps(transition.details, default=str) if transition.details else None,
            )

    async def next_run_id(self) -> int:
        try:
            async with self.pool.acquire() as conn:
                return int(await conn.fetchval("SELECT nextval('pipeline_run_ids')"))
        except asyncpg.PostgresError as e:
            raise DatabaseError(
                f"Failed to allocate run id: {e}", original_error=e
            ) from e

    async def save(self, run: RunRecord) -> None:
        """Insert a newly created run.

        Raises:
            DatabaseError: If the run exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO pipeline_runs (
                        run_id,
                        pipeline_name,
                        entry_point,
                        trigger,
                        started_at,
                        current_state,
                        stages,
                        artifacts,
                        failure,
                        ended_at,
                        updated_at,
                        version
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    run.run_id,
                    run.pipeline_name,
                    run.entry_point.value,
                    json.dumps(run.trigger.model_dump(mode="json")),
                    run.started_at,
                    *self._row_values(run),
                )
                await self._insert_transitions(conn, run.run_id, run.state_history)

            logger.info(
                "Saved pipeline run",
                extra={"run_id": run.run_id, "state": run.current_state.value},
            )

        except asyncpg.UniqueViolationError as e:
            raise DatabaseError(
                f"Run already exists: {run.run_id}", original_error=e
            ) from e
        except asyncpg.PostgresError as e:
            logger.error(
                "Failed to save pipeline run",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save pipeline run: {e}", original_error=e
            ) from e

    async def get(self, run_id: int) -> Optional[RunRecord]:
        """Get a run and reconstruct its history from run_transitions.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        run_id,
                        pipeline_name,
                        entry_point,
                        trigger,
                        current_state,
                        stages,
                        artifacts,
                        failure,
                        started_at,
                        ended_at,
                        updated_at,
                        version
                    FROM pipeline_runs
                    WHERE run_id = $1
                    """,
                    run_id,
                )
                if row is None:
                    return None

                transition_rows = await conn.fetch(
                    """
                    SELECT from_state, to_state, timestamp, details
                    FROM run_transitions
                    WHERE run_id = $1
                    ORDER BY timestamp ASC, id ASC
                    """,
                    run_id,
                )
        except asyncpg.PostgresError as e:
            logger.error(
                "Failed to get pipeline run",
                extra={"run_id": run_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get pipeline run: {e}", original_error=e
            ) from e

        failure = _load_json(row["failure"])
        return RunRecord(
            run_id=row["run_id"],
            pipeline_name=row["pipeline_name"],
            entry_point=EntryPoint(row["entry_point"]),
            trigger=RunTrigger(**_load_json(row["trigger"])),
            current_state=RunState(row["current_state"]),
            stages={
                name: StageRecord(**data)
                for name, data in (_load_json(row["stages"]) or {}).items()
            },
            artifacts={
                name: ArtifactRef(**data)
                for name, data in (_load_json(row["artifacts"]) or {}).items()
            },
            state_history=[
                StateTransition(
                    from_state=RunState(tr["from_state"]),
                    to_state=RunState(tr["to_state"]),
                    timestamp=_utc(tr["timestamp"]),
                    details=_load_json(tr["details"]) or {},
                )
                for tr in transition_rows
            ],
            failure=FailureDetail(**failure) if failure else None,
            started_at=_utc(row["started_at"]),
            ended_at=_utc(row["ended_at"]),
            updated_at=_utc(row["updated_at"]),
            version=row["version"],
        )

    async def list_by_state(self, state: RunState) -> List[RunRecord]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT run_id
                    FROM pipeline_runs
                    WHERE current_state = $1
                    ORDER BY run_id ASC
                    """,
                    state.value,
                )
        except asyncpg.PostgresError as e:
            raise DatabaseError(
                f"Failed to list pipeline runs by state: {e}", original_error=e
            ) from e

        runs = []
        for row in rows:
            run = await self.get(row["run_id"])
            if run is not None:
                runs.append(run)
        return runs

    async def update_with_version(self, run: RunRecord) -> bool:
        """Update a run with optimistic locking.

        Also inserts transitions added to state_history since the last
        update.

        Returns:
            True if update succeeded, False if version conflict.

        Raises:
            DatabaseError: If the update fails for other reasons.
        """
        expected_version = run.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE pipeline_runs
                    SET
                        current_state = $2,
                        stages = $3,
                        artifacts = $4,
                        failure = $5,
                        ended_at = $6,
                        updated_at = $7,
                        version = $8
                    WHERE run_id = $1 AND version = $9
                    """,
                    run.run_id,
                    *self._row_values(run),
                    expected_version,
                )

                rows_affected = int(result.split()[-1])
                if rows_affected == 0:
                    logger.warning(
                        "Version conflict during run update",
                        extra={
                            "run_id": run.run_id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                existing_count = await conn.fetchval(
                    "SELECT COUNT(*) FROM run_transitions WHERE run_id = $1",
                    run.run_id,
                )
                await self._insert_transitions(
                    conn, run.run_id, run.state_history[existing_count:]
                )

            logger.info(
                "Updated pipeline run",
                extra={
                    "run_id": run.run_id,
                    "state": run.current_state.value,
                    "version": run.version,
                },
            )
            return True

        except asyncpg.PostgresError as e:
            logger.error(
                "Failed to update pipeline run",
                extra={"run_id": run.run_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update pipeline run: {e}", original_error=e
            ) from e

    async def health_check(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except (DatabaseError, OSError, asyncpg.PostgresError) as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False

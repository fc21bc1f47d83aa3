"""Property-based tests for run persistence.

This module contains property-based tests using Hypothesis to verify that
run repositories round-trip run records, isolate callers from stored
state, and enforce optimistic locking.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test

Note: PostgresRunRepository is exercised here against a mocked asyncpg
pool; a live database belongs in integration tests.
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from deploy_pipeline.definition.models import ActionCategory
from deploy_pipeline.state import (
    DatabaseError,
    InMemoryRunRepository,
    PostgresRunRepository,
    RunRecord,
    RunState,
    RunTrigger,
    StageRecord,
    StageStatus,
)
from deploy_pipeline.triggers.models import EntryPoint


def run_async(coro):
    return asyncio.run(coro)


@st.composite
def run_record(draw: st.DrawFn) -> RunRecord:
    return RunRecord(
        run_id=draw(st.integers(min_value=1, max_value=10_000)),
        pipeline_name=draw(st.sampled_from(["infrastructure-pipeline", "payments"])),
        entry_point=draw(st.sampled_from(list(EntryPoint))),
        trigger=RunTrigger(
            event_type="push",
            ref=f"refs/heads/{draw(st.sampled_from(['master', 'develop']))}",
            commit_sha=draw(st.text("0123456789abcdef", min_size=40, max_size=40)),
        ),
        current_state=draw(st.sampled_from(list(RunState))),
        stages={
            "Source": StageRecord(
                name="Source",
                category=ActionCategory.SOURCE,
                status=draw(st.sampled_from(list(StageStatus))),
                log_excerpt=draw(st.none() | st.text(max_size=50)),
            )
        },
    )


# =============================================================================
# In-Memory Repository
# =============================================================================


class TestInMemoryRunRepository:
    @given(run=run_record())
    @settings(max_examples=100)
    def test_save_then_get_round_trips(self, run):
        """Property: a saved run reads back equal."""
        repository = InMemoryRunRepository()

        async def scenario():
            await repository.save(run)
            return await repository.get(run.run_id)

        assert run_async(scenario()) == run

    @given(run=run_record())
    @settings(max_examples=100)
    def test_callers_cannot_mutate_stored_runs(self, run):
        """Property: mutating a returned record never changes the stored one."""
        repository = InMemoryRunRepository()

        async def scenario():
            await repository.save(run)
            fetched = await repository.get(run.run_id)
            fetched.stages["Source"].status = StageStatus.FAILED
            fetched.artifacts.clear()
            return await repository.get(run.run_id)

        assert run_async(scenario()).stages["Source"].status == run.stages["Source"].status

    @given(run=run_record(), offset=st.integers(min_value=-3, max_value=3))
    @settings(max_examples=100)
    def test_update_requires_next_version(self, run, offset):
        """Property: only version + 1 of the stored record is accepted."""
        repository = InMemoryRunRepository()
        candidate = run.model_copy(update={"version": max(1, run.version + 1 + offset)})

        async def scenario():
            await repository.save(run)
            return await repository.update_with_version(candidate)

        assert run_async(scenario()) is (candidate.version == run.version + 1)

    def test_duplicate_save_rejected(self):
        repository = InMemoryRunRepository()
        run = RunRecord(
            run_id=1,
            pipeline_name="p",
            entry_point=EntryPoint.SOURCE,
            trigger=RunTrigger(event_type="push"),
        )

        async def scenario():
            await repository.save(run)
            await repository.save(run)

        with pytest.raises(DatabaseError):
            run_async(scenario())

    def test_update_unknown_run(self):
        run = RunRecord(
            run_id=5,
            pipeline_name="p",
            entry_point=EntryPoint.SOURCE,
            trigger=RunTrigger(event_type="push"),
            version=2,
        )

        assert run_async(InMemoryRunRepository().update_with_version(run)) is False


# =============================================================================
# Postgres Repository
# =============================================================================


def _mock_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
    return pool


def _connected_repository(conn) -> PostgresRunRepository:
    repository = PostgresRunRepository("postgresql://pipeline@localhost/runs")
    repository._pool = _mock_pool(conn)
    return repository


class TestPostgresRunRepository:
    def test_pool_required(self):
        repository = PostgresRunRepository("postgresql://pipeline@localhost/runs")

        with pytest.raises(DatabaseError, match="not initialized"):
            repository.pool

    def test_update_version_conflict(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="UPDATE 0")
        repository = _connected_repository(conn)
        run = RunRecord(
            run_id=3,
            pipeline_name="p",
            entry_point=EntryPoint.SOURCE,
            trigger=RunTrigger(event_type="push"),
            version=4,
        )

        assert run_async(repository.update_with_version(run)) is False
        args = conn.execute.call_args.args
        assert args[1] == 3
        assert args[-1] == 3

    def test_update_inserts_only_new_transitions(self):
        conn = MagicMock()
        conn.execute = AsyncMock(return_value="UPDATE 1")
        conn.fetchval = AsyncMock(return_value=1)
        repository = _connected_repository(conn)
        run = RunRecord(
            run_id=3,
            pipeline_name="p",
            entry_point=EntryPoint.SOURCE,
            trigger=RunTrigger(event_type="push"),
            current_state=RunState.SOURCE_DONE,
            state_history=[
                {"from_state": "pending", "to_state": "source_running"},
                {"from_state": "source_running", "to_state": "source_done"},
            ],
            version=3,
        )

        assert run_async(repository.update_with_version(run)) is True

        inserts = [c for c in conn.execute.call_args_list if "run_transitions" in c.args[0]]
        assert len(inserts) == 1
        assert inserts[0].args[2:4] == ("source_running", "source_done")

    def test_get_rebuilds_record(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(
            return_value={
                "run_id": 7,
                "pipeline_name": "infrastructure-pipeline",
                "entry_point": "source",
                "trigger": json.dumps({"event_type": "push", "ref": "refs/heads/master"}),
                "current_state": "failed",
                "stages": json.dumps(
                    {"Test": {"name": "Test", "category": "test", "status": "failed"}}
                ),
                "artifacts": json.dumps({}),
                "failure": json.dumps({"error_type": "ValidationFailed", "message": "exit 1"}),
                "started_at": datetime(2026, 3, 1, 12, 0),
                "ended_at": datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc),
                "updated_at": datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc),
                "version": 6,
            }
        )
        conn.fetch = AsyncMock(
            return_value=[
                {
                    "from_state": "pending",
                    "to_state": "source_running",
                    "timestamp": datetime(2026, 3, 1, 12, 1),
                    "details": None,
                }
            ]
        )

        run = run_async(_connected_repository(conn).get(7))

        assert run.entry_point == EntryPoint.SOURCE
        assert run.current_state == RunState.FAILED
        assert run.stages["Test"].status == StageStatus.FAILED
        assert run.failure.error_type == "ValidationFailed"
        assert run.started_at.tzinfo == timezone.utc
        assert run.state_history[0].to_state == RunState.SOURCE_RUNNING
        assert run.state_history[0].details == {}

    def test_get_missing(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)

        assert run_async(_connected_repository(conn).get(7)) is None

    def test_health_check_failure(self):
        conn = MagicMock()
        conn.fetchval = AsyncMock(side_effect=OSError("connection refused"))

        assert run_async(_connected_repository(conn).health_check()) is False

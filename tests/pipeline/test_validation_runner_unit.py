"""Unit tests for the validation runner and the shell test action.

Tests subprocess execution, timeout enforcement, output capture, exit code
handling, and commit status reporting for pull-request validation runs.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from deploy_pipeline.artifacts import (
    ArchiveEntry,
    ArtifactNotFoundError,
    InMemoryArtifactStore,
    normalize_tarball,
    pack_entries,
    pack_members,
)
from deploy_pipeline.errors import ValidationFailed
from deploy_pipeline.github.client import GitHubAPIError
from deploy_pipeline.permissions import RoleBinder
from deploy_pipeline.stages import RunContext, ShellTestAction, ValidationRunner
from deploy_pipeline.state.models import RunTrigger
from deploy_pipeline.triggers.models import EntryPoint


def run_async(coro):
    return asyncio.run(coro)


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def test_role(definition):
    roles = RoleBinder("123456789012", "us-east-1", "acme-artifacts", "p").bind_definition(
        definition
    )
    return roles["Test"]


def _context(entry_point=EntryPoint.SOURCE, commit_sha="c" * 40) -> RunContext:
    return RunContext(
        run_id=12,
        pipeline_name="infrastructure-pipeline",
        entry_point=entry_point,
        trigger=RunTrigger(
            event_type="pull_request" if entry_point != EntryPoint.SOURCE else "push",
            ref="refs/heads/feature",
            commit_sha=commit_sha,
        ),
        repository_owner="acme",
        repository_name="infra",
    )


# =============================================================================
# ValidationRunner
# =============================================================================


class TestValidationRunner:
    def test_success(self, workspace):
        result = run_async(ValidationRunner().run("echo hi", workspace))

        assert result.success
        assert result.exit_code == 0
        assert result.stdout == "hi"
        assert result.duration_seconds >= 0

    def test_non_zero_exit(self, workspace):
        result = run_async(ValidationRunner().run("echo broken >&2; exit 3", workspace))

        assert not result.success
        assert result.exit_code == 3
        assert result.stderr == "broken"
        assert "broken" in result.logs

    def test_runs_in_working_dir(self, workspace):
        (workspace / "Makefile").write_text("marker")

        result = run_async(ValidationRunner().run("cat Makefile", workspace))

        assert result.stdout == "marker"

    def test_timeout_kills_process(self, workspace):
        result = run_async(ValidationRunner(timeout_seconds=0.5).run("sleep 5", workspace))

        assert not result.success
        assert result.exit_code == -1
        assert "timed out" in result.stderr
        assert result.duration_seconds < 5

    def test_log_callback_receives_lines(self, workspace):
        lines = []

        run_async(
            ValidationRunner().run("echo one; echo two >&2", workspace, log_callback=lines.append)
        )

        assert "[stdout] one" in lines
        assert "[stderr] two" in lines

    def test_missing_working_dir(self, tmp_path):
        result = run_async(ValidationRunner().run("true", tmp_path / "absent"))

        assert not result.success
        assert result.exit_code == -1
        assert "Failed to start" in result.stderr

    def test_cancellation_propagates(self, workspace):
        async def scenario():
            task = asyncio.create_task(ValidationRunner().run("sleep 5", workspace))
            await asyncio.sleep(0.2)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            run_async(scenario())

    def test_line_longer_than_stream_limit(self, workspace):
        command = "head -c 200000 /dev/zero | tr '\\0' x; echo; echo done"

        result = run_async(ValidationRunner().run(command, workspace))

        assert result.success
        assert result.stdout == "x" * 200000 + "\ndone"

    def test_output_without_trailing_newline(self, workspace):
        result = run_async(ValidationRunner().run("printf 'a\\nb'", workspace))

        assert result.stdout == "a\nb"


# =============================================================================
# ShellTestAction
# =============================================================================


class TestShellTestAction:
    def _source(self, store, members=None):
        tree = pack_members(members or {"Makefile": b"test:\n\ttrue\n"})
        return run_async(store.put("SourceOutput", tree, run_id=12, producer_stage="Source"))

    def _action(self, definition, command):
        action = definition.test_stage.ordered_actions[0]
        return action.model_copy(
            update={"configuration": {**action.configuration, "Command": command}}
        )

    def test_passing_command(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store, {"check.sh": b"echo validated\n"})
        handler = ShellTestAction(ValidationRunner(), store)

        outcome = run_async(
            handler.run(
                self._action(definition, "sh check.sh"),
                "Test",
                {"SourceOutput": source},
                test_role,
                _context(),
            )
        )

        assert outcome.logs == "validated"
        assert outcome.outputs == []
        assert outcome.details == {"exit_code": "0"}

    def test_failing_command_raises_validation_failed(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store)
        handler = ShellTestAction(ValidationRunner(), store)

        with pytest.raises(ValidationFailed) as exc_info:
            run_async(
                handler.run(
                    self._action(definition, "echo 2 failures; exit 1"),
                    "Test",
                    {"SourceOutput": source},
                    test_role,
                    _context(),
                )
            )

        assert exc_info.value.exit_code == 1
        assert "2 failures" in exc_info.value.logs

    def test_pull_request_reports_commit_statuses(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store)
        github = AsyncMock()
        handler = ShellTestAction(ValidationRunner(), store, github)

        run_async(
            handler.run(
                self._action(definition, "true"),
                "Test",
                {"SourceOutput": source},
                test_role,
                _context(EntryPoint.PULL_REQUEST_VALIDATION),
            )
        )

        states = [c.kwargs["state"] for c in github.create_commit_status.call_args_list]
        assert states == ["pending", "success"]
        args = github.create_commit_status.call_args.args
        assert args == ("acme", "infra", "c" * 40)
        assert github.create_commit_status.call_args.kwargs["context"] == (
            ShellTestAction.STATUS_CONTEXT
        )

    def test_pull_request_failure_status(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store)
        github = AsyncMock()
        handler = ShellTestAction(ValidationRunner(), store, github)

        with pytest.raises(ValidationFailed):
            run_async(
                handler.run(
                    self._action(definition, "exit 1"),
                    "Test",
                    {"SourceOutput": source},
                    test_role,
                    _context(EntryPoint.PULL_REQUEST_VALIDATION),
                )
            )

        states = [c.kwargs["state"] for c in github.create_commit_status.call_args_list]
        assert states == ["pending", "failure"]

    def test_push_runs_report_no_status(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store)
        github = AsyncMock()
        handler = ShellTestAction(ValidationRunner(), store, github)

        run_async(
            handler.run(
                self._action(definition, "true"),
                "Test",
                {"SourceOutput": source},
                test_role,
                _context(EntryPoint.SOURCE),
            )
        )

        github.create_commit_status.assert_not_called()

    def test_status_failures_do_not_fail_validation(self, definition, test_role):
        store = InMemoryArtifactStore()
        source = self._source(store)
        github = AsyncMock()
        github.create_commit_status.side_effect = GitHubAPIError("rate limited", status_code=403)
        handler = ShellTestAction(ValidationRunner(), store, github)

        outcome = run_async(
            handler.run(
                self._action(definition, "true"),
                "Test",
                {"SourceOutput": source},
                test_role,
                _context(EntryPoint.PULL_REQUEST_VALIDATION),
            )
        )

        assert outcome.details == {"exit_code": "0"}

    def test_executable_script_from_github_tarball(self, definition, test_role):
        store = InMemoryArtifactStore()
        github_tarball = pack_entries(
            [
                ArchiveEntry(
                    "acme-infra-abc/run_tests.sh",
                    b"#!/bin/sh\necho suite passed\n",
                    mode=0o755,
                ),
                ArchiveEntry("acme-infra-abc/bin/check", linkname="../run_tests.sh"),
            ]
        )
        source = run_async(
            store.put(
                "SourceOutput",
                normalize_tarball(github_tarball),
                run_id=12,
                producer_stage="Source",
            )
        )
        handler = ShellTestAction(ValidationRunner(), store)

        outcome = run_async(
            handler.run(
                self._action(definition, "./run_tests.sh && bin/check"),
                "Test",
                {"SourceOutput": source},
                test_role,
                _context(),
            )
        )

        assert outcome.logs == "suite passed\nsuite passed"
        assert outcome.details == {"exit_code": "0"}

    def test_missing_artifact_reports_error_status(self, definition, test_role):
        source = self._source(InMemoryArtifactStore())
        github = AsyncMock()
        handler = ShellTestAction(ValidationRunner(), InMemoryArtifactStore(), github)

        with pytest.raises(ArtifactNotFoundError):
            run_async(
                handler.run(
                    self._action(definition, "true"),
                    "Test",
                    {"SourceOutput": source},
                    test_role,
                    _context(EntryPoint.PULL_REQUEST_VALIDATION),
                )
            )

        states = [c.kwargs["state"] for c in github.create_commit_status.call_args_list]
        assert states == ["pending", "error"]

"""Test stage: run the validation command against the source tree.

Executes the configured command as an async subprocess with the extracted
source artifact as its working directory. Output is streamed line by line to
logs and captured for the run record. Output is read in fixed-size chunks
and split into lines here, so a single very long line is captured whole. Exit code 0 is success; any other exit
is a ValidationFailed, a defect in the artifact rather than in the pipeline.

For pull-request validation runs, commit statuses are posted to GitHub
against the originating commit: pending before the command starts, then
success or failure. Cancellation and errors outside the command itself
(for example an unreadable artifact store) report error.
"""

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from deploy_pipeline.artifacts.archive import ArchiveError, extract_to
from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.artifacts.store import ArtifactStore
from deploy_pipeline.definition.models import ActionDefinition
from deploy_pipeline.errors import PipelineError, ValidationFailed
from deploy_pipeline.github.client import GitHubAPIError, GitHubClient
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.models import ActionOutcome, RunContext

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a validation command execution.

    Attributes:
        success: True when the command exited with code 0.
        exit_code: Process exit code (-1 for timeout/OS errors).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
    """

    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def logs(self) -> str:
        parts = [self.stdout, self.stderr]
        return "\n".join(part for part in parts if part)


class ValidationRunner:
    """Runs validation commands as async subprocesses.

    Attributes:
        timeout_seconds: Maximum execution time, or None for no limit.
    """

    READ_CHUNK_SIZE = 64 * 1024

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds

    async def run(
        self,
        command: str,
        working_dir: Path,
        env: Optional[Dict[str, str]] = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ) -> ValidationResult:
        """Execute a validation command in a working directory.

        The process is killed whenever output collection ends before it
        exits, including when the awaiting task is cancelled.

        Args:
            command: Shell command line to run.
            working_dir: Directory holding the source tree.
            env: Optional environment for the process.
            log_callback: Optional function called with each output line.

        Returns:
            ValidationResult with exit code, captured output, and duration.
        """
        start_time = time.monotonic()

        try:
            process = await self._start_process(command, working_dir, env)
        except OSError as exc:
            return self._handle_os_error(exc, start_time)

        try:
            stdout, stderr = await self._collect_output_with_timeout(
                process, log_callback
            )
        except asyncio.TimeoutError:
            return self._handle_timeout(start_time)
        except asyncio.CancelledError:
            logger.warning("Validation command cancelled", extra={"command": command})
            raise
        finally:
            await self._kill(process)

        exit_code = process.returncode if process.returncode is not None else -1
        duration = time.monotonic() - start_time
        return self._build_result(exit_code, stdout, stderr, duration)

    async def _start_process(
        self,
        command: str,
        working_dir: Path,
        env: Optional[Dict[str, str]],
    ) -> asyncio.subprocess.Process:
        logger.info(
            "Starting validation command",
            extra={
                "command": command,
                "working_dir": str(working_dir),
                "timeout": self.timeout_seconds,
            },
        )
        return await asyncio.create_subprocess_shell(
            command,
            cwd=str(working_dir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
        log_callback: Optional[Callable[[str], None]],
    ) -> tuple:
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def stream(reader, lines: List[str], stream_name: str) -> None:
            async for line in self._read_stream(reader):
                lines.append(line)
                self._emit_line(stream_name, line, log_callback)

        async def gather() -> None:
            await asyncio.gather(
                stream(process.stdout, stdout_lines, "stdout"),
                stream(process.stderr, stderr_lines, "stderr"),
            )
            await process.wait()

        await asyncio.wait_for(gather(), timeout=self.timeout_seconds)
        return "\n".join(stdout_lines), "\n".join(stderr_lines)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        """Yield decoded lines from a stream, whatever their length."""
        if stream is None:
            return

        pending = bytearray()
        while True:
            chunk = await stream.read(self.READ_CHUNK_SIZE)
            if not chunk:
                break
            pending.extend(chunk)
            *complete, rest = pending.split(b"\n")
            pending = bytearray(rest)
            for raw_line in complete:
                yield raw_line.decode("utf-8", errors="replace")
        if pending:
            yield pending.decode("utf-8", errors="replace")

    def _emit_line(
        self,
        stream_name: str,
        line: str,
        log_callback: Optional[Callable[[str], None]],
    ) -> None:
        logger.debug("validation %s: %s", stream_name, line)
        if log_callback is not None:
            log_callback(f"[{stream_name}] {line}")

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _handle_timeout(self, start_time: float) -> ValidationResult:
        duration = time.monotonic() - start_time
        logger.error("Validation command timed out after %ss", self.timeout_seconds)
        return ValidationResult(
            success=False,
            exit_code=-1,
            stdout="",
            stderr=f"Process timed out after {self.timeout_seconds}s",
            duration_seconds=duration,
        )

    def _handle_os_error(self, exc: OSError, start_time: float) -> ValidationResult:
        duration = time.monotonic() - start_time
        logger.error("Failed to start validation command: %s", exc)
        return ValidationResult(
            success=False,
            exit_code=-1,
            stdout="",
            stderr=f"Failed to start validation command: {exc}",
            duration_seconds=duration,
        )

    def _build_result(
        self,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> ValidationResult:
        is_success = exit_code == 0

        if is_success:
            logger.info("Validation passed in %.1fs", duration)
        else:
            logger.warning(
                "Validation failed with exit code %d in %.1fs",
                exit_code,
                duration,
            )

        return ValidationResult(
            success=is_success,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )


class ShellTestAction:
    """Runs the configured Command against the extracted input artifact."""

    STATUS_CONTEXT = "deploy-pipeline/validation"

    def __init__(
        self,
        runner: ValidationRunner,
        artifact_store: ArtifactStore,
        github_client: Optional[GitHubClient] = None,
    ):
        self.runner = runner
        self.artifact_store = artifact_store
        self.github_client = github_client

    async def _report_status(
        self, context: RunContext, state: str, description: str
    ) -> None:
        """Post a commit status; failures are logged only."""
        if self.github_client is None or not context.reports_commit_status:
            return
        try:
            await self.github_client.create_commit_status(
                context.repository_owner,
                context.repository_name,
                context.trigger.commit_sha,
                state=state,
                context=self.STATUS_CONTEXT,
                description=description,
            )
        except GitHubAPIError as e:
            logger.warning(
                "Failed to report commit status",
                extra={
                    "run_id": context.run_id,
                    "sha": context.trigger.commit_sha,
                    "state": state,
                    "error": str(e),
                },
            )

    async def run(
        self,
        action: ActionDefinition,
        stage_name: str,
        inputs: Dict[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> ActionOutcome:
        source = inputs[action.input_artifacts[0]]
        command = action.configuration["Command"]

        await self._report_status(context, "pending", f"Run {context.run_id} validating")

        try:
            data = await self.artifact_store.get(source)
            with tempfile.TemporaryDirectory(prefix=f"run-{context.run_id}-") as tmp:
                try:
                    workdir = extract_to(data, Path(tmp))
                except ArchiveError as e:
                    raise ValidationFailed(
                        f"Source artifact {source.label} could not be extracted: {e}",
                        exit_code=-1,
                    ) from e
                result = await self.runner.run(command, workdir)
        except asyncio.CancelledError:
            await self._report_status(context, "error", "Validation cancelled")
            raise
        except PipelineError:
            await self._report_status(context, "failure", "Validation failed")
            raise
        except Exception as e:
            await self._report_status(
                context, "error", f"Validation could not run: {type(e).__name__}"
            )
            raise

        if not result.success:
            await self._report_status(
                context, "failure", f"Validation failed with exit code {result.exit_code}"
            )
            raise ValidationFailed(
                f"Validation command exited with {result.exit_code}",
                exit_code=result.exit_code,
                logs=result.logs,
            )

        await self._report_status(context, "success", "Validation passed")
        return ActionOutcome(
            logs=result.logs,
            details={"exit_code": str(result.exit_code)},
        )

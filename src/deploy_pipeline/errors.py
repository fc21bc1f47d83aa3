"""Error taxonomy for the deployment pipeline.

Every failure a run can surface is one of these types. Stage failures are
recorded on the run as a FailureDetail built from the exception's context
(stage, action, provider, detail), so an operator can diagnose a failed run
without re-running it.

Taxonomy:
- TriggerRejected: signature invalid or no trigger filter matched (logged only)
- SourceFetchError: source host authentication, missing ref, host unavailable
- ValidationFailed: the test stage returned a non-zero result
- DeploymentError: the deployment engine rejected or failed the apply
- SingletonConflict: duplicate creation of a once-per-scope resource
- StageTimeoutError: a stage exceeded its configured timeout
- DefinitionError: a pipeline definition failed validation at load time
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for pipeline failures.

    Attributes:
        message: Human-readable error description.
        stage: Name of the stage where the failure occurred, if any.
        action: Name of the action where the failure occurred, if any.
        provider: Provider identity of the failing action, if any.
        detail: Provider diagnostic detail (error codes, log excerpts).
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        action: Optional[str] = None,
        provider: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.stage = stage
        self.action = action
        self.provider = provider
        self.detail = detail or {}
        super().__init__(message)

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def with_context(
        self,
        stage: Optional[str] = None,
        action: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> "PipelineError":
        """Fill in stage/action/provider where they are not already set."""
        self.stage = self.stage or stage
        self.action = self.action or action
        self.provider = self.provider or provider
        return self


class TriggerRejected(PipelineError):
    """Raised when an inbound event must be discarded.

    The event either failed signature verification or matched no trigger
    filter. Rejections are logged and never surface to the operator.
    """

    def __init__(self, message: str, reason: str = "no_match"):
        self.reason = reason
        super().__init__(message, detail={"reason": reason})


class SourceFetchError(PipelineError):
    """Raised when the source stage cannot fetch the requested ref.

    Attributes:
        reason: One of "authentication", "missing_ref", "host_unavailable".
    """

    AUTHENTICATION = "authentication"
    MISSING_REF = "missing_ref"
    HOST_UNAVAILABLE = "host_unavailable"

    def __init__(self, message: str, reason: str, **kwargs: Any):
        self.reason = reason
        super().__init__(message, **kwargs)
        self.detail.setdefault("reason", reason)


class ValidationFailed(PipelineError):
    """Raised when the validation procedure reports a failure.

    This reflects a defect in the artifact itself, not in the pipeline
    infrastructure.

    Attributes:
        exit_code: Process exit code of the validation command.
        logs: Captured output of the validation command.
    """

    def __init__(self, message: str, exit_code: int, logs: str = "", **kwargs: Any):
        self.exit_code = exit_code
        self.logs = logs
        super().__init__(message, **kwargs)
        self.detail.setdefault("exit_code", exit_code)


class DeploymentError(PipelineError):
    """Raised when the deployment engine fails to create or update a stack.

    Attributes:
        stack_name: The target stack.
    """

    def __init__(self, message: str, stack_name: str, **kwargs: Any):
        self.stack_name = stack_name
        super().__init__(message, **kwargs)
        self.detail.setdefault("stack_name", stack_name)


class SingletonConflict(PipelineError):
    """Raised when a once-per-scope resource would be created twice.

    Conflicts are reported and never retried automatically; an operator must
    reconcile the registry with the external system.
    """

    def __init__(self, kind: str, scope: str, message: Optional[str] = None):
        self.kind = kind
        self.scope = scope
        super().__init__(
            message or f"Singleton {kind} already exists for scope {scope}",
            detail={"kind": kind, "scope": scope},
        )


class StageTimeoutError(PipelineError):
    """Raised when a stage exceeds its configured timeout."""

    def __init__(self, stage: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Stage {stage} timed out after {timeout_seconds}s",
            stage=stage,
            detail={"timeout_seconds": timeout_seconds},
        )


class DefinitionError(PipelineError):
    """Raised when a pipeline definition is invalid."""

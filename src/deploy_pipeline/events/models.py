"""Pipeline event models for observability.

This module defines the data models for pipeline events:
- EventType: Enum of all event types emitted by the pipeline
- PipelineEvent: Structured event with run metadata

Events are emitted for monitoring, alerting and debugging. They never
influence run behavior.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the pipeline.

    Attributes:
        STATE_TRANSITION: A run moved from one controller state to another.
        ERROR: A stage failed and the run moved to failed.
        COMPLETION: A run reached succeeded.
        TIMEOUT: A stage exceeded its configured timeout.
        CANCELLED: An operator cancelled a run.
        TRIGGER_REJECTED: An inbound event was discarded.
        DEPLOY_QUEUED: A deploy waited behind another run's deploy of the
            same stack.
        SINGLETON_ACQUIRED: A singleton resource was found or created.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    TRIGGER_REJECTED = "trigger_rejected"
    DEPLOY_QUEUED = "deploy_queued"
    SINGLETON_ACQUIRED = "singleton_acquired"


class PipelineEvent(BaseModel):
    """Structured event emitted by the pipeline.

    Attributes:
        event_type: The category of event.
        pipeline: Name of the pipeline definition.
        run_id: The affected run, if the event concerns one.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_state, to_state: Controller states
            - stage: Stage name, when a stage boundary was crossed

        For ERROR events:
            - error_type, error_message: From the run's FailureDetail
            - stage, action, provider: Where the failure occurred

        For COMPLETION events:
            - entry_point: source or pull_request_validation
            - duration_seconds: Total run time

        For TRIGGER_REJECTED events:
            - reason: invalid_signature, no_match or unsupported_event
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    pipeline: str = Field(
        ...,
        min_length=1,
        description="Name of the pipeline definition",
    )

    run_id: Optional[int] = Field(
        default=None,
        description="The run the event concerns, if any",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary for structured logging.

        Example:
            >>> event = PipelineEvent(
            ...     event_type=EventType.ERROR,
            ...     pipeline="infrastructure-pipeline",
            ...     run_id=7,
            ...     details={"stage": "Test"}
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "pipeline": self.pipeline,
            "run_id": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }

"""Prometheus metrics for pipeline observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- deploy_pipeline_runs_completed_total: Counter of finished runs by result
- deploy_pipeline_runs_failed_total: Counter of failed runs by stage
- deploy_pipeline_run_duration_seconds: Histogram of run duration
- deploy_pipeline_runs_by_state: Gauge of current runs per controller state
- deploy_pipeline_triggers_rejected_total: Counter of discarded events

The MetricsEventEmitter updates metrics from pipeline events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from deploy_pipeline.events.emitter import EventEmitter
from deploy_pipeline.events.models import EventType, PipelineEvent
from deploy_pipeline.state.models import RunState


logger = logging.getLogger(__name__)


# Stage executions take minutes; cover 1 second to 2 hours
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    15.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
    7200.0,
)

RUN_STATES = tuple(state.value for state in RunState)


class PipelineMetrics:
    """Container for all pipeline Prometheus metrics.

    Supports custom registries for testing.

    Metrics:
        runs_completed_total: Labels pipeline, result
            (succeeded/failed/cancelled).
        runs_failed_total: Labels pipeline, stage.
        run_duration_seconds: Labels pipeline, entry_point.
        runs_by_state: Labels state.
        triggers_rejected_total: Labels reason.

    Example:
        >>> metrics = PipelineMetrics(registry=CollectorRegistry())
        >>> metrics.record_run_completed("infra", "succeeded")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.runs_completed_total = Counter(
            "deploy_pipeline_runs_completed_total",
            "Total number of runs that reached a terminal state",
            labelnames=["pipeline", "result"],
            registry=self.registry,
        )

        self.runs_failed_total = Counter(
            "deploy_pipeline_runs_failed_total",
            "Total number of runs that failed, by failing stage",
            labelnames=["pipeline", "stage"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "deploy_pipeline_run_duration_seconds",
            "Time from run creation to success in seconds",
            labelnames=["pipeline", "entry_point"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.runs_by_state = Gauge(
            "deploy_pipeline_runs_by_state",
            "Current number of runs in each controller state",
            labelnames=["state"],
            registry=self.registry,
        )

        self.triggers_rejected_total = Counter(
            "deploy_pipeline_triggers_rejected_total",
            "Total number of inbound events discarded",
            labelnames=["reason"],
            registry=self.registry,
        )

        for state in RUN_STATES:
            self.runs_by_state.labels(state=state).set(0)

    def record_run_completed(self, pipeline: str, result: str) -> None:
        self.runs_completed_total.labels(pipeline=pipeline, result=result).inc()

    def record_run_failed(self, pipeline: str, stage: str) -> None:
        self.runs_failed_total.labels(pipeline=pipeline, stage=stage).inc()

    def record_run_duration(
        self, pipeline: str, entry_point: str, duration_seconds: float
    ) -> None:
        self.run_duration_seconds.labels(
            pipeline=pipeline, entry_point=entry_point
        ).observe(duration_seconds)

    def record_trigger_rejected(self, reason: str) -> None:
        self.triggers_rejected_total.labels(reason=reason).inc()

    def update_state_count(self, state: str, delta: int) -> None:
        """Update the count of runs in a state.

        Args:
            state: The controller state to update.
            delta: +1 for entering, -1 for leaving.
        """
        if state in RUN_STATES:
            gauge = self.runs_by_state.labels(state=state)
            gauge.set(max(0, gauge._value.get() + delta))


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text format output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: Moves a run between runs_by_state buckets
    - ERROR, TIMEOUT: Increments runs_failed_total at the failing stage
    - COMPLETION: Records a succeeded run and its duration
    - CANCELLED: Records a cancelled run
    - TRIGGER_REJECTED: Increments triggers_rejected_total

    Attributes:
        metrics: The PipelineMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._handle_state_transition(event)
            elif event.event_type in (EventType.ERROR, EventType.TIMEOUT):
                self._handle_failure(event)
            elif event.event_type == EventType.COMPLETION:
                self._handle_completion(event)
            elif event.event_type == EventType.CANCELLED:
                self._metrics.record_run_completed(event.pipeline, "cancelled")
            elif event.event_type == EventType.TRIGGER_REJECTED:
                self._metrics.record_trigger_rejected(
                    event.details.get("reason", "unknown")
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={"event_type": event.event_type.value, "run_id": event.run_id},
            )

    def _handle_state_transition(self, event: PipelineEvent) -> None:
        from_state = event.details.get("from_state")
        to_state = event.details.get("to_state")

        if from_state:
            self._metrics.update_state_count(from_state, -1)
        if to_state:
            self._metrics.update_state_count(to_state, +1)

    def _handle_failure(self, event: PipelineEvent) -> None:
        self._metrics.record_run_failed(
            event.pipeline, event.details.get("stage") or "unknown"
        )
        self._metrics.record_run_completed(event.pipeline, "failed")

    def _handle_completion(self, event: PipelineEvent) -> None:
        self._metrics.record_run_completed(event.pipeline, "succeeded")

        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_run_duration(
                event.pipeline,
                event.details.get("entry_point", "unknown"),
                float(duration),
            )

"""Run event sinks.

The controller reports every transition, failure, cancellation and
rejected trigger as a PipelineEvent. Sinks decide what to do with them:

- LoggingEventEmitter writes one log record per event
- MetricsEventEmitter (events.metrics) updates Prometheus series
- CompositeEventEmitter fans an event out to several sinks
- NullEventEmitter drops everything

A sink failure must never fail a run, so the controller and the composite
both contain sink errors.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Sequence

from deploy_pipeline.events.models import EventType, PipelineEvent

logger = logging.getLogger(__name__)

# Log level per event type; unlisted types log at INFO
EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.DEPLOY_QUEUED: logging.WARNING,
    EventType.TIMEOUT: logging.WARNING,
    EventType.CANCELLED: logging.WARNING,
    EventType.ERROR: logging.ERROR,
}


class EventSinkType(str, Enum):
    """Sinks the service can enable."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Destination for pipeline run events."""

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Deliver one event."""

    async def close(self) -> None:
        """Release sink resources. Most sinks hold none."""


class LoggingEventEmitter(EventEmitter):
    """Writes each event as a log record carrying its fields as extras.

    Args:
        logger_name: Logger to write to; defaults to this module's logger.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def emit(self, event: PipelineEvent) -> None:
        level = EVENT_LOG_LEVELS.get(event.event_type, logging.INFO)
        self._logger.log(
            level,
            "%s run=%s %s",
            event.pipeline,
            event.run_id if event.run_id is not None else "-",
            event.event_type.value,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delivers each event to every child sink concurrently.

    A failing child is logged and skipped; the others still receive the
    event.
    """

    def __init__(self, emitters: Optional[Sequence[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = list(emitters or [])

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    async def emit(self, event: PipelineEvent) -> None:
        results = await asyncio.gather(
            *(emitter.emit(event) for emitter in self._emitters),
            return_exceptions=True,
        )
        for emitter, result in zip(self._emitters, results):
            if isinstance(result, Exception):
                logger.error(
                    "Event sink %s failed: %s",
                    type(emitter).__name__,
                    result,
                    extra={
                        "sink": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "run_id": event.run_id,
                    },
                )

    async def close(self) -> None:
        results = await asyncio.gather(
            *(emitter.close() for emitter in self._emitters),
            return_exceptions=True,
        )
        for emitter, result in zip(self._emitters, results):
            if isinstance(result, Exception):
                logger.error("Closing event sink %s failed: %s", type(emitter).__name__, result)


class NullEventEmitter(EventEmitter):
    async def emit(self, event: PipelineEvent) -> None:
        return None


def create_event_emitter(
    sink_types: Optional[Sequence[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for the configured sinks.

    No sinks means logging only. A single sink is returned as is; several
    are wrapped in a CompositeEventEmitter.

    Example:
        >>> emitter = create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS])
        >>> isinstance(emitter, CompositeEventEmitter)
        True
    """
    # metrics.py imports EventEmitter from this module
    from deploy_pipeline.events.metrics import MetricsEventEmitter

    emitters: List[EventEmitter] = []
    for sink_type in dict.fromkeys(sink_types or [EventSinkType.LOGGING]):
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            emitters.append(MetricsEventEmitter())
        else:
            logger.warning("Unknown event sink type %s; skipping", sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(emitters) == 1:
        return emitters[0]
    return CompositeEventEmitter(emitters)

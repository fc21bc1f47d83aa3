"""Trigger matching engine.

Decides whether an inbound webhook event starts a run, and at which entry
point. Evaluation is short-circuiting: filters are tried in order and the
first one whose clauses all hold wins. An event that matches nothing is
discarded with no side effects beyond a log line.

The default filters mirror the two ways the pipeline is triggered:
- push: event_type == push AND ref == refs/heads/<branch> (exact, no glob)
- pull request: event_type == pull_request
                AND action ~ ^(created|updated|reopened)$
                AND base_ref ~ ^refs/heads/<branch>$
The base ref pattern is anchored at both ends so that a branch named
"master" never matches "master-2".
"""

import logging
import re
from typing import List, Optional, Sequence

from deploy_pipeline.definition.models import PipelineDefinition
from deploy_pipeline.triggers.models import (
    ClauseField,
    EntryPoint,
    FilterClause,
    MatchType,
    TriggerFilter,
    TriggerMatch,
)
from deploy_pipeline.webhook.models import (
    PullRequestAction,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

PUSH_FILTER_NAME = "push-to-integration-branch"
PULL_REQUEST_FILTER_NAME = "pull-request-to-integration-branch"


def _event_field(event: WebhookEvent, field: ClauseField) -> Optional[str]:
    if field == ClauseField.EVENT_TYPE:
        return event.event_type.value
    value = getattr(event, field.value)
    if isinstance(value, str) and value:
        return value
    return None


def clause_holds(clause: FilterClause, event: WebhookEvent) -> bool:
    """Evaluate a single clause against an event.

    A missing or empty field fails the clause regardless of polarity.
    """
    value = _event_field(event, clause.field)
    if value is None:
        return False

    if clause.match_type == MatchType.EXACT:
        matched = value == clause.pattern
    else:
        matched = re.fullmatch(clause.pattern, value) is not None

    return not matched if clause.exclude else matched


def filter_matches(trigger_filter: TriggerFilter, event: WebhookEvent) -> bool:
    """True if every clause of the filter holds for the event."""
    return all(clause_holds(clause, event) for clause in trigger_filter.clauses)


def build_default_filters(definition: PipelineDefinition) -> List[TriggerFilter]:
    """Build the push and pull-request filters for a pipeline.

    Args:
        definition: The pipeline whose source action names the branch.

    Returns:
        The push filter followed by the pull-request filter.
    """
    integration_ref = definition.integration_ref
    pr_actions = "|".join(re.escape(action.value) for action in PullRequestAction)

    push_filter = TriggerFilter(
        name=PUSH_FILTER_NAME,
        entry_point=EntryPoint.SOURCE,
        clauses=[
            FilterClause(
                field=ClauseField.EVENT_TYPE,
                pattern=WebhookEventType.PUSH.value,
            ),
            FilterClause(field=ClauseField.REF, pattern=integration_ref),
        ],
    )

    pull_request_filter = TriggerFilter(
        name=PULL_REQUEST_FILTER_NAME,
        entry_point=EntryPoint.PULL_REQUEST_VALIDATION,
        clauses=[
            FilterClause(
                field=ClauseField.EVENT_TYPE,
                pattern=WebhookEventType.PULL_REQUEST.value,
            ),
            FilterClause(
                field=ClauseField.ACTION,
                pattern=f"^({pr_actions})$",
                match_type=MatchType.PATTERN,
            ),
            FilterClause(
                field=ClauseField.BASE_REF,
                pattern=f"^{re.escape(integration_ref)}$",
                match_type=MatchType.PATTERN,
            ),
        ],
    )

    return [push_filter, pull_request_filter]


class TriggerMatcher:
    """Evaluates events against an ordered list of trigger filters.

    Attributes:
        filters: Filters in evaluation order.
    """

    def __init__(self, filters: Sequence[TriggerFilter]):
        self.filters = list(filters)

    @classmethod
    def for_definition(cls, definition: PipelineDefinition) -> "TriggerMatcher":
        return cls(build_default_filters(definition))

    def match(self, event: WebhookEvent) -> TriggerMatch:
        """Return the first matching filter's entry point, if any.

        Args:
            event: The normalized webhook event.

        Returns:
            TriggerMatch describing the outcome.
        """
        for trigger_filter in self.filters:
            if filter_matches(trigger_filter, event):
                logger.info(
                    "Event matched trigger filter",
                    extra={
                        "filter": trigger_filter.name,
                        "entry_point": trigger_filter.entry_point.value,
                        "event_type": event.event_type.value,
                        "ref": event.ref,
                    },
                )
                return TriggerMatch(
                    matched=True,
                    entry_point=trigger_filter.entry_point,
                    filter_name=trigger_filter.name,
                )

        logger.info(
            "Event matched no trigger filter",
            extra={
                "event_type": event.event_type.value,
                "ref": event.ref,
                "base_ref": event.base_ref,
                "action": event.action,
            },
        )
        return TriggerMatch.no_match()

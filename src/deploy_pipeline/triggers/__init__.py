"""Event-trigger matching.

Decides which inbound webhook events start which pipeline entry point.
"""

from deploy_pipeline.triggers.matcher import (
    PULL_REQUEST_FILTER_NAME,
    PUSH_FILTER_NAME,
    TriggerMatcher,
    build_default_filters,
    clause_holds,
    filter_matches,
)
from deploy_pipeline.triggers.models import (
    ClauseField,
    EntryPoint,
    FilterClause,
    MatchType,
    TriggerFilter,
    TriggerMatch,
)

__all__ = [
    "PULL_REQUEST_FILTER_NAME",
    "PUSH_FILTER_NAME",
    "ClauseField",
    "EntryPoint",
    "FilterClause",
    "MatchType",
    "TriggerFilter",
    "TriggerMatch",
    "TriggerMatcher",
    "build_default_filters",
    "clause_holds",
    "filter_matches",
]

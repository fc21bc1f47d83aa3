"""Trigger filter models.

A TriggerFilter is a conjunction of clauses; a list of filters is a
disjunction. Each clause tests one event field against a pattern and may
invert the result (exclude polarity). A field the event does not carry never
satisfies a clause, whatever its polarity.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EntryPoint(str, Enum):
    """Where a matched event enters the pipeline.

    Attributes:
        SOURCE: Full run: Source → Test → Deploy.
        PULL_REQUEST_VALIDATION: Source → Test with commit status reporting.
    """

    SOURCE = "source"
    PULL_REQUEST_VALIDATION = "pull_request_validation"


class ClauseField(str, Enum):
    """Event fields a clause can test."""

    EVENT_TYPE = "event_type"
    REF = "ref"
    BASE_REF = "base_ref"
    ACTION = "action"


class MatchType(str, Enum):
    """How a clause compares the field to its pattern.

    Attributes:
        EXACT: String equality; no pattern semantics at all.
        PATTERN: Regular expression that must match the whole value.
    """

    EXACT = "exact"
    PATTERN = "pattern"


class FilterClause(BaseModel):
    """A single test of one event field.

    Attributes:
        field: The event field to test.
        pattern: The literal value (EXACT) or regex (PATTERN).
        match_type: Exact equality or full-match regex.
        exclude: When true the clause holds if the field does NOT match.
    """

    model_config = ConfigDict(frozen=True)

    field: ClauseField

    pattern: str = Field(..., min_length=1)

    match_type: MatchType = MatchType.EXACT

    exclude: bool = False

    @model_validator(mode="after")
    def validate_pattern(self) -> "FilterClause":
        if self.match_type == MatchType.PATTERN:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"Invalid clause pattern {self.pattern!r}: {e}")
        return self


class TriggerFilter(BaseModel):
    """A named conjunction of clauses mapped to an entry point."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)

    entry_point: EntryPoint

    clauses: List[FilterClause] = Field(..., min_length=1)


@dataclass(frozen=True)
class TriggerMatch:
    """Result of evaluating an event against the trigger filters.

    Attributes:
        matched: Whether any filter matched.
        entry_point: The entry point of the winning filter.
        filter_name: Name of the winning filter.
    """

    matched: bool
    entry_point: Optional[EntryPoint] = None
    filter_name: Optional[str] = None

    @classmethod
    def no_match(cls) -> "TriggerMatch":
        return cls(matched=False)

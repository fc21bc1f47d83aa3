"""Webhook event models for the deployment pipeline.

This module defines the normalized inbound event the trigger matcher
evaluates. Both GitHub push and pull_request deliveries are reduced to the
same shape; fields that a delivery does not carry are left as None so that
matching fails closed on them.

The models use Pydantic for validation, consistent with the pipeline's
configuration approach in config.py.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    """Inbound event types the pipeline understands."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


class PullRequestAction(str, Enum):
    """Normalized pull-request actions that can trigger validation.

    GitHub's own vocabulary is mapped onto these by the webhook handler:
    opened → created, synchronize/edited → updated, reopened → reopened.
    """

    CREATED = "created"
    UPDATED = "updated"
    REOPENED = "reopened"


class WebhookEvent(BaseModel):
    """Normalized inbound webhook event.

    Attributes:
        event_type: push or pull_request.
        ref: For pushes, the pushed ref; for pull requests, the head ref.
        base_ref: For pull requests, the target ref (refs/heads/<base>).
        action: For pull requests, the normalized action.
        commit_sha: The commit to build (push "after", PR head sha).
        pull_request_number: The pull request number, if any.
        repository: Full repository path in format "{owner}/{repo}".
        delivery_id: The source host's delivery identifier.
    """

    event_type: WebhookEventType = Field(
        ...,
        description="The type of event delivered by the source host",
    )

    ref: Optional[str] = Field(
        default=None,
        description="Pushed ref, or the pull request's head ref",
    )

    base_ref: Optional[str] = Field(
        default=None,
        description="Target ref of a pull request",
    )

    action: Optional[str] = Field(
        default=None,
        description="Normalized pull request action",
    )

    commit_sha: Optional[str] = Field(
        default=None,
        description="Commit the run should build",
    )

    pull_request_number: Optional[int] = Field(
        default=None,
        gt=0,
        description="Pull request number for pull_request events",
    )

    repository: Optional[str] = Field(
        default=None,
        description='Full repository path in format "{owner}/{repo}"',
    )

    delivery_id: Optional[str] = Field(
        default=None,
        description="Source host delivery identifier",
    )

    @property
    def fetch_ref(self) -> Optional[str]:
        """The most precise ref to fetch: the commit when known."""
        return self.commit_sha or self.ref

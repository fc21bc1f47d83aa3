"""GitHub integration for source fetch, commit statuses and webhooks."""

from deploy_pipeline.github.client import (
    COMMIT_STATES,
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    source_fetch_reason,
)

__all__ = [
    "COMMIT_STATES",
    "GitHubAPIError",
    "GitHubClient",
    "RateLimitError",
    "source_fetch_reason",
]

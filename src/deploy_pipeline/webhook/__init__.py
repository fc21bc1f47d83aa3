"""GitHub webhook handling for the deployment pipeline.

This module verifies and parses GitHub webhook deliveries:
- push - a ref was updated
- pull_request - a pull request was opened, synchronized or reopened

Deliveries are authenticated with an HMAC-SHA256 signature over the raw body
before any parsing or trigger matching takes place.
"""

from .handler import WebhookHandler, compute_signature, create_webhook_handler
from .models import PullRequestAction, WebhookEvent, WebhookEventType

__all__ = [
    "PullRequestAction",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookHandler",
    "compute_signature",
    "create_webhook_handler",
]

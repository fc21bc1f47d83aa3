"""GitHub webhook handler for the deployment pipeline.

This module verifies and parses GitHub webhook deliveries. Verification
happens on the raw request body, before any parsing or trigger matching:
GitHub signs each delivery with HMAC-SHA256 over the body using the shared
webhook secret and sends the result in the X-Hub-Signature-256 header as
"sha256=<hexdigest>".

GitHub Webhook Payload Structure (push event):
{
  "ref": "refs/heads/master",
  "after": "9f2c...",
  "deleted": false,
  "repository": {"full_name": "owner/repo"}
}

GitHub Webhook Payload Structure (pull_request event):
{
  "action": "opened",
  "number": 7,
  "pull_request": {
    "head": {"ref": "feature-x", "sha": "a1b2..."},
    "base": {"ref": "master"}
  },
  "repository": {"full_name": "owner/repo"}
}

Flat payloads carrying "event_type", "ref", "base_ref" and "action" keys
directly are also accepted.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

from deploy_pipeline.errors import TriggerRejected
from deploy_pipeline.webhook.models import (
    PullRequestAction,
    WebhookEvent,
    WebhookEventType,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# GitHub pull_request actions mapped onto the trigger vocabulary
GITHUB_PR_ACTIONS: Dict[str, str] = {
    "opened": PullRequestAction.CREATED.value,
    "synchronize": PullRequestAction.UPDATED.value,
    "edited": PullRequestAction.UPDATED.value,
    "reopened": PullRequestAction.REOPENED.value,
}


def compute_signature(secret: str, body: bytes) -> str:
    """Compute the X-Hub-Signature-256 header value for a body.

    Args:
        secret: The shared webhook secret.
        body: The raw request body.

    Returns:
        The signature in "sha256=<hexdigest>" form.
    """
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class WebhookHandler:
    """Verifies and parses GitHub webhook deliveries.

    Attributes:
        secret: The shared webhook secret used to verify signatures.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("webhook secret cannot be empty")
        self.secret = secret

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """Verify a delivery's HMAC signature.

        Args:
            body: The raw request body, exactly as received.
            signature: The X-Hub-Signature-256 header value.

        Raises:
            TriggerRejected: If the signature is missing or does not match.
        """
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            logger.warning("Rejected webhook delivery without a valid signature header")
            raise TriggerRejected(
                "Missing or malformed webhook signature",
                reason="invalid_signature",
            )

        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(expected, signature):
            logger.warning("Rejected webhook delivery with mismatched signature")
            raise TriggerRejected(
                "Webhook signature does not match",
                reason="invalid_signature",
            )

    def parse_event(
        self,
        payload: Any,
        event_name: Optional[str] = None,
        delivery_id: Optional[str] = None,
    ) -> Optional[WebhookEvent]:
        """Parse a delivery into a WebhookEvent.

        Fields that are missing or malformed are left as None rather than
        rejected here; the trigger matcher treats them as non-matching.

        Args:
            payload: The decoded JSON payload.
            event_name: The X-GitHub-Event header value, if any.
            delivery_id: The X-GitHub-Delivery header value, if any.

        Returns:
            WebhookEvent for push and pull_request deliveries, None otherwise.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        event_type = self._parse_event_type(event_name or payload.get("event_type"))
        if event_type is None:
            logger.debug("Ignoring unsupported event type: %s", event_name)
            return None

        if event_type == WebhookEventType.PUSH:
            event = self._parse_push(payload)
        else:
            event = self._parse_pull_request(payload)

        if event is None:
            return None

        event = event.model_copy(
            update={
                "repository": self._extract_repository(payload),
                "delivery_id": delivery_id,
            }
        )

        logger.info(
            "Parsed webhook event",
            extra={
                "event_type": event.event_type.value,
                "ref": event.ref,
                "base_ref": event.base_ref,
                "action": event.action,
                "delivery_id": delivery_id,
            },
        )
        return event

    def _parse_event_type(self, value: Any) -> Optional[WebhookEventType]:
        if not isinstance(value, str):
            return None
        try:
            return WebhookEventType(value)
        except ValueError:
            return None

    def _parse_push(self, payload: Dict[str, Any]) -> Optional[WebhookEvent]:
        if payload.get("deleted") is True:
            logger.debug("Ignoring branch deletion push: %s", payload.get("ref"))
            return None

        return WebhookEvent(
            event_type=WebhookEventType.PUSH,
            ref=self._string_or_none(payload.get("ref")),
            commit_sha=self._string_or_none(payload.get("after")),
        )

    def _parse_pull_request(self, payload: Dict[str, Any]) -> WebhookEvent:
        action = self._string_or_none(payload.get("action"))
        if action is not None:
            action = GITHUB_PR_ACTIONS.get(action, action)

        pull_request = payload.get("pull_request")
        if isinstance(pull_request, dict):
            head = pull_request.get("head")
            base = pull_request.get("base")
            head = head if isinstance(head, dict) else {}
            base = base if isinstance(base, dict) else {}
            ref = self._qualify_branch(head.get("ref"))
            base_ref = self._qualify_branch(base.get("ref"))
            commit_sha = self._string_or_none(head.get("sha"))
            number = payload.get("number") or pull_request.get("number")
        else:
            ref = self._qualify_branch(payload.get("ref"))
            base_ref = self._qualify_branch(payload.get("base_ref"))
            commit_sha = self._string_or_none(payload.get("commit_sha"))
            number = payload.get("number")

        if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
            number = None

        return WebhookEvent(
            event_type=WebhookEventType.PULL_REQUEST,
            ref=ref,
            base_ref=base_ref,
            action=action,
            commit_sha=commit_sha,
            pull_request_number=number,
        )

    def _qualify_branch(self, value: Any) -> Optional[str]:
        """Turn a bare branch name into refs/heads/<name>."""
        value = self._string_or_none(value)
        if value is None:
            return None
        if value.startswith("refs/"):
            return value
        return f"refs/heads/{value}"

    def _extract_repository(self, payload: Dict[str, Any]) -> Optional[str]:
        repo_data = payload.get("repository")
        if not isinstance(repo_data, dict):
            return None
        return self._string_or_none(repo_data.get("full_name"))

    @staticmethod
    def _string_or_none(value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


def create_webhook_handler(secret: str) -> WebhookHandler:
    """Factory function to create a WebhookHandler instance.

    Args:
        secret: The GitHub webhook secret.

    Returns:
        A configured WebhookHandler instance.
    """
    return WebhookHandler(secret=secret)

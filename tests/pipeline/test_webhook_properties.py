"""Property-based tests for GitHub webhook verification and parsing.

This module contains property-based tests using Hypothesis to verify that
the webhook handler rejects any delivery whose signature does not match the
raw body, and normalizes push and pull_request payloads into WebhookEvents.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import pytest
from hypothesis import assume, given, settings, strategies as st

from deploy_pipeline.errors import TriggerRejected
from deploy_pipeline.webhook import (
    WebhookEventType,
    WebhookHandler,
    compute_signature,
    create_webhook_handler,
)

SECRET = "webhook-secret"


# =============================================================================
# Hypothesis Strategies for Generating GitHub Payloads
# =============================================================================


@st.composite
def valid_branch(draw: st.DrawFn) -> str:
    return draw(
        st.text(
            alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-_"),
            min_size=1,
            max_size=30,
        )
    )


@st.composite
def commit_sha(draw: st.DrawFn) -> str:
    return draw(st.text(alphabet="0123456789abcdef", min_size=40, max_size=40))


@st.composite
def push_payload(draw: st.DrawFn) -> dict:
    return {
        "ref": f"refs/heads/{draw(valid_branch())}",
        "after": draw(commit_sha()),
        "deleted": False,
        "repository": {"full_name": "acme/infra"},
    }


@st.composite
def pull_request_payload(draw: st.DrawFn) -> dict:
    return {
        "action": draw(st.sampled_from(["opened", "synchronize", "edited", "reopened"])),
        "number": draw(st.integers(min_value=1, max_value=100000)),
        "pull_request": {
            "head": {"ref": draw(valid_branch()), "sha": draw(commit_sha())},
            "base": {"ref": draw(valid_branch())},
        },
        "repository": {"full_name": "acme/infra"},
    }


# =============================================================================
# Signature Verification
# =============================================================================


class TestSignatureVerification:
    @given(body=st.binary(max_size=2048))
    @settings(max_examples=100)
    def test_valid_signature_accepted(self, body):
        """Property: the signature computed with the shared secret verifies."""
        handler = WebhookHandler(secret=SECRET)

        handler.verify_signature(body, compute_signature(SECRET, body))

    @given(body=st.binary(max_size=2048), other=st.binary(max_size=2048))
    @settings(max_examples=100)
    def test_signature_over_other_body_rejected(self, body, other):
        """Property: a signature never verifies a body it was not computed over."""
        assume(body != other)
        handler = WebhookHandler(secret=SECRET)

        with pytest.raises(TriggerRejected) as exc_info:
            handler.verify_signature(body, compute_signature(SECRET, other))

        assert exc_info.value.reason == "invalid_signature"

    @given(body=st.binary(max_size=512), secret=st.text(min_size=1, max_size=40))
    @settings(max_examples=100)
    def test_signature_with_other_secret_rejected(self, body, secret):
        assume(secret != SECRET)
        handler = WebhookHandler(secret=SECRET)

        with pytest.raises(TriggerRejected):
            handler.verify_signature(body, compute_signature(secret, body))

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "deadbeef"])
    def test_missing_or_malformed_header_rejected(self, header):
        handler = WebhookHandler(secret=SECRET)

        with pytest.raises(TriggerRejected):
            handler.verify_signature(b"{}", header)

    def test_signature_format(self):
        signature = compute_signature("It's a Secret to Everybody", b"Hello, World!")

        assert signature == (
            "sha256=757107ea0eb2509fc211221cce984b8a37570b6d7586c22c46f4379c8b043e17"
        )

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            create_webhook_handler("")


# =============================================================================
# Payload Parsing
# =============================================================================


class TestPushParsing:
    @given(payload=push_payload())
    @settings(max_examples=100)
    def test_push_fields(self, payload):
        """Property: push payloads keep their ref and commit."""
        event = WebhookHandler(secret=SECRET).parse_event(
            payload, event_name="push", delivery_id="d-1"
        )

        assert event is not None
        assert event.event_type == WebhookEventType.PUSH
        assert event.ref == payload["ref"]
        assert event.commit_sha == payload["after"]
        assert event.base_ref is None
        assert event.repository == "acme/infra"
        assert event.delivery_id == "d-1"
        assert event.fetch_ref == payload["after"]

    def test_branch_deletion_ignored(self):
        payload = {"ref": "refs/heads/master", "deleted": True, "after": "0" * 40}

        assert WebhookHandler(secret=SECRET).parse_event(payload, "push") is None


class TestPullRequestParsing:
    @given(payload=pull_request_payload())
    @settings(max_examples=100)
    def test_pull_request_fields(self, payload):
        """Property: pull request payloads are normalized to qualified refs."""
        event = WebhookHandler(secret=SECRET).parse_event(payload, "pull_request")
        pull_request = payload["pull_request"]

        assert event is not None
        assert event.event_type == WebhookEventType.PULL_REQUEST
        assert event.ref == f"refs/heads/{pull_request['head']['ref']}"
        assert event.base_ref == f"refs/heads/{pull_request['base']['ref']}"
        assert event.commit_sha == pull_request["head"]["sha"]
        assert event.pull_request_number == payload["number"]
        assert event.action in ("created", "updated", "reopened")

    @pytest.mark.parametrize(
        "github_action,normalized",
        [
            ("opened", "created"),
            ("synchronize", "updated"),
            ("edited", "updated"),
            ("reopened", "reopened"),
            ("closed", "closed"),
        ],
    )
    def test_action_mapping(self, github_action, normalized):
        payload = {
            "action": github_action,
            "number": 3,
            "pull_request": {"head": {"ref": "f", "sha": "a" * 40}, "base": {"ref": "master"}},
        }

        event = WebhookHandler(secret=SECRET).parse_event(payload, "pull_request")

        assert event.action == normalized

    def test_flat_payload(self):
        payload = {
            "event_type": "pull_request",
            "action": "created",
            "ref": "refs/heads/feature",
            "base_ref": "refs/heads/master",
        }

        event = WebhookHandler(secret=SECRET).parse_event(payload)

        assert event.base_ref == "refs/heads/master"
        assert event.pull_request_number is None

    def test_malformed_pull_request_fields_left_empty(self):
        payload = {"action": "opened", "number": "seven", "pull_request": {"head": "x"}}

        event = WebhookHandler(secret=SECRET).parse_event(payload, "pull_request")

        assert event.ref is None
        assert event.base_ref is None
        assert event.pull_request_number is None


class TestUnsupportedPayloads:
    @pytest.mark.parametrize("event_name", ["issues", "release", None])
    def test_unsupported_event_types(self, event_name):
        assert WebhookHandler(secret=SECRET).parse_event({"ref": "x"}, event_name) is None

    @pytest.mark.parametrize("payload", [None, [], "push", 42])
    def test_non_dict_payloads(self, payload):
        assert WebhookHandler(secret=SECRET).parse_event(payload, "push") is None

"""Tests for the HTTP surface of the pipeline service.

The lifespan is not entered; module globals are patched with a real
webhook handler and a mocked controller.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from deploy_pipeline import main
from deploy_pipeline.definition.models import ActionProvider
from deploy_pipeline.events.metrics import get_metrics
from deploy_pipeline.permissions import RoleBinder
from deploy_pipeline.singleton.guard import SingletonRegistryError
from deploy_pipeline.state.machine import RunNotFoundError
from deploy_pipeline.state.models import RunRecord, RunState, RunTrigger
from deploy_pipeline.triggers.models import EntryPoint
from deploy_pipeline.webhook.handler import WebhookHandler, compute_signature

SECRET = "webhook-secret"

PUSH_PAYLOAD = {
    "ref": "refs/heads/master",
    "after": "a" * 40,
    "repository": {"full_name": "acme/infra"},
}


def _run(run_id: int = 1, state: RunState = RunState.PENDING) -> RunRecord:
    return RunRecord(
        run_id=run_id,
        pipeline_name="infrastructure-pipeline",
        entry_point=EntryPoint.SOURCE,
        trigger=RunTrigger(event_type="push", ref="refs/heads/master"),
        current_state=state,
    )


@pytest.fixture
def controller(monkeypatch):
    mock = MagicMock()
    mock.definition.name = "infrastructure-pipeline"
    mock.handle_event = AsyncMock(return_value=_run())
    mock.state_machine.get = AsyncMock(return_value=None)
    mock.cancel = AsyncMock(return_value=_run(state=RunState.CANCELLED))
    monkeypatch.setattr(main, "controller", mock)
    monkeypatch.setattr(main, "webhook_handler", WebhookHandler(SECRET))
    monkeypatch.setattr(main, "event_emitter", AsyncMock())
    return mock


@pytest.fixture
def client() -> TestClient:
    return TestClient(main.app)


def _post(client, payload, event="push", secret=SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/github",
        content=body,
        headers={
            "X-Hub-Signature-256": compute_signature(secret, body),
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": "delivery-1",
            "Content-Type": "application/json",
        },
    )


class TestWebhookEndpoint:
    def test_not_initialized(self, client, monkeypatch):
        monkeypatch.setattr(main, "controller", None)
        monkeypatch.setattr(main, "webhook_handler", None)

        assert _post(client, PUSH_PAYLOAD).status_code == 503

    def test_bad_signature_rejected(self, client, controller):
        response = _post(client, PUSH_PAYLOAD, secret="wrong")

        assert response.status_code == 401
        controller.handle_event.assert_not_called()
        rejected = main.event_emitter.emit.call_args.args[0]
        assert rejected.details == {"reason": "invalid_signature"}

    def test_missing_signature_rejected(self, client, controller):
        response = client.post("/webhooks/github", content=b"{}")

        assert response.status_code == 401

    def test_ping(self, client, controller):
        response = _post(client, {"zen": "Keep it logically awesome."}, event="ping")

        assert response.json() == {"status": "ok", "message": "pong"}

    def test_push_accepted(self, client, controller):
        response = _post(client, PUSH_PAYLOAD)

        assert response.status_code == 200
        assert response.json() == {"status": "accepted", "run_id": 1, "entry_point": "source"}
        event = controller.handle_event.call_args.args[0]
        assert event.ref == "refs/heads/master"
        assert event.commit_sha == "a" * 40
        assert event.delivery_id == "delivery-1"

    def test_unmatched_event_ignored(self, client, controller):
        controller.handle_event.return_value = None

        response = _post(client, PUSH_PAYLOAD)

        assert response.json()["status"] == "ignored"

    def test_unsupported_event_ignored(self, client, controller):
        response = _post(client, {"action": "opened"}, event="issues")

        assert response.json()["status"] == "ignored"
        controller.handle_event.assert_not_called()

    def test_invalid_json(self, client, controller):
        body = b"not json"
        response = client.post(
            "/webhooks/github",
            content=body,
            headers={
                "X-Hub-Signature-256": compute_signature(SECRET, body),
                "X-GitHub-Event": "push",
            },
        )

        assert response.status_code == 400


class TestRunEndpoints:
    def test_get_missing_run(self, client, controller):
        assert client.get("/runs/5").status_code == 404

    def test_get_run(self, client, controller):
        controller.state_machine.get.return_value = _run(run_id=5, state=RunState.TEST_DONE)

        body = client.get("/runs/5").json()

        assert body["run_id"] == 5
        assert body["current_state"] == "test_done"
        assert body["entry_point"] == "source"

    def test_cancel(self, client, controller):
        response = client.post("/runs/1/cancel", params={"reason": "Superseded"})

        assert response.json() == {"run_id": 1, "state": "cancelled"}
        controller.cancel.assert_awaited_once_with(1, "Superseded")

    def test_cancel_missing_run(self, client, controller):
        controller.cancel.side_effect = RunNotFoundError(9)

        assert client.post("/runs/9/cancel").status_code == 404


class TestProbes:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_ready(self, client, controller, monkeypatch):
        repository = MagicMock()
        repository.health_check = AsyncMock(return_value=True)
        monkeypatch.setattr(main, "run_repository", repository)

        assert client.get("/ready").status_code == 200

        repository.health_check.return_value = False
        response = client.get("/ready")
        assert response.status_code == 503
        assert response.json()["dependencies"]["database"] == "unavailable"

    def test_metrics(self, client):
        get_metrics()

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "deploy_pipeline_" in response.text


class TestStartupHelpers:
    def test_registry_outage_does_not_stop_startup(self, settings_factory, monkeypatch):
        cfg = settings_factory(webhook_callback_url="https://pipeline.example.com/webhooks/github")
        registry = MagicMock()
        registry.get = AsyncMock(side_effect=SingletonRegistryError("DynamoDB get failed"))
        monkeypatch.setattr(main, "_create_singleton_registry", lambda _cfg: registry)
        gh_client = MagicMock()
        gh_client.create_webhook = AsyncMock()
        emitter = AsyncMock()

        handle = asyncio.run(main._ensure_webhook_credential(cfg, gh_client, emitter))

        assert handle is None
        gh_client.create_webhook.assert_not_awaited()
        emitter.emit.assert_not_awaited()

    def test_provision_roles_writes_bound_roles(self, settings_factory, definition, monkeypatch):
        cfg = settings_factory(
            cloudformation_role_arn="arn:aws:iam::123456789012:role/cfn-exec",
        )
        iam = MagicMock()
        monkeypatch.setattr(main.boto3, "client", lambda service, **kwargs: iam)
        roles = RoleBinder(
            "123456789012",
            "us-east-1",
            "acme-artifacts",
            "p",
            cloudformation_role_arn=cfg.cloudformation_role_arn,
        ).bind_definition(definition)

        asyncio.run(main._provision_roles(cfg, roles))

        created = sorted(c.kwargs["RoleName"] for c in iam.create_role.call_args_list)
        assert created == sorted(role.name for role in roles.values())
        assert iam.put_role_policy.call_count == len(roles)

    def test_controller_passes_service_role_to_deploy(self, settings_factory, definition, monkeypatch):
        cfg = settings_factory(
            artifact_bucket=None,
            cloudformation_role_arn="arn:aws:iam::123456789012:role/cfn-exec",
        )
        monkeypatch.setattr(main.boto3, "client", lambda service, **kwargs: MagicMock())

        built = main._build_controller(cfg, definition, MagicMock(), AsyncMock(), MagicMock())

        deploy = built.executor.handlers[ActionProvider.CLOUDFORMATION]
        assert deploy.service_role_arn == "arn:aws:iam::123456789012:role/cfn-exec"
        assert built.roles["Deploy"].allows(
            "iam:PassRole", "arn:aws:iam::123456789012:role/cfn-exec"
        )

"""Pytest configuration for all tests."""

import pytest

from deploy_pipeline.config import PipelineSettings
from deploy_pipeline.definition.loader import build_default_definition


def make_settings(**overrides) -> PipelineSettings:
    """Settings for a pipeline tracking acme/infra master."""
    values = {
        "github_webhook_secret": "webhook-secret",
        "github_token": "ghp_test_token",
        "repository_owner": "acme",
        "repository_name": "infra",
        "integration_branch": "master",
        "stack_name": "infra-prod",
        "validation_command": "make test",
        "aws_account_id": "123456789012",
        "aws_region": "us-east-1",
        "artifact_bucket": "acme-artifacts",
    }
    values.update(overrides)
    return PipelineSettings(**values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return make_settings()


@pytest.fixture
def definition(pipeline_settings):
    return build_default_definition(pipeline_settings)

"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from deploy_pipeline.config import PipelineSettings, get_settings


@pytest.fixture
def pipeline_env(monkeypatch):
    """Minimal required environment for PipelineSettings."""
    monkeypatch.setenv("PIPELINE_GITHUB_WEBHOOK_SECRET", "test-secret")
    monkeypatch.setenv("PIPELINE_GITHUB_TOKEN", "test-token")
    monkeypatch.setenv("PIPELINE_REPOSITORY_OWNER", "acme")
    monkeypatch.setenv("PIPELINE_REPOSITORY_NAME", "infra")
    monkeypatch.setenv("PIPELINE_STACK_NAME", "infra-prod")


class TestPipelineSettings:
    """Tests for PipelineSettings."""

    def test_defaults(self, pipeline_env):
        """Test that default values are loaded when optional env vars are not set."""
        settings = get_settings()

        assert settings.integration_branch == "master"
        assert settings.integration_ref == "refs/heads/master"
        assert settings.github_base_url == "https://api.github.com"
        assert settings.template_path == "template.yaml"
        assert settings.create_webhook_credential is True
        assert settings.artifact_bucket is None
        assert settings.database_url is None
        assert settings.test_timeout_seconds is None
        assert settings.cloudformation_role_arn is None
        assert settings.provision_roles is False
        assert settings.port == 8080

    def test_loads_from_env(self, pipeline_env, monkeypatch):
        monkeypatch.setenv("PIPELINE_INTEGRATION_BRANCH", "main")
        monkeypatch.setenv("PIPELINE_CREATE_WEBHOOK_CREDENTIAL", "false")
        monkeypatch.setenv("PIPELINE_TEST_TIMEOUT_SECONDS", "600")
        monkeypatch.setenv("PIPELINE_AWS_ACCOUNT_ID", "123456789012")
        monkeypatch.setenv("PIPELINE_AWS_REGION", "eu-west-1")

        settings = get_settings()

        assert settings.integration_ref == "refs/heads/main"
        assert settings.create_webhook_credential is False
        assert settings.test_timeout_seconds == 600
        assert settings.execution_scope == "123456789012/eu-west-1"

    def test_missing_required_fields(self, monkeypatch):
        for name in ("GITHUB_WEBHOOK_SECRET", "GITHUB_TOKEN", "STACK_NAME"):
            monkeypatch.delenv(f"PIPELINE_{name}", raising=False)

        with pytest.raises(ValidationError):
            PipelineSettings()

    @pytest.mark.parametrize("secret", ["", "   "])
    def test_empty_webhook_secret_rejected(self, settings_factory, secret):
        with pytest.raises(ValidationError):
            settings_factory(github_webhook_secret=secret)

    def test_full_ref_rejected_as_branch(self, settings_factory):
        """Test that the integration branch must be a bare branch name."""
        with pytest.raises(ValidationError):
            settings_factory(integration_branch="refs/heads/master")

    @pytest.mark.parametrize("path", ["/etc/template.yaml", "../template.yaml"])
    def test_template_path_must_stay_in_artifact(self, settings_factory, path):
        with pytest.raises(ValidationError):
            settings_factory(template_path=path)

    def test_database_url_scheme(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(database_url="mysql://localhost/runs")

        settings = settings_factory(database_url="postgresql://pipeline@db/runs")
        assert settings.database_url == "postgresql://pipeline@db/runs"

    def test_blank_database_url_means_in_memory(self, settings_factory):
        assert settings_factory(database_url="").database_url is None

    def test_cloudformation_role_must_be_role_arn(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(cloudformation_role_arn="arn:aws:iam::123456789012:user/ci")

        role = "arn:aws:iam::123456789012:role/cfn-exec"
        assert settings_factory(cloudformation_role_arn=role).cloudformation_role_arn == role
        assert settings_factory(cloudformation_role_arn=" ").cloudformation_role_arn is None

    def test_stage_timeout_must_be_positive(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(deploy_timeout_seconds=0)

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_range(self, settings_factory, port):
        with pytest.raises(ValidationError):
            settings_factory(port=port)

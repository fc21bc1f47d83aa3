"""Pipeline configuration using pydantic-settings.

This module defines the PipelineSettings class that reads configuration
from environment variables with the PIPELINE_ prefix. Settings are read once
when the pipeline service itself is deployed, never per run.

Configuration surface:
- Source repository owner/name, integration branch, source access credential
- Target stack name and template path within the source artifact
- Whether the singleton webhook credential may be created by this service
- Optional backing stores (S3 artifacts, DynamoDB singletons, PostgreSQL runs)
"""

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Deployment pipeline configuration from environment variables.

    All environment variables are prefixed with PIPELINE_ (e.g., PIPELINE_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_webhook_secret: Shared secret for webhook HMAC signatures
    - github_token: Source access credential for the repository
    - repository_owner / repository_name: The source repository
    - stack_name: The deployment target stack
    """

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Source Configuration
    # -------------------------------------------------------------------------
    github_webhook_secret: str

    github_token: str

    github_base_url: str = "https://api.github.com"

    repository_owner: str

    repository_name: str

    # Branch name only, e.g. "master" (not "refs/heads/master")
    integration_branch: str = "master"

    # -------------------------------------------------------------------------
    # Pipeline Definition
    # -------------------------------------------------------------------------
    pipeline_name: str = "infrastructure-pipeline"

    # YAML definition; when unset the standard three-stage pipeline is built
    definition_path: Optional[str] = None

    stack_name: str

    template_path: str = "template.yaml"

    validation_command: str = "make test"

    # Optional per-stage timeouts in seconds (unset means no timeout)
    source_timeout_seconds: Optional[int] = None
    test_timeout_seconds: Optional[int] = None
    deploy_timeout_seconds: Optional[int] = None

    # -------------------------------------------------------------------------
    # Account / Execution Scope
    # -------------------------------------------------------------------------
    aws_account_id: str = "000000000000"

    aws_region: str = "us-east-1"

    aws_partition: str = "aws"

    # -------------------------------------------------------------------------
    # Deployment Identity
    # -------------------------------------------------------------------------
    # Service role CloudFormation provisions template resources with; unset
    # means CloudFormation acts with the Deploy stage's own credentials
    cloudformation_role_arn: Optional[str] = None

    # Create or update the bound stage roles in IAM at startup
    provision_roles: bool = False

    # -------------------------------------------------------------------------
    # Singleton Webhook Credential
    # -------------------------------------------------------------------------
    # When false the credential is assumed to be registered out-of-band
    create_webhook_credential: bool = True

    webhook_callback_url: Optional[str] = None

    singleton_table: Optional[str] = None

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    artifact_bucket: Optional[str] = None

    artifact_prefix: str = "pipeline-artifacts"

    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        """Validate that webhook secret is not empty."""
        if not v or not v.strip():
            raise ValueError("github_webhook_secret cannot be empty")
        return v

    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("repository_owner", "repository_name", "stack_name")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("identifier cannot be empty")
        return v.strip()

    @field_validator("integration_branch")
    @classmethod
    def validate_integration_branch(cls, v: str) -> str:
        """Validate the branch is a bare branch name."""
        v = v.strip()
        if not v:
            raise ValueError("integration_branch cannot be empty")
        if v.startswith("refs/"):
            raise ValueError(
                "integration_branch must be a branch name, not a full ref"
            )
        return v

    @field_validator("template_path")
    @classmethod
    def validate_template_path(cls, v: str) -> str:
        """Validate that the template path is relative to the artifact root."""
        if Path(v).is_absolute() or ".." in Path(v).parts:
            raise ValueError("template_path must be relative to the artifact root")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate database URL format when one is configured."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator(
        "source_timeout_seconds", "test_timeout_seconds", "deploy_timeout_seconds"
    )
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("stage timeouts must be at least 1 second")
        return v

    @field_validator("cloudformation_role_arn")
    @classmethod
    def validate_cloudformation_role_arn(cls, v: Optional[str]) -> Optional[str]:
        """Validate the service role is an IAM role ARN when one is configured."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith("arn:") or ":role/" not in v:
            raise ValueError("cloudformation_role_arn must be an IAM role ARN")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def integration_ref(self) -> str:
        """Full ref of the integration branch, e.g. refs/heads/master."""
        return f"refs/heads/{self.integration_branch}"

    @property
    def execution_scope(self) -> str:
        """Scope for account-level singletons: "{account}/{region}"."""
        return f"{self.aws_account_id}/{self.aws_region}"


def get_settings() -> PipelineSettings:
    """Create and return PipelineSettings instance.

    Returns:
        PipelineSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return PipelineSettings()

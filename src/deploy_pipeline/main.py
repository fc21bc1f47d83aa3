"""FastAPI application entry point for the deployment pipeline.

This module provides the HTTP surface of the pipeline service. It receives
GitHub webhooks, verifies their signatures, hands matching events to the
pipeline controller, and exposes run inspection, cancellation, health and
Prometheus metrics endpoints.

Configuration is read once at startup. The webhook credential is a
once-per-scope resource and is registered through the singleton guard
during startup.
"""

import logging
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import boto3
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from .artifacts.store import ArtifactStore, InMemoryArtifactStore, S3ArtifactStore
from .config import PipelineSettings, get_settings
from .controller import PipelineController
from .definition.loader import build_default_definition, load_definition
from .definition.models import PipelineDefinition
from .errors import SingletonConflict, TriggerRejected
from .events.emitter import EventEmitter, EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .events.models import EventType, PipelineEvent
from .github.client import GitHubAPIError, GitHubClient
from .permissions.binder import RoleBinder
from .permissions.models import Role
from .permissions.provisioner import RoleProvisioner, RoleProvisioningError
from .singleton import WEBHOOK_CREDENTIAL
from .singleton.guard import (
    DynamoDBSingletonRegistry,
    InMemorySingletonRegistry,
    SingletonHandle,
    SingletonRegistry,
    SingletonRegistryError,
    SingletonResourceGuard,
)
from .stages.audit import configure_audit_logging
from .stages.deploy import CloudFormationEngine
from .stages.executor import build_stage_executor
from .state.machine import RunNotFoundError, RunStateMachine
from .state.repository import InMemoryRunRepository, PostgresRunRepository
from .triggers.matcher import TriggerMatcher
from .webhook.handler import WebhookHandler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: Optional[PipelineSettings] = None
controller: Optional[PipelineController] = None
webhook_handler: Optional[WebhookHandler] = None
github_client: Optional[GitHubClient] = None
event_emitter: Optional[EventEmitter] = None
run_repository = None
webhook_credential: Optional[SingletonHandle] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: PipelineSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Pipeline configuration:")
    logger.info(f"  Pipeline Name: {settings.pipeline_name}")
    logger.info(
        f"  Repository: {settings.repository_owner}/{settings.repository_name}"
    )
    logger.info(f"  Integration Ref: {settings.integration_ref}")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(settings.github_webhook_secret)}"
    )
    logger.info(f"  Definition Path: {settings.definition_path or '<default>'}")
    logger.info(f"  Stack Name: {settings.stack_name}")
    logger.info(f"  Template Path: {settings.template_path}")
    logger.info(f"  Validation Command: {settings.validation_command}")
    logger.info(f"  Execution Scope: {settings.execution_scope}")
    logger.info(
        f"  CloudFormation Role: {settings.cloudformation_role_arn or '<caller credentials>'}"
    )
    logger.info(f"  Provision Roles: {settings.provision_roles}")
    logger.info(f"  Create Webhook Credential: {settings.create_webhook_credential}")
    logger.info(f"  Webhook Callback URL: {settings.webhook_callback_url}")
    logger.info(f"  Singleton Table: {settings.singleton_table or '<in-memory>'}")
    logger.info(f"  Artifact Bucket: {settings.artifact_bucket or '<in-memory>'}")
    logger.info(f"  Artifact Prefix: {settings.artifact_prefix}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Dependency wiring for the pipeline controller
    - Optional IAM provisioning of the bound stage roles
    - Webhook credential registration through the singleton guard
    - Graceful shutdown and cleanup
    """
    global settings, controller, webhook_handler, github_client
    global event_emitter, run_repository, webhook_credential

    logger.info("Deploy Pipeline starting up...")
    configure_audit_logging()

    settings = get_settings()
    _log_configuration(settings)

    definition = _load_pipeline_definition(settings)

    webhook_handler = WebhookHandler(secret=settings.github_webhook_secret)
    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
    )
    event_emitter = create_event_emitter(
        [EventSinkType.LOGGING, EventSinkType.METRICS]
    )
    run_repository = await _create_run_repository(settings)

    controller = _build_controller(
        settings, definition, github_client, event_emitter, run_repository
    )
    if settings.provision_roles:
        await _provision_roles(settings, controller.roles)
    webhook_credential = await _ensure_webhook_credential(
        settings, github_client, event_emitter
    )

    logger.info("Deploy Pipeline started successfully")

    yield

    logger.info("Deploy Pipeline shutting down...")

    if github_client is not None:
        await github_client.close()
    if isinstance(run_repository, PostgresRunRepository):
        await run_repository.disconnect()
    if event_emitter is not None:
        await event_emitter.close()

    logger.info("Deploy Pipeline shutdown complete")


def _load_pipeline_definition(cfg: PipelineSettings) -> PipelineDefinition:
    if cfg.definition_path:
        logger.info("Loading pipeline definition from %s", cfg.definition_path)
        return load_definition(cfg.definition_path)
    return build_default_definition(cfg)


def _build_controller(
    cfg: PipelineSettings,
    definition: PipelineDefinition,
    gh_client: GitHubClient,
    emitter: EventEmitter,
    repository,
) -> PipelineController:
    """Wire all pipeline dependencies into a PipelineController.

    Args:
        cfg: Validated pipeline settings.
        definition: The pipeline definition to run.
        gh_client: Authenticated GitHub API client.
        emitter: Event emitter for run events.
        repository: Run repository backing the state machine.

    Returns:
        Fully wired PipelineController.
    """
    artifact_store = _create_artifact_store(cfg)

    binder = RoleBinder(
        account_id=cfg.aws_account_id,
        region=cfg.aws_region,
        artifact_bucket=cfg.artifact_bucket or "local-artifacts",
        artifact_prefix=cfg.artifact_prefix,
        partition=cfg.aws_partition,
        cloudformation_role_arn=cfg.cloudformation_role_arn,
    )

    executor = build_stage_executor(
        artifact_store,
        gh_client,
        CloudFormationEngine(
            boto3.client("cloudformation", region_name=cfg.aws_region)
        ),
        cloudformation_role_arn=cfg.cloudformation_role_arn,
    )

    return PipelineController(
        definition=definition,
        state_machine=RunStateMachine(repository=repository),
        executor=executor,
        roles=binder.bind_definition(definition),
        matcher=TriggerMatcher.for_definition(definition),
        event_emitter=emitter,
        repository_owner=cfg.repository_owner,
        repository_name=cfg.repository_name,
    )


async def _provision_roles(cfg: PipelineSettings, roles: Mapping[str, Role]) -> None:
    """Create or update the bound stage roles in IAM.

    Raises:
        RoleProvisioningError: If IAM rejects a write; startup does not
            continue.
    """
    provisioner = RoleProvisioner(boto3.client("iam", region_name=cfg.aws_region))
    try:
        created = await provisioner.ensure_roles(roles)
    except RoleProvisioningError as e:
        logger.error(
            "Stage role provisioning failed",
            extra={"role": e.role_name, "error": str(e)},
        )
        raise
    logger.info(
        "Stage roles provisioned",
        extra={"created": sorted(name for name, new in created.items() if new)},
    )


def _create_artifact_store(cfg: PipelineSettings) -> ArtifactStore:
    """S3 when a bucket is configured, in-memory otherwise."""
    if cfg.artifact_bucket:
        return S3ArtifactStore(
            bucket=cfg.artifact_bucket,
            prefix=cfg.artifact_prefix,
            s3_client=boto3.client("s3", region_name=cfg.aws_region),
        )
    logger.warning("No artifact bucket configured, artifacts are kept in memory")
    return InMemoryArtifactStore()


async def _create_run_repository(cfg: PipelineSettings):
    """PostgreSQL when a database URL is configured, in-memory otherwise."""
    if cfg.database_url:
        repository = PostgresRunRepository(cfg.database_url)
        await repository.connect()
        return repository
    logger.warning("No database configured, run state is kept in memory")
    return InMemoryRunRepository()


def _create_singleton_registry(cfg: PipelineSettings) -> SingletonRegistry:
    if cfg.singleton_table:
        return DynamoDBSingletonRegistry(
            table_name=cfg.singleton_table,
            dynamodb_client=boto3.client("dynamodb", region_name=cfg.aws_region),
        )
    return InMemorySingletonRegistry()


async def _ensure_webhook_credential(
    cfg: PipelineSettings,
    gh_client: GitHubClient,
    emitter: EventEmitter,
) -> Optional[SingletonHandle]:
    """Register the repository webhook once per execution scope.

    Returns:
        The credential handle, or None when registration was skipped or
        failed. Failures are logged; the service still accepts deliveries
        for a hook registered out-of-band.
    """
    if not cfg.webhook_callback_url:
        logger.info("No webhook callback URL configured, skipping registration")
        return None

    guard = SingletonResourceGuard(
        _create_singleton_registry(cfg),
        enabled=cfg.create_webhook_credential,
    )

    async def register_webhook():
        hook = await gh_client.create_webhook(
            cfg.repository_owner,
            cfg.repository_name,
            callback_url=cfg.webhook_callback_url,
            secret=cfg.github_webhook_secret,
        )
        return str(hook["id"]), {
            "repository": f"{cfg.repository_owner}/{cfg.repository_name}",
            "url": cfg.webhook_callback_url,
        }

    try:
        handle = await guard.acquire(
            WEBHOOK_CREDENTIAL, cfg.execution_scope, register_webhook
        )
    except (SingletonConflict, SingletonRegistryError, GitHubAPIError) as e:
        logger.error(
            "Webhook credential registration failed",
            extra={"scope": cfg.execution_scope, "error": str(e)},
        )
        return None

    await emitter.emit(
        PipelineEvent(
            event_type=EventType.SINGLETON_ACQUIRED,
            pipeline=cfg.pipeline_name,
            details={
                "kind": handle.kind,
                "scope": handle.scope,
                "resource_id": handle.resource_id,
                "created": handle.created,
            },
        )
    )
    return handle


app = FastAPI(
    title="Deploy Pipeline",
    description="Source, test and deploy pipeline driven by GitHub webhooks",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns:
        dict: Status indicating the application is healthy.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks that the controller is wired and the run repository answers.

    Returns:
        dict: Status and dependency health information, with HTTP 503
        when a dependency is unavailable.
    """
    database_status = "unavailable"
    if run_repository is not None and await run_repository.health_check():
        database_status = "healthy"

    is_ready = controller is not None and database_status == "healthy"
    body = {
        "status": "ready" if is_ready else "not_ready",
        "dependencies": {"database": database_status},
    }
    return JSONResponse(content=body, status_code=200 if is_ready else 503)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    The raw body is verified against X-Hub-Signature-256 before anything
    is parsed. Unsigned or mis-signed deliveries are rejected with 401.

    Returns:
        dict: Acknowledgment with the started run id, or "ignored" when the
        event matched no trigger.
    """
    if webhook_handler is None or controller is None:
        logger.error("Pipeline not initialized")
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    body = await request.body()
    try:
        webhook_handler.verify_signature(
            body, request.headers.get("X-Hub-Signature-256")
        )
    except TriggerRejected as e:
        if event_emitter is not None:
            await event_emitter.emit(
                PipelineEvent(
                    event_type=EventType.TRIGGER_REJECTED,
                    pipeline=controller.definition.name,
                    details={"reason": e.reason},
                )
            )
        raise HTTPException(status_code=401, detail=e.message)

    event_name = request.headers.get("X-GitHub-Event")
    if event_name == "ping":
        return {"status": "ok", "message": "pong"}

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    event = webhook_handler.parse_event(
        payload,
        event_name=event_name,
        delivery_id=request.headers.get("X-GitHub-Delivery"),
    )
    if event is None:
        return {"status": "ignored", "message": "Unsupported or invalid event"}

    run = await controller.handle_event(event)
    if run is None:
        return {"status": "ignored", "message": "Event matched no trigger"}

    return {
        "status": "accepted",
        "run_id": run.run_id,
        "entry_point": run.entry_point.value,
    }


@app.get("/runs/{run_id}")
async def get_run(run_id: int):
    """Return the persisted record of a run."""
    if controller is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    run = await controller.state_machine.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: int, reason: str = "Cancelled by operator"):
    """Cancel a run; terminal runs are returned unchanged."""
    if controller is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    try:
        run = await controller.cancel(run_id, reason)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return {"run_id": run.run_id, "state": run.current_state.value}


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "deploy_pipeline.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )

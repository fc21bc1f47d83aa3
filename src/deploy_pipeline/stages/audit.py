"""Action invocation audit trail.

Every action invocation is recorded with its configuration so that an
operator can reconstruct exactly what a run did. Values of secret-like keys
are replaced before anything is written.
"""

from typing import Any, Dict, Mapping

import structlog

from deploy_pipeline.definition.models import ActionDefinition
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.models import RunContext

audit_logger = structlog.get_logger("deploy_pipeline.audit")

REDACTED = "***"

SECRET_KEY_MARKERS = ("token", "secret", "password", "credential", "oauth")


def configure_audit_logging() -> None:
    """Render audit records as JSON through the stdlib logging handlers."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_KEY_MARKERS)


def redact_configuration(configuration: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy a configuration map with secret-like values replaced.

    Example:
        >>> redact_configuration({"Owner": "acme", "OAuthToken": "ghp_x"})
        {'Owner': 'acme', 'OAuthToken': '***'}
    """
    return {
        key: REDACTED if is_secret_key(key) else value
        for key, value in configuration.items()
    }


def audit_action(
    action: ActionDefinition,
    stage_name: str,
    role: Role,
    context: RunContext,
) -> Dict[str, Any]:
    """Write the audit record for one action invocation.

    Returns:
        The record that was logged.
    """
    record = {
        "run_id": context.run_id,
        "pipeline": context.pipeline_name,
        "stage": stage_name,
        "action": action.name,
        "provider": action.provider.value,
        "run_order": action.run_order,
        "role": role.name,
        "configuration": redact_configuration(action.configuration),
    }
    audit_logger.info("action_invoked", **record)
    return record

"""Role and policy models.

A Role is one assumable identity with a list of policy statements. Each
statement is an (effect, actions, resources) triple. Roles render to
IAM-style JSON documents for provisioning.
"""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Effect(str, Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class PolicyStatement(BaseModel):
    """One (effect, actions, resources) permission triple."""

    model_config = ConfigDict(frozen=True)

    sid: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9]+$")

    effect: Effect = Effect.ALLOW

    actions: List[str] = Field(..., min_length=1)

    resources: List[str] = Field(..., min_length=1)

    conditions: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="IAM condition block, operator -> {key: value}",
    )

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v: List[str]) -> List[str]:
        for action in v:
            service, sep, name = action.partition(":")
            if not sep or not service or not name:
                raise ValueError(f"Action must be service:Name, got {action!r}")
        return sorted(set(v))

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: List[str]) -> List[str]:
        return sorted(set(v))

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.resources

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "Sid": self.sid,
            "Effect": self.effect.value,
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }
        if self.conditions:
            document["Condition"] = {op: dict(kv) for op, kv in self.conditions.items()}
        return document


class Role(BaseModel):
    """A named execution identity for one stage.

    Attributes:
        name: Role name.
        stage: Name of the stage the role is bound to.
        principal: The single service principal allowed to assume the role.
        statements: Least-privilege policy statements.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=64)

    stage: str = Field(..., min_length=1)

    principal: str = Field(..., min_length=1)

    statements: List[PolicyStatement] = Field(..., min_length=1)

    arn: str = Field(..., min_length=1)

    @property
    def actions(self) -> List[str]:
        return sorted({a for statement in self.statements for a in statement.actions})

    def allows(self, action: str, resource: str) -> bool:
        """True if some Allow statement grants the action on the resource.

        Resource patterns honor a trailing "*" as a prefix wildcard.
        """
        for statement in self.statements:
            if statement.effect != Effect.ALLOW or action not in statement.actions:
                continue
            for pattern in statement.resources:
                if pattern == resource:
                    return True
                if pattern.endswith("*") and resource.startswith(pattern[:-1]):
                    return True
        return False

    def trust_policy(self) -> Dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": self.principal},
                    "Action": "sts:AssumeRole",
                }
            ],
        }

    def policy_document(self) -> Dict[str, Any]:
        return {
            "Version": "2012-10-17",
            "Statement": [s.to_document() for s in self.statements],
        }


class ResourceTouchSet(BaseModel):
    """The concrete resources a stage's actions touch.

    Attributes:
        artifact_read: Artifact object ARNs the stage reads.
        artifact_write: Artifact object ARNs the stage writes.
        log_groups: Build log group ARNs the stage writes to.
        stacks: Stack ARN patterns the stage manages.
        passed_roles: Role ARNs the stage hands to CloudFormation.
        validates_templates: Whether the stage calls template validation.
    """

    model_config = ConfigDict(frozen=True)

    artifact_read: List[str] = Field(default_factory=list)

    artifact_write: List[str] = Field(default_factory=list)

    log_groups: List[str] = Field(default_factory=list)

    stacks: List[str] = Field(default_factory=list)

    passed_roles: List[str] = Field(default_factory=list)

    validates_templates: bool = False

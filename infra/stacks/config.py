"""
Stack settings.

Every name, port and size the Adcase stack declares lives here.  Values are
resolved per field in this order:

  1. CDK context         (cdk synth -c vpc_name=OtherVpc)
  2. Environment         (ADCASE_VPC_NAME=OtherVpc)
  3. Defaults below
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

ENV_PREFIX = "ADCASE_"
DEFAULT_REGION = "us-east-1"

# CPU units accepted by ECS task definitions
VALID_TASK_CPU = ("256", "512", "1024", "2048", "4096", "8192", "16384")


class StackSettings(BaseModel):
    # network
    vpc_name: str = "AdcaseVpc"

    # load balancer
    listener_port: int = Field(default=80, ge=1, le=65535)
    target_group_name: str = "AdcaseLBListenerTargetGroupECS"
    health_check_path: str = "/"

    # registry
    repository_name: str = "adcase-api"
    image_tag: str = "latest"

    # compute
    cluster_name: str = "adcase-ecs-cluster"
    ecs_security_group_name: str = "adcase-ecs-sg"
    container_name: str = "adcase-ecs-container"
    container_port: int = Field(default=3000, ge=1, le=65535)
    container_memory_mib: int = Field(default=2048, ge=128)
    task_cpu: str = "256"
    desired_count: int = Field(default=1, ge=1)
    capacity_instance_type: str = "t3.medium"
    capacity_desired: int = Field(default=1, ge=1)

    # document database
    db_master_username: str = "CaseAdmin"
    db_exclude_characters: str = '"@/:'
    db_instance_type: str = "r5.large"
    db_cluster_instances: int = Field(default=1, ge=1)

    # gateway
    api_name: str = "adcase-api"
    vpc_link_name: str = "VpcLink"
    data_trace_enabled: bool = True

    @field_validator("task_cpu", mode="before")
    @classmethod
    def _check_cpu(cls, v: Any) -> str:
        s = str(v).strip()
        if s not in VALID_TASK_CPU:
            raise ValueError(f"must be one of {', '.join(VALID_TASK_CPU)}")
        return s

    @field_validator("health_check_path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("must start with '/'")
        return v


def _lookup(key: str, context: Dict[str, Any]) -> Optional[Any]:
    value = context.get(key)
    if value is not None:
        return value
    return os.environ.get(ENV_PREFIX + key.upper())


def resolve_settings(context: Optional[Dict[str, Any]] = None) -> StackSettings:
    """Build settings from a plain context mapping plus the environment."""
    context = context or {}
    raw: Dict[str, Any] = {}
    for name in StackSettings.model_fields:
        value = _lookup(name, context)
        if value is not None:
            raw[name] = value

    try:
        return StackSettings(**raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValueError(f"Invalid stack settings ({fields}): {e}") from e


def load_settings(app) -> StackSettings:
    """Resolve settings for a CDK app, reading its context first."""
    context = {
        name: app.node.try_get_context(name) for name in StackSettings.model_fields
    }
    return resolve_settings(context)


def resolve_environment(app) -> Dict[str, Optional[str]]:
    account = app.node.try_get_context("account") or os.getenv("CDK_DEFAULT_ACCOUNT")
    region = (
        app.node.try_get_context("region")
        or os.getenv("CDK_DEFAULT_REGION")
        or DEFAULT_REGION
    )
    return {"account": account, "region": region}

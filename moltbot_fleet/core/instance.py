"""Data models for Moltbot instance management."""

from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..config import Config


NAME_PATTERN = r"^[A-Za-z0-9_-]+$"


class InstanceStatus(str, Enum):
    """Liveness of an instance's gateway container."""
    RUNNING = "running"
    STOPPED = "stopped"


class ResourceLimits(BaseModel):
    """Container resource limits; unset fields fall through to the next layer."""
    memory: Optional[str] = Field(None, description="Memory limit (e.g. 512m)")
    memory_swap: Optional[str] = Field(None, description="Memory + swap limit (e.g. 1g)")
    cpus: Optional[str] = Field(None, description="CPU share (e.g. 0.5)")
    pids_limit: Optional[str] = Field(None, description="Process count limit")

    model_config = {"extra": "forbid", "coerce_numbers_to_str": True}

    def merged(self, *overrides: Optional["ResourceLimits"]) -> "ResourceLimits":
        """Layer overrides on top of these limits, field by field (right-most wins)."""
        data = self.model_dump(exclude_none=True)
        for override in overrides:
            if override is not None:
                data.update(override.model_dump(exclude_none=True))
        return ResourceLimits(**data)

    @classmethod
    def builtin(cls) -> "ResourceLimits":
        return cls(**Config.DEFAULT_RESOURCES)


class InstanceRecord(BaseModel):
    """Persisted definition of one instance. Immutable after creation."""
    name: str = Field(..., pattern=NAME_PATTERN, description="Unique instance name")
    gateway_port: int = Field(..., ge=1, le=65535, description="Host gateway port")
    bridge_port: int = Field(..., ge=1, le=65535, description="Host bridge port")
    config_dir: str = Field(..., min_length=1, description="Config directory")
    workspace_dir: str = Field(..., min_length=1, description="Workspace directory")
    auth_token: str = Field(..., min_length=64, description="Gateway token (256 bits, hex)")
    image: str = Field(..., min_length=1, description="Runtime image reference")
    resources: ResourceLimits = Field(default_factory=ResourceLimits)

    internal_gateway_port: int = Config.INTERNAL_GATEWAY_PORT
    internal_bridge_port: int = Config.INTERNAL_BRIDGE_PORT
    gateway_bind: str = Config.GATEWAY_BIND
    created_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @property
    def project_name(self) -> str:
        """Compose project addressing this instance."""
        return f"{Config.PROJECT_PREFIX}-{self.name}"

    @property
    def container_name(self) -> str:
        """Name of the gateway container."""
        return container_name(self.name)

    @property
    def ports(self) -> tuple:
        return (self.gateway_port, self.bridge_port)


class InstanceDefinition(BaseModel):
    """An instance to be created; ports left as None are auto-assigned.

    Auto-assigned ports are searched upward from gateway_base/bridge_base
    when set, otherwise as an adjacent pair from the single-instance defaults.
    """
    name: str = Field(..., pattern=NAME_PATTERN)
    gateway_port: Optional[int] = Field(None, ge=1, le=65535)
    bridge_port: Optional[int] = Field(None, ge=1, le=65535)
    gateway_base: Optional[int] = Field(None, ge=1, le=65535)
    bridge_base: Optional[int] = Field(None, ge=1, le=65535)
    config_dir: str
    workspace_dir: str
    image: str
    resources: ResourceLimits = Field(default_factory=ResourceLimits)


def container_name(name: str) -> str:
    """Gateway container name for an instance name."""
    return f"{Config.GATEWAY_SERVICE}-{name}"

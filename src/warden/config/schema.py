"""Pydantic models for warden.yaml configuration."""

from typing import Literal

from pydantic import BaseModel, Field

from warden.plugins.manifest import PluginManifest
from warden.plugins.sandbox import IsolationLevel


class SandboxConfig(BaseModel):
    """Plugin sandbox configuration."""

    isolation_level: IsolationLevel = Field(
        default=IsolationLevel.STRICT,
        description="Confinement of plugin worker processes (none, basic, strict)",
    )
    timeout: float = Field(
        default=30.0,
        description="Seconds allowed for each plugin load, call or hook",
        gt=0,
    )
    memory_limit_mb: int | None = Field(
        default=512,
        description="Address-space cap for strict sandboxes (None disables it)",
        ge=64,
    )
    python_executable: str | None = Field(
        default=None,
        description="Interpreter used for worker processes (default: the host's)",
    )


class RepositoryConfig(BaseModel):
    """Remote plugin repository configuration."""

    url: str = Field(description="Repository base URL")
    auto_update: bool = Field(
        default=False,
        description="Periodically check the repository for newer plugin versions",
    )
    check_interval: float = Field(
        default=3600.0,
        description="Seconds between update checks",
        gt=0,
    )
    timeout: float = Field(default=30.0, description="Request timeout in seconds", gt=0)


class PermissionsConfig(BaseModel):
    """Runtime-wide permission policy."""

    default_allow: bool = Field(
        default=False,
        description="Decision for plugins whose manifest declares no permissions",
    )
    require_signature: bool = Field(
        default=False,
        description="Reject manifests without a valid HMAC signature",
    )
    signing_key: str | None = Field(
        default=None,
        description="Shared key for manifest signatures",
    )
    trusted_authors: list[str] = Field(
        default_factory=list,
        description="Only install plugins by these authors (empty allows all)",
    )


class MonitoringConfig(BaseModel):
    """Metrics, plugin logging and auditing."""

    track_metrics: bool = Field(default=True, description="Count API calls and errors per plugin")
    log_level: Literal["error", "warn", "info", "debug"] = Field(
        default="info",
        description="Most verbose plugin log level forwarded to the host log",
    )
    audit_events: bool = Field(default=True, description="Record lifecycle events in the audit log")
    audit_capacity: int = Field(default=1000, description="Audit entries kept in memory", ge=1)


class WardenConfig(BaseModel):
    """Root configuration schema for warden."""

    plugins: list[PluginManifest] = Field(
        default_factory=list,
        description="Plugin manifests registered at startup",
    )
    auto_load: bool = Field(
        default=False,
        description="Load registered and installed plugins automatically",
    )
    plugin_dir: str = Field(
        default="~/.warden/plugins",
        description="Directory holding plugin code as <plugin_dir>/<id>/<main>",
    )
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    repository: RepositoryConfig | None = Field(
        default=None,
        description="Plugin repository (installs and update checks)",
    )
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

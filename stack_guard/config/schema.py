"""
Configuration Schema
~~~~~~~~~~~~~~~~~~~~

Pydantic models for validating stack-guard configuration.

Relative paths are resolved against ``project.base_dir`` by
:meth:`StackGuardConfig.resolve`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "StackGuardConfig",
    "ProjectConfig",
    "ServicesConfig",
    "SnapshotConfig",
    "BackupConfig",
    "TimeoutConfig",
    "HealthConfig",
    "RecoveryConfig",
    "ObservabilityConfig",
]


class ProjectConfig(BaseModel):
    """Where the managed compose project lives."""

    base_dir: str = "."
    compose_file: str = "static/docker-compose.yml"
    env_file: str = ".env"
    project_name: str | None = None
    state_dir: str = ".stack-guard"


class ServicesConfig(BaseModel):
    """Managed services and how their image versions are pinned."""

    names: list[str] = Field(
        default_factory=lambda: ["database", "backend", "frontend", "engine", "nginx"]
    )
    version_tag_template: str = "STACK_{SERVICE}_TAG"

    @field_validator("names")
    @classmethod
    def validate_names(cls, v: list[str]) -> list[str]:
        """Service names must be unique and non-empty."""
        if not v:
            raise ValueError("At least one managed service is required")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate service names: {v!r}")
        return v

    @field_validator("version_tag_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        """The template must mention the service."""
        if "{SERVICE}" not in v and "{service}" not in v:
            raise ValueError(f"Template must contain {{SERVICE}}: {v!r}")
        return v


class SnapshotConfig(BaseModel):
    """Operational snapshot settings."""

    dir: str | None = None
    retention: int = Field(default=5, ge=1)
    protected_paths: list[str] = Field(
        default_factory=lambda: [".env", "static", "ssl", "VERSION"]
    )
    include_system_info: bool = True


class BackupConfig(BaseModel):
    """Backup archive settings."""

    dir: str = "backups"
    retention: int = Field(default=10, ge=1)
    config_paths: list[str] = Field(
        default_factory=lambda: [".env", "static", "VERSION", "ssl/.ssl_info"]
    )
    ssl_paths: list[str] = Field(default_factory=lambda: ["ssl"])
    data_paths: list[str] = Field(default_factory=lambda: ["data"])
    history_log: str = "backup_history.log"
    pre_update_backup: bool = True
    volumes: bool = True
    database_service: str | None = "database"
    database_user_var: str = "POSTGRES_USER"
    database_name_var: str = "POSTGRES_DB"


class TimeoutConfig(BaseModel):
    """Timeouts in seconds."""

    start: float = Field(default=60.0, ge=0.0)
    stop: float = Field(default=30.0, ge=0.0)
    update: float = Field(default=120.0, ge=0.0)
    lock: float = Field(default=3600.0, gt=0.0)
    command: float | None = Field(default=None, gt=0.0)


class HealthConfig(BaseModel):
    """Health polling settings."""

    interval: float = Field(default=5.0, gt=0.0)


class RecoveryConfig(BaseModel):
    """Disaster recovery settings."""

    reports_dir: str | None = None
    emergency_backup: bool = True


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    exporters: list[str] = Field(default_factory=lambda: ["jsonl"])
    audit_file: str | None = None
    audit_log_max_entries: int = Field(default=10000, ge=100)

    @field_validator("exporters")
    @classmethod
    def validate_exporters(cls, v: list[str]) -> list[str]:
        """Only the built-in exporters are accepted."""
        unknown = sorted(set(v) - {"stdout", "jsonl"})
        if unknown:
            raise ValueError(f"Unknown exporters: {unknown!r}")
        return v


class StackGuardConfig(BaseModel):
    """
    Root configuration model for stack-guard.

    Validated on load with clear error messages for invalid values.
    """

    version: str = "1.0"
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    snapshot: SnapshotConfig = Field(default_factory=SnapshotConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    # ── Resolved paths ───────────────────────────────────────────────────

    @property
    def base_dir(self) -> Path:
        return Path(self.project.base_dir).expanduser().absolute()

    def resolve(self, path: str | Path) -> Path:
        """Resolve ``path`` against the project base directory."""
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.base_dir / p

    @property
    def state_dir(self) -> Path:
        return self.resolve(self.project.state_dir)

    @property
    def compose_file(self) -> Path:
        return self.resolve(self.project.compose_file)

    @property
    def env_file(self) -> Path:
        return self.resolve(self.project.env_file)

    @property
    def snapshot_dir(self) -> Path:
        return self.resolve(self.snapshot.dir or self.state_dir / "snapshots")

    @property
    def backup_dir(self) -> Path:
        return self.resolve(self.backup.dir)

    @property
    def reports_dir(self) -> Path:
        return self.resolve(self.recovery.reports_dir or self.state_dir / "recovery")

    @property
    def audit_file(self) -> Path:
        return self.resolve(self.observability.audit_file or self.state_dir / "audit.jsonl")

    def protected_paths(self) -> list[Path]:
        return [self.resolve(p) for p in self.snapshot.protected_paths]

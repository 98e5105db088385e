"""Project domain models."""

from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_ID_ALPHABET = string.ascii_letters + string.digits + "_-"
CONTAINER_PREFIX = "pocketbase-"


def new_project_id(length: int = 12) -> str:
    """Return a short url-safe identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def container_name_for(slug: str) -> str:
    return f"{CONTAINER_PREFIX}{slug}"


class ProjectStatus(str, Enum):
    """Lifecycle status for a managed project."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DELETED = "deleted"


class EnabledFeatures(BaseModel):
    """Feature toggles exposed by a tenant instance."""

    auth: bool = True
    storage: bool = True
    realtime: bool = True


class ProjectConfig(BaseModel):
    """Resource limits and toggles for one project."""

    memory_limit: str = "256m"
    cpu_limit: str = "0.5"
    auto_backup: bool = True
    backup_schedule: str | None = None
    custom_domain: str | None = None
    enabled_features: EnabledFeatures = Field(default_factory=EnabledFeatures)

    def merged(self, overrides: dict[str, Any] | None) -> ProjectConfig:
        """Return a copy with top-level overrides applied."""
        if not overrides:
            return self.model_copy(deep=True)
        data = self.model_dump()
        data.update({key: value for key, value in overrides.items() if value is not None})
        return ProjectConfig.model_validate(data)


class Project(BaseModel):
    """Managed tenant database instance."""

    id: str = Field(default_factory=new_project_id)
    name: str
    slug: str
    description: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    status: ProjectStatus = ProjectStatus.CREATING
    container_name: str = ""
    port: int = 0
    domain: str | None = None
    config: ProjectConfig = Field(default_factory=ProjectConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        """Update mutation timestamp."""
        self.updated_at = datetime.now(UTC)

    @property
    def is_deleted(self) -> bool:
        return self.status is ProjectStatus.DELETED


class BackupRecord(BaseModel):
    """One archive snapshot of a project's data directory."""

    id: str
    project_id: str
    filename: str
    size: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProjectStats(BaseModel):
    """Aggregate fleet counters."""

    total_projects: int
    running_projects: int
    stopped_projects: int
    errored_projects: int
    total_storage_bytes: int
    total_storage: str

"""Project API schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from dbfleet.models.project import BackupRecord, EnabledFeatures, Project


class ConfigOverrides(BaseModel):
    """Per-project overrides merged onto the system defaults."""

    memory_limit: str | None = Field(default=None, pattern=r"^\d+[kmgKMG]?$")
    cpu_limit: str | None = Field(default=None, pattern=r"^\d+(\.\d+)?$")
    auto_backup: bool | None = None
    backup_schedule: str | None = None
    custom_domain: str | None = None
    enabled_features: EnabledFeatures | None = None


class CreateProjectRequest(BaseModel):
    """Payload for creating a project."""

    name: str = Field(min_length=1, max_length=100)
    slug: str | None = Field(default=None, pattern=r"^[a-z0-9-]+$", min_length=1, max_length=30)
    description: str | None = Field(default=None, max_length=500)
    client_name: str | None = Field(default=None, max_length=100)
    client_email: str | None = None
    config: ConfigOverrides | None = None
    metadata: dict[str, Any] | None = None


class UpdateProjectRequest(BaseModel):
    """Partial project update."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    client_name: str | None = Field(default=None, max_length=100)
    client_email: str | None = None
    config: ConfigOverrides | None = None
    metadata: dict[str, Any] | None = None


class RestoreBackupRequest(BaseModel):
    filename: str


class ProjectUrls(BaseModel):
    api: str
    admin: str


class ProjectResponse(BaseModel):
    """Single project with its reachable URLs."""

    project: Project
    urls: ProjectUrls


class ProjectsResponse(BaseModel):
    """Collection response for projects."""

    items: list[Project]
    count: int


class BackupsResponse(BaseModel):
    items: list[BackupRecord]

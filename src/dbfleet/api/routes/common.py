"""Common route helpers."""

from __future__ import annotations

from fastapi import HTTPException, status

from dbfleet.core.errors import (
    ConflictError,
    ContainerOperationFailed,
    FleetError,
    NotFoundError,
    RuntimeUnavailable,
    ValidationError,
)
from dbfleet.core.project_manager import ProjectManager
from dbfleet.models.project import Project

_STATUS_BY_ERROR: list[tuple[type[FleetError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RuntimeUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ContainerOperationFailed, status.HTTP_502_BAD_GATEWAY),
]


def http_status_for(exc: FleetError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def require_project(project_id: str, manager: ProjectManager) -> Project:
    """Load project by id or slug or return 404."""
    project = await manager.resolve(project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project

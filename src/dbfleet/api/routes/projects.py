"""Project routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from dbfleet.api.deps import get_project_manager
from dbfleet.api.routes.common import require_project
from dbfleet.api.schemas.projects import (
    BackupsResponse,
    CreateProjectRequest,
    ProjectResponse,
    ProjectsResponse,
    ProjectUrls,
    RestoreBackupRequest,
    UpdateProjectRequest,
)
from dbfleet.core.project_manager import (
    CreateProjectInput,
    ListProjectsOptions,
    ProjectManager,
    UpdateProjectInput,
)
from dbfleet.models.project import BackupRecord, Project, ProjectStats, ProjectStatus

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


def _with_urls(project: Project, manager: ProjectManager) -> ProjectResponse:
    return ProjectResponse(
        project=project,
        urls=ProjectUrls(api=manager.url_for(project), admin=manager.admin_url_for(project)),
    )


@router.get("", response_model=ProjectsResponse)
async def list_projects(
    status_filter: ProjectStatus | None = Query(default=None, alias="status"),
    client_name: str | None = None,
    search: str | None = None,
    limit: int | None = Query(default=None, ge=0),
    offset: int = Query(default=0, ge=0),
    manager: ProjectManager = Depends(get_project_manager),
) -> ProjectsResponse:
    items = await manager.list(
        ListProjectsOptions(
            status=status_filter,
            client_name=client_name,
            search=search,
            limit=limit,
            offset=offset,
        )
    )
    return ProjectsResponse(items=items, count=len(items))


@router.get("/stats", response_model=ProjectStats)
async def project_stats(manager: ProjectManager = Depends(get_project_manager)) -> ProjectStats:
    return await manager.stats()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ProjectResponse)
async def create_project(
    request: CreateProjectRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> ProjectResponse:
    project = await manager.create(
        CreateProjectInput(
            name=request.name,
            slug=request.slug,
            description=request.description,
            client_name=request.client_name,
            client_email=request.client_email,
            config=request.config.model_dump(exclude_none=True) if request.config else None,
            metadata=request.metadata,
        )
    )
    return _with_urls(project, manager)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    return _with_urls(project, manager)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    request: UpdateProjectRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    updated = await manager.update(
        project.id,
        UpdateProjectInput(
            name=request.name,
            description=request.description,
            client_name=request.client_name,
            client_email=request.client_email,
            config=request.config.model_dump(exclude_none=True) if request.config else None,
            metadata=request.metadata,
        ),
    )
    return _with_urls(updated, manager)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    project_id: str,
    keep_data: bool = False,
    manager: ProjectManager = Depends(get_project_manager),
) -> None:
    project = await require_project(project_id, manager)
    await manager.delete(project.id, keep_data=keep_data)


@router.post("/{project_id}/start", response_model=ProjectResponse)
async def start_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    return _with_urls(await manager.start(project.id), manager)


@router.post("/{project_id}/stop", response_model=ProjectResponse)
async def stop_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    return _with_urls(await manager.stop(project.id), manager)


@router.post("/{project_id}/restart", response_model=ProjectResponse)
async def restart_project(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    return _with_urls(await manager.restart(project.id), manager)


@router.get("/{project_id}/logs")
async def project_logs(
    project_id: str,
    tail: int = Query(default=100, ge=1, le=10_000),
    manager: ProjectManager = Depends(get_project_manager),
) -> dict[str, str]:
    project = await require_project(project_id, manager)
    return {"logs": await manager.logs(project.id, tail=tail)}


@router.get("/{project_id}/backups", response_model=BackupsResponse)
async def list_backups(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> BackupsResponse:
    project = await require_project(project_id, manager)
    return BackupsResponse(items=await manager.list_backups(project.id))


@router.post(
    "/{project_id}/backups",
    status_code=status.HTTP_201_CREATED,
    response_model=BackupRecord,
)
async def create_backup(
    project_id: str, manager: ProjectManager = Depends(get_project_manager)
) -> BackupRecord:
    project = await require_project(project_id, manager)
    return await manager.create_backup(project.id)


@router.post("/{project_id}/backups/restore", response_model=ProjectResponse)
async def restore_backup(
    project_id: str,
    request: RestoreBackupRequest,
    manager: ProjectManager = Depends(get_project_manager),
) -> ProjectResponse:
    project = await require_project(project_id, manager)
    restored = await manager.restore_backup(project.id, request.filename)
    return _with_urls(restored, manager)


@router.delete("/{project_id}/backups/{filename}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_backup(
    project_id: str,
    filename: str,
    manager: ProjectManager = Depends(get_project_manager),
) -> None:
    project = await require_project(project_id, manager)
    await manager.delete_backup(project.id, filename)

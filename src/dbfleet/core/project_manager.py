"""Project lifecycle orchestration.

``ProjectManager`` is the state machine behind every tenant instance::

    creating -> running | error
    running <-> stopped
    running | stopped | error -> running   (restart)
    any live status -> deleted             (terminal)

It composes the runtime adapter, the project catalog and the credential vault
and never touches Docker or the filesystem directly. Blocking adapter calls are
pushed to worker threads.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from dbfleet.core.config import Settings
from dbfleet.core.errors import (
    BootstrapTimeout,
    ConflictError,
    ContainerOperationFailed,
    FleetError,
    NotFoundError,
    ValidationError,
)
from dbfleet.core.retry import RetryPolicy
from dbfleet.core.runtime_adapter import RuntimeAdapter, RuntimeContainerInfo, format_bytes
from dbfleet.db.catalog import ProjectCatalog
from dbfleet.db.vault import CredentialVault, generate_password
from dbfleet.models.credentials import Credentials
from dbfleet.models.project import (
    BackupRecord,
    Project,
    ProjectConfig,
    ProjectStats,
    ProjectStatus,
)

log = structlog.get_logger()

SLUG_MAX_LENGTH = 30
SLUG_PATTERN = re.compile(rf"^[a-z0-9-]{{1,{SLUG_MAX_LENGTH}}}$")
ADMIN_PATH = "/_/"
BOOTSTRAP_BINARY = "/usr/local/bin/pocketbase"


def slugify(name: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to ``-``, trim, cap length."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH]


def bootstrap_command(email: str, password: str) -> list[str]:
    return [BOOTSTRAP_BINARY, "--dir", "/pb_data", "superuser", "upsert", email, password]


def observed_status(info: RuntimeContainerInfo | None) -> ProjectStatus:
    """Status a project should carry given what the runtime reports."""
    if info is None:
        return ProjectStatus.ERROR
    return ProjectStatus.RUNNING if info.running else ProjectStatus.STOPPED


@dataclass(slots=True)
class CreateProjectInput:
    """Input payload for project creation."""

    name: str
    slug: str | None = None
    description: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    config: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class UpdateProjectInput:
    """Partial update; ``None`` leaves a field unchanged."""

    name: str | None = None
    description: str | None = None
    client_name: str | None = None
    client_email: str | None = None
    config: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class ListProjectsOptions:
    status: ProjectStatus | None = None
    client_name: str | None = None
    search: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(slots=True)
class HealthReport:
    """Control plane health summary."""

    status: str
    runtime: bool
    storage: bool
    projects: dict[str, int] = field(default_factory=dict)


class ProjectManager:
    """Create, operate and reconcile tenant database instances."""

    def __init__(
        self,
        settings: Settings,
        runtime: RuntimeAdapter,
        catalog: ProjectCatalog,
        vault: CredentialVault,
        *,
        bootstrap_policy: RetryPolicy | None = None,
        password_factory: Callable[[], str] = generate_password,
    ) -> None:
        self._settings = settings
        self._runtime = runtime
        self._catalog = catalog
        self._vault = vault
        self._bootstrap_policy = bootstrap_policy or RetryPolicy(
            max_attempts=settings.bootstrap_attempts,
            delay_seconds=settings.bootstrap_delay_seconds,
        )
        self._password_factory = password_factory
        self._create_lock = asyncio.Lock()

    async def initialize(self) -> list[Project]:
        """Prepare collaborators and reconcile recorded status with Docker."""
        log.info("manager.initializing")
        await asyncio.to_thread(self._runtime.initialize)
        await self._catalog.initialize()
        await self._vault.initialize()
        corrected = await self.reconcile()
        log.info("manager.initialized", corrected=len(corrected))
        return corrected

    def default_config(self) -> ProjectConfig:
        return ProjectConfig(
            memory_limit=self._settings.default_memory_limit,
            cpu_limit=self._settings.default_cpu_limit,
        )

    async def create(self, payload: CreateProjectInput) -> Project:
        if not payload.name or not payload.name.strip():
            msg = "Project name must not be empty"
            raise ValidationError(msg)
        slug = payload.slug if payload.slug is not None else slugify(payload.name)
        if not SLUG_PATTERN.match(slug):
            msg = f"Invalid slug {slug!r}: use 1-{SLUG_MAX_LENGTH} of a-z, 0-9 and '-'"
            raise ValidationError(msg)

        # Slug check and first write happen under one lock so concurrent
        # creates cannot both claim the same slug.
        async with self._create_lock:
            existing = await self._catalog.get_by_slug(slug)
            if existing is not None and not existing.is_deleted:
                msg = f'Project with slug "{slug}" already exists'
                raise ConflictError(msg)
            project = Project(
                name=payload.name.strip(),
                slug=slug,
                description=payload.description,
                client_name=payload.client_name,
                client_email=payload.client_email,
                domain=f"{slug}.{self._settings.base_domain}",
                config=self.default_config().merged(payload.config),
                metadata=dict(payload.metadata or {}),
            )
            await self._catalog.save(project)

        log.info("project.creating", project_id=project.id, slug=slug)
        try:
            await asyncio.to_thread(self._runtime.pull_image)
            handle = await asyncio.to_thread(
                self._runtime.create_container, project.id, slug, project.config
            )
            project.container_name = handle.container_name
            project.port = handle.port
            await self._catalog.save(project)

            await asyncio.to_thread(self._runtime.start_container, handle.container_name)
            project.status = ProjectStatus.RUNNING
            await self._catalog.save(project)
        except Exception as exc:
            project.status = ProjectStatus.ERROR
            await self._catalog.save(project)
            log.error("project.create_failed", project_id=project.id, slug=slug, error=str(exc))
            raise

        log.info("project.created", project_id=project.id, slug=slug, port=project.port)
        try:
            await self._bootstrap(project)
        except Exception as exc:
            # The instance is already running; a broken bootstrap only costs the admin user.
            log.warning(
                "project.bootstrap_failed",
                project_id=project.id,
                slug=slug,
                error=str(exc),
                kind=type(exc).__name__,
            )
        return project

    async def _bootstrap(self, project: Project) -> Credentials | None:
        """Provision the admin user; failures are logged, never raised."""
        email = self._settings.admin_email
        password = self._password_factory()
        command = bootstrap_command(email, password)

        async def attempt() -> str:
            return await asyncio.to_thread(
                self._runtime.exec_in_container, project.container_name, command
            )

        def on_failure(attempt_number: int, exc: BaseException) -> None:
            log.debug(
                "project.bootstrap_retry",
                slug=project.slug,
                attempt=attempt_number,
                error=str(exc),
            )

        outcome = await self._bootstrap_policy.run(
            attempt, retry_on=(FleetError,), on_failure=on_failure
        )
        if not outcome.succeeded:
            failure = BootstrapTimeout(
                f"Admin bootstrap for {project.slug} gave up",
                attempts=outcome.attempts,
                last_error=outcome.last_error,
            )
            log.warning(
                "project.bootstrap_failed",
                project_id=project.id,
                slug=project.slug,
                attempts=failure.attempts,
                last_error=failure.last_error,
                remediation=(
                    f"docker exec {project.container_name} {BOOTSTRAP_BINARY} "
                    f"--dir /pb_data superuser upsert {email} <password>"
                ),
            )
            return None

        try:
            credentials = await self._vault.store(
                project.id,
                project.name,
                project.slug,
                project.domain or "",
                email,
                password,
            )
        except FleetError as exc:
            log.warning("project.bootstrap_store_failed", project_id=project.id, error=str(exc))
            return None
        log.info("project.bootstrapped", project_id=project.id, attempts=outcome.attempts)
        return credentials

    async def get(self, project_id: str) -> Project | None:
        return await self._catalog.get(project_id)

    async def get_by_slug(self, slug: str) -> Project | None:
        return await self._catalog.get_by_slug(slug)

    async def resolve(self, id_or_slug: str) -> Project | None:
        project = await self._catalog.get(id_or_slug)
        if project is None:
            project = await self._catalog.get_by_slug(id_or_slug)
        return project

    async def list(self, options: ListProjectsOptions | None = None) -> list[Project]:
        options = options or ListProjectsOptions()
        projects = await self._catalog.get_all()

        if options.status is not None:
            projects = [project for project in projects if project.status is options.status]
        if options.client_name:
            needle = options.client_name.lower()
            projects = [
                project
                for project in projects
                if project.client_name and needle in project.client_name.lower()
            ]
        if options.search:
            needle = options.search.lower()
            projects = [
                project
                for project in projects
                if needle in project.name.lower()
                or needle in project.slug.lower()
                or (project.description and needle in project.description.lower())
            ]

        projects.sort(key=lambda project: project.created_at, reverse=True)
        projects = projects[max(options.offset, 0) :]
        if options.limit is not None:
            projects = projects[: max(options.limit, 0)]
        return projects

    async def update(self, project_id: str, payload: UpdateProjectInput) -> Project:
        project = await self._require_live(project_id)
        if payload.name is not None:
            if not payload.name.strip():
                msg = "Project name must not be empty"
                raise ValidationError(msg)
            project.name = payload.name.strip()
        if payload.description is not None:
            project.description = payload.description
        if payload.client_name is not None:
            project.client_name = payload.client_name
        if payload.client_email is not None:
            project.client_email = payload.client_email
        if payload.metadata:
            project.metadata = {**project.metadata, **payload.metadata}
        if payload.config:
            project.config = project.config.merged(payload.config)

        await self._catalog.save(project)
        log.info("project.updated", project_id=project.id, slug=project.slug)
        return project

    async def delete(self, project_id: str, *, keep_data: bool = False) -> Project:
        project = await self._require(project_id)
        log.info("project.deleting", project_id=project.id, slug=project.slug, keep_data=keep_data)

        if project.container_name and not project.is_deleted:
            try:
                await asyncio.to_thread(self._runtime.remove_container, project.container_name)
            except Exception as exc:
                log.warning(
                    "project.container_remove_failed",
                    container=project.container_name,
                    error=str(exc),
                )

        project.status = ProjectStatus.DELETED
        if keep_data:
            await self._catalog.save(project)
        else:
            await self._catalog.delete(project.id)
            await self._vault.delete(project.id)

        log.info("project.deleted", project_id=project.id, slug=project.slug, keep_data=keep_data)
        return project

    async def start(self, project_id: str) -> Project:
        project = await self._require_live(project_id)
        if project.status is ProjectStatus.RUNNING:
            return project

        await asyncio.to_thread(self._runtime.start_container, self._container_of(project))
        project.status = ProjectStatus.RUNNING
        await self._catalog.save(project)
        log.info("project.started", project_id=project.id, slug=project.slug)
        return project

    async def stop(self, project_id: str) -> Project:
        project = await self._require_live(project_id)
        if project.status is ProjectStatus.STOPPED:
            return project

        await asyncio.to_thread(self._runtime.stop_container, self._container_of(project))
        project.status = ProjectStatus.STOPPED
        await self._catalog.save(project)
        log.info("project.stopped", project_id=project.id, slug=project.slug)
        return project

    async def restart(self, project_id: str) -> Project:
        project = await self._require_live(project_id)

        await asyncio.to_thread(self._runtime.restart_container, self._container_of(project))
        project.status = ProjectStatus.RUNNING
        await self._catalog.save(project)
        log.info("project.restarted", project_id=project.id, slug=project.slug)
        return project

    async def logs(self, project_id: str, tail: int = 100) -> str:
        project = await self._require_live(project_id)
        return await asyncio.to_thread(
            self._runtime.get_container_logs, self._container_of(project), tail
        )

    async def list_backups(self, project_id: str) -> list[BackupRecord]:
        project = await self._require(project_id)
        return await self._catalog.list_backups(project.id)

    async def create_backup(self, project_id: str) -> BackupRecord:
        project = await self._require_live(project_id)
        was_running = project.status is ProjectStatus.RUNNING
        if was_running:
            await self.stop(project.id)

        try:
            backup = await self._catalog.create_backup(project)
        except BaseException:
            if was_running:
                await self._resume_after_failure(project.id)
            raise
        if was_running:
            await self.start(project.id)

        log.info("project.backup_created", project_id=project.id, filename=backup.filename)
        return backup

    async def restore_backup(self, project_id: str, filename: str) -> Project:
        project = await self._require_live(project_id)
        if not self._catalog.backup_file(project.id, filename).is_file():
            msg = f"Backup not found: {filename}"
            raise NotFoundError(msg)
        was_running = project.status is ProjectStatus.RUNNING
        if was_running:
            await self.stop(project.id)

        try:
            await self._catalog.restore_backup(project.id, filename)
        except BaseException:
            if was_running:
                await self._resume_after_failure(project.id)
            raise
        if was_running:
            await self.start(project.id)

        log.info("project.backup_restored", project_id=project.id, filename=filename)
        return await self._require(project.id)

    async def delete_backup(self, project_id: str, filename: str) -> None:
        project = await self._require(project_id)
        await self._catalog.delete_backup(project.id, filename)

    async def _resume_after_failure(self, project_id: str) -> None:
        """Restart after a failed backup or restore without masking its error."""
        try:
            await self.start(project_id)
        except Exception as exc:
            log.error("project.resume_failed", project_id=project_id, error=str(exc))

    async def reconcile(self) -> list[Project]:
        """Align recorded status with what Docker reports; never raises."""
        corrected: list[Project] = []
        for project in await self._catalog.get_all():
            if project.is_deleted:
                continue

            try:
                info = await asyncio.to_thread(
                    self._runtime.get_container_info, project.container_name
                )
            except Exception as exc:
                log.warning("reconcile.inspect_failed", slug=project.slug, error=str(exc))
                info = None

            observed = observed_status(info)
            if observed is project.status:
                continue

            log.info(
                "reconcile.status_changed",
                slug=project.slug,
                recorded=project.status.value,
                observed=observed.value,
            )
            project.status = observed
            try:
                await self._catalog.save(project)
            except FleetError as exc:
                log.error("reconcile.save_failed", slug=project.slug, error=str(exc))
                continue
            corrected.append(project)
        return corrected

    async def stats(self) -> ProjectStats:
        projects = [project for project in await self._catalog.get_all() if not project.is_deleted]
        storage = await self._catalog.get_storage_stats()
        return ProjectStats(
            total_projects=len(projects),
            running_projects=sum(p.status is ProjectStatus.RUNNING for p in projects),
            stopped_projects=sum(p.status is ProjectStatus.STOPPED for p in projects),
            errored_projects=sum(p.status is ProjectStatus.ERROR for p in projects),
            total_storage_bytes=storage.total_size,
            total_storage=format_bytes(storage.total_size),
        )

    async def health(self) -> HealthReport:
        runtime_ok = await asyncio.to_thread(self._runtime.ping)
        storage_ok = os.access(self._settings.data_dir, os.W_OK)
        stats = await self.stats()
        if not runtime_ok or not storage_ok:
            status = "unhealthy"
        elif stats.errored_projects:
            status = "degraded"
        else:
            status = "healthy"
        return HealthReport(
            status=status,
            runtime=runtime_ok,
            storage=storage_ok,
            projects={
                "total": stats.total_projects,
                "running": stats.running_projects,
                "errored": stats.errored_projects,
            },
        )

    async def project_url(self, project_id: str) -> str:
        return self.url_for(await self._require(project_id))

    async def admin_url(self, project_id: str) -> str:
        return self.admin_url_for(await self._require(project_id))

    def url_for(self, project: Project) -> str:
        if project.domain and self._settings.base_domain != "localhost":
            scheme = "https" if self._settings.use_https else "http"
            return f"{scheme}://{project.domain}"
        return f"http://localhost:{project.port}"

    def admin_url_for(self, project: Project) -> str:
        return f"{self.url_for(project)}{ADMIN_PATH}"

    async def credentials(self, project_id: str) -> Credentials:
        record = await self._vault.get(project_id)
        if record is None:
            msg = f"No credentials found for project: {project_id}"
            raise NotFoundError(msg)
        return record

    async def _require(self, project_id: str) -> Project:
        project = await self._catalog.get(project_id)
        if project is None:
            msg = f"Project not found: {project_id}"
            raise NotFoundError(msg)
        return project

    async def _require_live(self, project_id: str) -> Project:
        project = await self._require(project_id)
        if project.is_deleted:
            msg = f"Project has been deleted: {project_id}"
            raise NotFoundError(msg)
        return project

    @staticmethod
    def _container_of(project: Project) -> str:
        if not project.container_name:
            msg = f"Project {project.slug} has no container"
            raise ContainerOperationFailed(msg)
        return project.container_name

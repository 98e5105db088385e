"""JSON-file catalog of projects and their backup archives."""

from __future__ import annotations

import asyncio
import itertools
import json
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbfleet.core.config import Settings
from dbfleet.core.errors import CatalogCorrupt, NotFoundError, StorageError, ValidationError
from dbfleet.models.project import BackupRecord, Project

log = structlog.get_logger()

CATALOG_FILENAME = "metadata.json"
BACKUP_SUFFIX = ".tar.gz"


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Replace ``path`` with ``payload`` via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def quarantine(path: Path) -> Path:
    """Move an unreadable store file aside so a fresh one can be written."""
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    os.replace(path, target)
    return target


def backup_timestamp(moment: datetime | None = None) -> str:
    """ISO-8601 timestamp with ``:`` and ``.`` replaced by ``-``."""
    moment = (moment or datetime.now(UTC)).astimezone(UTC)
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


@dataclass(slots=True)
class StorageStats:
    """Byte totals for the projects directory."""

    total_size: int = 0
    project_sizes: dict[str, int] = field(default_factory=dict)


class ProjectCatalog:
    """Durable record of every project, rewritten wholesale on each mutation.

    Callers must not run mutations concurrently from several processes; within
    one process every write goes through a lock.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._path = settings.data_dir / CATALOG_FILENAME
        self._projects: dict[str, Project] = {}
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        for directory in (
            self._settings.data_dir,
            self._settings.backups_dir,
            self._settings.projects_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        await self._load()
        log.info("catalog.initialized", path=str(self._path), projects=len(self._projects))

    async def _load(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            projects = {
                project_id: Project.model_validate(payload)
                for project_id, payload in raw.get("projects", {}).items()
            }
        except FileNotFoundError:
            log.info("catalog.missing", path=str(self._path))
            self._projects = {}
            await self._persist()
            return
        except (
            json.JSONDecodeError,
            UnicodeDecodeError,
            PydanticValidationError,
            AttributeError,
        ) as exc:
            moved = quarantine(self._path)
            log.warning("catalog.malformed", path=str(self._path), moved_to=str(moved), error=str(exc))
            self._projects = {}
            await self._persist()
            return
        except OSError as exc:
            msg = f"Cannot read catalog {self._path}: {exc}"
            raise CatalogCorrupt(msg) from exc
        self._projects = projects

    async def _persist(self) -> None:
        payload = {
            "projects": {
                project_id: project.model_dump(mode="json")
                for project_id, project in self._projects.items()
            },
            "last_updated": datetime.now(UTC).isoformat(),
        }
        try:
            await asyncio.to_thread(write_json_atomic, self._path, payload)
        except OSError as exc:
            msg = f"Cannot write catalog {self._path}: {exc}"
            raise StorageError(msg) from exc

    async def save(self, project: Project) -> Project:
        project.touch()
        async with self._lock:
            self._projects[project.id] = project.model_copy(deep=True)
            await self._persist()
        log.debug("catalog.saved", project_id=project.id, status=project.status.value)
        return project

    async def get(self, project_id: str) -> Project | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def get_by_slug(self, slug: str) -> Project | None:
        matches = [project for project in self._projects.values() if project.slug == slug]
        if not matches:
            return None
        live = [project for project in matches if not project.is_deleted]
        return (live or matches)[0].model_copy(deep=True)

    async def get_all(self) -> list[Project]:
        return [project.model_copy(deep=True) for project in self._projects.values()]

    async def delete(self, project_id: str) -> None:
        async with self._lock:
            self._projects.pop(project_id, None)
            await self._persist()

        project_path = self._settings.project_data_path(project_id)
        try:
            await asyncio.to_thread(shutil.rmtree, project_path)
            log.info("catalog.data_deleted", project_id=project_id, path=str(project_path))
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning(
                "catalog.data_delete_failed",
                project_id=project_id,
                path=str(project_path),
                error=str(exc),
            )

    async def create_backup(self, project: Project) -> BackupRecord:
        """Archive the project's data directory; the container must be stopped."""
        created_at = datetime.now(UTC)
        backup_dir = self._settings.project_backup_path(project.id)
        stem = f"{project.slug}-{backup_timestamp(created_at)}"
        source = self._settings.project_data_path(project.id)
        if not source.is_dir():
            msg = f"Project data directory not found: {source}"
            raise NotFoundError(msg)

        # Archives are never overwritten; a name collision gets a numeric suffix.
        for attempt in itertools.count():
            filename = f"{stem}{f'-{attempt}' if attempt else ''}{BACKUP_SUFFIX}"
            backup_path = backup_dir / filename
            try:
                await asyncio.to_thread(_create_tar_gz, source, backup_path)
                size = backup_path.stat().st_size
            except FileExistsError:
                continue
            except OSError as exc:
                backup_path.unlink(missing_ok=True)
                msg = f"Backup of {project.slug} failed: {exc}"
                raise StorageError(msg) from exc
            break

        log.info("catalog.backup_created", project_id=project.id, filename=filename, size=size)
        return BackupRecord(
            id=filename.removesuffix(BACKUP_SUFFIX),
            project_id=project.id,
            filename=filename,
            size=size,
            created_at=created_at,
        )

    async def list_backups(self, project_id: str) -> list[BackupRecord]:
        backup_dir = self._settings.project_backup_path(project_id)
        if not backup_dir.is_dir():
            return []
        backups = []
        for entry in backup_dir.iterdir():
            if not entry.is_file() or not entry.name.endswith(BACKUP_SUFFIX):
                continue
            stat = entry.stat()
            backups.append(
                BackupRecord(
                    id=entry.name.removesuffix(BACKUP_SUFFIX),
                    project_id=project_id,
                    filename=entry.name,
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
                )
            )
        return sorted(backups, key=lambda backup: (backup.created_at, backup.filename), reverse=True)

    async def restore_backup(self, project_id: str, filename: str) -> None:
        """Replace the project's data directory with an archive's contents."""
        backup_path = self.backup_file(project_id, filename)
        if not backup_path.is_file():
            msg = f"Backup not found: {filename}"
            raise NotFoundError(msg)

        target = self._settings.project_data_path(project_id)
        try:
            await asyncio.to_thread(shutil.rmtree, target, True)
            target.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(_extract_tar_gz, backup_path, target)
        except (OSError, tarfile.TarError) as exc:
            msg = f"Restore of {filename} failed: {exc}"
            raise StorageError(msg) from exc
        log.info("catalog.backup_restored", project_id=project_id, filename=filename)

    async def delete_backup(self, project_id: str, filename: str) -> None:
        backup_path = self.backup_file(project_id, filename)
        try:
            backup_path.unlink()
        except FileNotFoundError as exc:
            msg = f"Backup not found: {filename}"
            raise NotFoundError(msg) from exc
        log.info("catalog.backup_deleted", project_id=project_id, filename=filename)

    async def get_storage_stats(self) -> StorageStats:
        return await asyncio.to_thread(_storage_stats, self._settings.projects_dir)

    def backup_file(self, project_id: str, filename: str) -> Path:
        if PurePosixPath(filename).name != filename or not filename.endswith(BACKUP_SUFFIX):
            msg = f"Invalid backup filename: {filename}"
            raise ValidationError(msg)
        return self._settings.project_backup_path(project_id) / filename


def _create_tar_gz(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(destination, "x:gz") as archive:
        archive.add(source, arcname=source.name)


def _extract_tar_gz(archive_path: Path, destination: Path) -> None:
    with tarfile.open(archive_path, "r:gz") as archive:
        members = []
        for member in archive.getmembers():
            parts = PurePosixPath(member.name).parts[1:]
            if not parts:
                continue
            member.name = str(PurePosixPath(*parts))
            members.append(member)
        archive.extractall(destination, members=members, filter="data")


def _storage_stats(projects_dir: Path) -> StorageStats:
    stats = StorageStats()
    if not projects_dir.is_dir():
        return stats
    for project_path in projects_dir.iterdir():
        if not project_path.is_dir():
            continue
        size = sum(
            path.stat().st_size for path in project_path.rglob("*") if path.is_file() and not path.is_symlink()
        )
        stats.project_sizes[project_path.name] = size
        stats.total_size += size
    return stats

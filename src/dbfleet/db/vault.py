"""Per-project bootstrap credential storage.

Kept apart from the project catalog so credentials can be exported and
access-controlled on their own terms.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbfleet.core.config import Settings
from dbfleet.core.errors import NotFoundError, StorageError
from dbfleet.db.catalog import quarantine, write_json_atomic
from dbfleet.models.credentials import Credentials

log = structlog.get_logger()

VAULT_FILENAME = "database-credentials.json"
PASSWORD_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789!@#$%^&*"
_UPDATABLE_FIELDS = frozenset(
    {"project_name", "project_slug", "domain", "admin_email", "admin_password"}
)


def generate_password(length: int = 16) -> str:
    return "".join(secrets.choice(PASSWORD_CHARSET) for _ in range(length))


class CredentialVault:
    """Durable map of project id to admin credentials."""

    def __init__(self, settings: Settings) -> None:
        self._path = settings.data_dir / VAULT_FILENAME
        self._records: dict[str, Credentials] = {}
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._records = {
                project_id: Credentials.model_validate(payload)
                for project_id, payload in raw.get("databases", {}).items()
            }
        except FileNotFoundError:
            log.info("vault.missing", path=str(self._path))
            await self._persist()
        except (
            json.JSONDecodeError,
            UnicodeDecodeError,
            PydanticValidationError,
            AttributeError,
        ) as exc:
            moved = quarantine(self._path)
            log.warning("vault.malformed", path=str(self._path), moved_to=str(moved), error=str(exc))
            self._records = {}
            await self._persist()
        except OSError as exc:
            msg = f"Cannot read credential store {self._path}: {exc}"
            raise StorageError(msg) from exc
        log.info("vault.initialized", records=len(self._records))

    async def _persist(self) -> None:
        payload = {
            "databases": {
                project_id: record.model_dump(mode="json")
                for project_id, record in self._records.items()
            },
            "last_updated": datetime.now(UTC).isoformat(),
        }
        try:
            await asyncio.to_thread(write_json_atomic, self._path, payload)
        except OSError as exc:
            msg = f"Cannot write credential store {self._path}: {exc}"
            raise StorageError(msg) from exc

    async def store(
        self,
        project_id: str,
        project_name: str,
        project_slug: str,
        domain: str,
        admin_email: str,
        admin_password: str,
    ) -> Credentials:
        async with self._lock:
            existing = self._records.get(project_id)
            now = datetime.now(UTC)
            record = Credentials(
                project_id=project_id,
                project_name=project_name,
                project_slug=project_slug,
                domain=domain,
                admin_email=admin_email,
                admin_password=admin_password,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._records[project_id] = record
            await self._persist()
        log.info("vault.stored", project_id=project_id, project=project_slug)
        return record.model_copy()

    async def get(self, project_id: str) -> Credentials | None:
        record = self._records.get(project_id)
        return record.model_copy() if record else None

    async def get_all(self) -> list[Credentials]:
        return [record.model_copy() for record in self._records.values()]

    async def update(self, project_id: str, **fields: Any) -> Credentials:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown credential fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        async with self._lock:
            existing = self._records.get(project_id)
            if existing is None:
                msg = f"No credentials found for project: {project_id}"
                raise NotFoundError(msg)
            record = existing.model_copy(update=fields)
            record.touch()
            self._records[project_id] = record
            await self._persist()
        log.info("vault.updated", project_id=project_id, fields=sorted(fields))
        return record.model_copy()

    async def delete(self, project_id: str) -> None:
        async with self._lock:
            if self._records.pop(project_id, None) is None:
                return
            await self._persist()
        log.info("vault.deleted", project_id=project_id)

    def export(self) -> str:
        """Render every record as an operator-readable report."""
        lines = [
            "# Database Credentials",
            f"# Generated: {datetime.now(UTC).isoformat()}",
            "# KEEP THIS FILE SECURE - DO NOT COMMIT TO GIT",
            "",
        ]
        for record in self._records.values():
            lines.extend(
                [
                    f"## {record.project_name} ({record.project_slug})",
                    f"Database ID: {record.project_id}",
                    f"Domain: https://{record.domain}",
                    f"Admin URL: https://{record.domain}/_/",
                    f"Admin Email: {record.admin_email}",
                    f"Admin Password: {record.admin_password}",
                    f"Created: {record.created_at.isoformat()}",
                    "",
                ]
            )
        return "\n".join(lines)

"""Shared API dependency providers."""

from __future__ import annotations

from functools import lru_cache

from dbfleet.core.config import get_settings
from dbfleet.core.project_manager import ProjectManager
from dbfleet.core.runtime_adapter import RuntimeAdapter
from dbfleet.db.catalog import ProjectCatalog
from dbfleet.db.vault import CredentialVault


@lru_cache
def get_project_manager() -> ProjectManager:
    settings = get_settings()
    return ProjectManager(
        settings,
        RuntimeAdapter(settings),
        ProjectCatalog(settings),
        CredentialVault(settings),
    )

"""Fleet configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Control plane configuration."""

    model_config = SettingsConfigDict(env_prefix="DBFLEET_", env_file=".env", extra="ignore")

    # Docker
    docker_host: str = "unix:///var/run/docker.sock"
    image: str = "ghcr.io/muchobien/pocketbase:latest"
    network: str = "pocketbase-network"
    base_port: int = 8090
    container_port: int = 8080

    # Storage
    data_dir: Path = Path("./data")
    backups_dir: Path = Path("./backups")

    # Domain
    base_domain: str = "localhost"
    use_https: bool = False
    cert_resolver: str = "letsencrypt"

    # Defaults applied to every new project
    default_memory_limit: str = "256m"
    default_cpu_limit: str = "0.5"
    admin_email: str = "admin@localhost"

    # Bootstrap polling
    bootstrap_attempts: int = 10
    bootstrap_delay_seconds: float = 3.0

    # Logging
    log_level: str = "info"
    log_format: Literal["json", "text"] = "json"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    def project_data_path(self, project_id: str) -> Path:
        return (self.projects_dir / project_id).resolve()

    def project_backup_path(self, project_id: str) -> Path:
        return (self.backups_dir / project_id).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()

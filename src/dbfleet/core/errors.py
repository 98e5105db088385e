"""Error taxonomy for fleet operations."""

from __future__ import annotations


class FleetError(Exception):
    """Base class for every error raised by the orchestration core."""


class ValidationError(FleetError):
    """Input was rejected before any side effect happened."""


class ConflictError(FleetError):
    """A unique resource (slug) is already taken."""


class NotFoundError(FleetError):
    """Unknown project, backup, container or credential record."""


class RuntimeUnavailable(FleetError):
    """The container runtime cannot be reached."""


class ContainerOperationFailed(FleetError):
    """A container create/start/stop/restart/remove call failed."""


class ImagePullFailed(ContainerOperationFailed):
    """The instance image could not be pulled."""


class ExecFailed(ContainerOperationFailed):
    """A command executed inside a container exited non-zero."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class BootstrapTimeout(FleetError):
    """Admin bootstrap did not succeed within the retry budget."""

    def __init__(self, message: str, *, attempts: int, last_error: str | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class StorageError(FleetError):
    """Catalog, vault or backup I/O failure."""


class CatalogCorrupt(StorageError):
    """The catalog file exists but cannot be read."""

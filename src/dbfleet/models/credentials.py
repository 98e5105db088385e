"""Bootstrap credential models."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class Credentials(BaseModel):
    """Admin identity provisioned inside a tenant instance."""

    project_id: str
    project_name: str
    project_slug: str
    domain: str
    admin_email: str
    admin_password: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        """Update mutation timestamp."""
        self.updated_at = datetime.now(UTC)

"""Core type definitions for pgstage."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, TypeAlias

ProjectId: TypeAlias = str
BranchId: TypeAlias = str
DatabaseName: TypeAlias = str
MigrationId: TypeAlias = str

__all__ = [
    "ProjectId",
    "BranchId",
    "DatabaseName",
    "MigrationId",
    "MigrationState",
    "Branch",
    "ConnectionTarget",
]


class MigrationState(Enum):
    """Lifecycle states of a staged migration."""

    STAGING = "staging"
    STAGED = "staged"
    COMMITTING = "committing"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class Branch:
    """A copy-on-write branch of a project, identified by (project_id, id)."""

    id: BranchId
    project_id: ProjectId
    parent_id: Optional[BranchId] = None
    name: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Branch":
        """Build from a Neon API branch object."""
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            parent_id=data.get("parent_id"),
            name=data.get("name"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "name": self.name,
        }


@dataclass(frozen=True)
class ConnectionTarget:
    """A specific project + branch + database + role to run SQL against."""

    project_id: ProjectId
    database_name: DatabaseName
    role_name: str
    branch_id: Optional[BranchId] = None

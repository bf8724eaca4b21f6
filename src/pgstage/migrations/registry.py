"""Registry of staged migrations awaiting commit."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import yaml

from pgstage.exceptions import (
    MigrationNotFoundError,
    MigrationStateConflictError,
)
from pgstage.types import Branch, MigrationId, MigrationState

__all__ = [
    "StagedMigration",
    "MigrationRegistry",
    "InMemoryMigrationRegistry",
    "FileMigrationRegistry",
]

logger = logging.getLogger(__name__)

_REGISTRY_FORMAT_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass
class StagedMigration:
    """A migration script validated on a staging branch, not yet committed."""

    id: MigrationId
    script: str
    database_name: str
    staging_branch: Branch
    state: MigrationState = MigrationState.STAGED
    created_at: datetime = field(default_factory=_utcnow)
    commit_attempts: int = 0
    last_error: Optional[str] = None
    claimed_at: Optional[datetime] = None

    @property
    def project_id(self) -> str:
        return self.staging_branch.project_id

    @property
    def target_branch_id(self) -> Optional[str]:
        """Primary branch at stage time; commit always applies here."""
        return self.staging_branch.parent_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "script": self.script,
            "database_name": self.database_name,
            "staging_branch": self.staging_branch.to_dict(),
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "commit_attempts": self.commit_attempts,
            "last_error": self.last_error,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagedMigration":
        return cls(
            id=data["id"],
            script=data["script"],
            database_name=data["database_name"],
            staging_branch=Branch.from_api(data["staging_branch"]),
            state=MigrationState(data.get("state", MigrationState.STAGED.value)),
            created_at=_parse_timestamp(data["created_at"]),
            commit_attempts=int(data.get("commit_attempts", 0)),
            last_error=data.get("last_error"),
            claimed_at=_parse_timestamp(data.get("claimed_at")),
        )


@runtime_checkable
class MigrationRegistry(Protocol):
    """
    Keyed store of staged migrations.

    Semantics:
    - Keys are unique: putting an id that is already present is a conflict.
    - ``get`` after ``put`` and before ``remove`` returns the stored migration
      unchanged.
    - Per-key operations must be safe under interleaved requests.
    """

    def put(self, migration: StagedMigration) -> None:
        """Register a new migration."""
        ...

    def get(self, migration_id: MigrationId) -> Optional[StagedMigration]:
        """Return the migration, or None if absent."""
        ...

    def update(self, migration: StagedMigration) -> None:
        """Replace an existing entry (state transitions, attempt counters)."""
        ...

    def transition(
        self,
        migration_id: MigrationId,
        change: Callable[[StagedMigration], StagedMigration],
    ) -> StagedMigration:
        """Replace an entry with ``change(entry)`` as one atomic step.

        Raises MigrationNotFoundError for unknown ids. If ``change`` raises,
        the entry is left as it was and the error propagates.
        """
        ...

    def remove(self, migration_id: MigrationId) -> None:
        """Delete the entry; unknown ids are ignored."""
        ...

    def list_staged(self) -> list[StagedMigration]:
        """Return all entries, oldest first."""
        ...


class InMemoryMigrationRegistry:
    """Process-lifetime registry. Entries are lost on restart."""

    def __init__(self) -> None:
        self._migrations: dict[MigrationId, StagedMigration] = {}
        self._lock = threading.Lock()

    def put(self, migration: StagedMigration) -> None:
        with self._lock:
            if migration.id in self._migrations:
                raise MigrationStateConflictError(
                    f"Migration {migration.id} is already registered"
                )
            self._migrations[migration.id] = migration

    def get(self, migration_id: MigrationId) -> Optional[StagedMigration]:
        with self._lock:
            return self._migrations.get(migration_id)

    def update(self, migration: StagedMigration) -> None:
        with self._lock:
            if migration.id not in self._migrations:
                raise MigrationNotFoundError(migration.id)
            self._migrations[migration.id] = migration

    def transition(
        self,
        migration_id: MigrationId,
        change: Callable[[StagedMigration], StagedMigration],
    ) -> StagedMigration:
        with self._lock:
            current = self._migrations.get(migration_id)
            if current is None:
                raise MigrationNotFoundError(migration_id)
            changed = change(current)
            self._migrations[migration_id] = changed
            return changed

    def remove(self, migration_id: MigrationId) -> None:
        with self._lock:
            self._migrations.pop(migration_id, None)

    def list_staged(self) -> list[StagedMigration]:
        with self._lock:
            return sorted(self._migrations.values(), key=lambda m: m.created_at)


class FileMigrationRegistry:
    """Stores staged migrations in a YAML file so they survive restarts.

    Every operation re-reads the file and writes through a temp file plus
    ``os.replace``, so a crash mid-write never leaves a truncated document.
    The lock is per process; separate processes sharing one file are not
    serialised against each other.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[MigrationId, StagedMigration]:
        if not self._path.exists():
            return {}

        with open(self._path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data:
            return {}
        if not isinstance(data, dict) or not isinstance(
            data.get("migrations", []), list
        ):
            raise MigrationStateConflictError(
                f"Registry file {self._path} is not a valid migration registry"
            )

        migrations = {}
        for entry in data.get("migrations") or []:
            migration = StagedMigration.from_dict(entry)
            migrations[migration.id] = migration
        return migrations

    def _save(self, migrations: dict[MigrationId, StagedMigration]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "version": _REGISTRY_FORMAT_VERSION,
            "migrations": [
                m.to_dict()
                for m in sorted(migrations.values(), key=lambda m: m.created_at)
            ],
        }
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(
                    document,
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    allow_unicode=True,
                )
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Wrote {len(migrations)} migration(s) to {self._path}")

    def put(self, migration: StagedMigration) -> None:
        with self._lock:
            migrations = self._load()
            if migration.id in migrations:
                raise MigrationStateConflictError(
                    f"Migration {migration.id} is already registered"
                )
            migrations[migration.id] = migration
            self._save(migrations)

    def get(self, migration_id: MigrationId) -> Optional[StagedMigration]:
        with self._lock:
            return self._load().get(migration_id)

    def update(self, migration: StagedMigration) -> None:
        with self._lock:
            migrations = self._load()
            if migration.id not in migrations:
                raise MigrationNotFoundError(migration.id)
            migrations[migration.id] = migration
            self._save(migrations)

    def transition(
        self,
        migration_id: MigrationId,
        change: Callable[[StagedMigration], StagedMigration],
    ) -> StagedMigration:
        with self._lock:
            migrations = self._load()
            current = migrations.get(migration_id)
            if current is None:
                raise MigrationNotFoundError(migration_id)
            changed = change(current)
            migrations[migration_id] = changed
            self._save(migrations)
            return changed

    def remove(self, migration_id: MigrationId) -> None:
        with self._lock:
            migrations = self._load()
            if migrations.pop(migration_id, None) is not None:
                self._save(migrations)

    def list_staged(self) -> list[StagedMigration]:
        with self._lock:
            return sorted(self._load().values(), key=lambda m: m.created_at)

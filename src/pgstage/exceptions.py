"""Exception classes for pgstage."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from pgstage.types import Branch

__all__ = [
    "PgstageError",
    "ConfigError",
    "NeonApiError",
    "InvalidArgumentError",
    "UnknownToolError",
    "MigrationError",
    "BranchProvisioningError",
    "MalformedSqlError",
    "ExecutionError",
    "MigrationNotFoundError",
    "MigrationStateConflictError",
]


class PgstageError(Exception):
    """Base exception for pgstage."""


class ConfigError(PgstageError):
    """Error in configuration."""


class NeonApiError(PgstageError):
    """Neon control-plane request returned a non-success status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Neon API error {status_code}: {message}")


class InvalidArgumentError(PgstageError):
    """Tool arguments failed validation."""


class UnknownToolError(PgstageError):
    """No tool is registered under the requested name."""


class MigrationError(PgstageError):
    """Base error during migration staging or commit."""


class BranchProvisioningError(MigrationError):
    """Branch creation or deletion failed.

    ``branch`` is the branch involved when one exists. ``result`` carries the
    commit result when the SQL was applied but the staging branch could not
    be deleted afterwards.
    """

    def __init__(
        self,
        message: str,
        branch: Optional["Branch"] = None,
        result: Any = None,
    ):
        self.branch = branch
        self.result = result
        super().__init__(message)


class MalformedSqlError(MigrationError):
    """Migration script could not be split into statements."""

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        cleanup_error: Optional[str] = None,
    ):
        self.line = line
        self.cleanup_error = cleanup_error
        super().__init__(message)


class ExecutionError(MigrationError):
    """A statement batch failed on its target branch."""

    def __init__(
        self,
        message: str,
        branch: Optional["Branch"] = None,
        statement_index: Optional[int] = None,
    ):
        self.branch = branch
        self.statement_index = statement_index
        super().__init__(message)


class MigrationNotFoundError(MigrationError):
    """No staged migration is registered under the given id."""

    def __init__(self, migration_id: str):
        self.migration_id = migration_id
        super().__init__(f"Migration not found: {migration_id}")


class MigrationStateConflictError(MigrationError):
    """Registry or lifecycle state does not allow the requested operation."""

"""Migration staging, registry and statement splitting."""

from pgstage.migrations.orchestrator import (
    BranchProvisioner,
    CleanupPolicy,
    CommitResult,
    MigrationHandle,
    MigrationOrchestrator,
    SqlExecutor,
)
from pgstage.migrations.registry import (
    FileMigrationRegistry,
    InMemoryMigrationRegistry,
    MigrationRegistry,
    StagedMigration,
)
from pgstage.migrations.splitter import split_sql_statements

__all__ = [
    "BranchProvisioner",
    "CleanupPolicy",
    "CommitResult",
    "MigrationHandle",
    "MigrationOrchestrator",
    "SqlExecutor",
    "FileMigrationRegistry",
    "InMemoryMigrationRegistry",
    "MigrationRegistry",
    "StagedMigration",
    "split_sql_statements",
]

"""Two-phase schema migrations: stage on a throwaway branch, commit to its parent."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from pgstage.exceptions import (
    BranchProvisioningError,
    ExecutionError,
    MalformedSqlError,
    MigrationNotFoundError,
    MigrationStateConflictError,
)
from pgstage.migrations.registry import MigrationRegistry, StagedMigration
from pgstage.migrations.splitter import split_sql_statements
from pgstage.types import (
    Branch,
    BranchId,
    ConnectionTarget,
    MigrationId,
    MigrationState,
    ProjectId,
)

__all__ = [
    "BranchProvisioner",
    "SqlExecutor",
    "CleanupPolicy",
    "MigrationHandle",
    "CommitResult",
    "MigrationOrchestrator",
]

logger = logging.getLogger(__name__)

DEFAULT_ROLE_NAME = "neondb_owner"

# A COMMITTING claim older than this is taken to belong to a dead process.
DEFAULT_STALE_CLAIM_AFTER = timedelta(minutes=30)


@runtime_checkable
class BranchProvisioner(Protocol):
    """Creates and deletes copy-on-write branches."""

    def create_branch(
        self,
        project_id: ProjectId,
        parent_id: Optional[BranchId] = None,
        name: Optional[str] = None,
    ) -> Branch:
        """Create a branch with its own compute endpoint.

        Without ``parent_id`` the branch is forked from the project's primary
        branch, and the returned ``Branch.parent_id`` names it.
        """
        ...

    def delete_branch(self, project_id: ProjectId, branch_id: BranchId) -> None:
        ...


@runtime_checkable
class SqlExecutor(Protocol):
    """Runs SQL against one branch/database/role."""

    def execute(self, target: ConnectionTarget, sql: str) -> list[dict[str, Any]]:
        ...

    def execute_batch(
        self, target: ConnectionTarget, statements: list[str]
    ) -> list[dict[str, Any]]:
        """Run statements in order inside one transaction (all or nothing).

        Raises ExecutionError when any statement fails.
        """
        ...


class CleanupPolicy(Enum):
    """What happens to a staging branch when the staged batch fails."""

    # Leave the partially applied branch for inspection.
    KEEP_ON_EXECUTION_FAILURE = "keep"
    DELETE_ON_FAILURE = "delete"


@dataclass(frozen=True)
class MigrationHandle:
    """Returned by stage: enough for the caller to verify the staging branch."""

    migration_id: MigrationId
    staging_branch: Branch
    execution_result: list[dict[str, Any]]
    state: MigrationState = MigrationState.STAGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "staging_branch": self.staging_branch.to_dict(),
            "execution_result": self.execution_result,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class CommitResult:
    migration_id: MigrationId
    deleted_branch: Branch
    target_branch_id: Optional[BranchId]
    execution_result: list[dict[str, Any]]
    state: MigrationState = MigrationState.COMMITTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "deleted_branch": self.deleted_branch.to_dict(),
            "target_branch_id": self.target_branch_id,
            "execution_result": self.execution_result,
            "state": self.state.value,
        }


class MigrationOrchestrator:
    """
    Stages migration scripts on an ephemeral branch and commits them to the
    branch it was forked from.

    State machine per migration: STAGING -> STAGED -> COMMITTING ->
    {COMMITTED, FAILED}. A FAILED commit keeps its registry entry and staging
    branch, so committing the same id again starts a new attempt.

    The orchestrator never retries on its own; retry is the caller's decision.
    """

    def __init__(
        self,
        provisioner: BranchProvisioner,
        executor: SqlExecutor,
        registry: MigrationRegistry,
        role_name: str = DEFAULT_ROLE_NAME,
        cleanup_policy: CleanupPolicy = CleanupPolicy.KEEP_ON_EXECUTION_FAILURE,
        stale_claim_after: timedelta = DEFAULT_STALE_CLAIM_AFTER,
    ) -> None:
        self._provisioner = provisioner
        self._executor = executor
        self._registry = registry
        self._role_name = role_name
        self._cleanup_policy = cleanup_policy
        self._stale_claim_after = stale_claim_after

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    def _target(
        self, project_id: ProjectId, branch_id: Optional[BranchId], database_name: str
    ) -> ConnectionTarget:
        return ConnectionTarget(
            project_id=project_id,
            branch_id=branch_id,
            database_name=database_name,
            role_name=self._role_name,
        )

    def _delete_branch(self, branch: Branch) -> None:
        try:
            self._provisioner.delete_branch(branch.project_id, branch.id)
        except BranchProvisioningError:
            raise
        except Exception as exc:
            raise BranchProvisioningError(
                f"Failed to delete branch {branch.id} in project {branch.project_id}: {exc}",
                branch=branch,
            ) from exc
        logger.info(f"Deleted branch {branch.id} in project {branch.project_id}")

    def stage(
        self, script: str, database_name: str, project_id: ProjectId
    ) -> MigrationHandle:
        """
        Apply ``script`` to a fresh branch of ``project_id`` and register it.

        Raises:
            BranchProvisioningError: branch creation failed; nothing was registered.
            MalformedSqlError: the script could not be split; the new branch
                was deleted before raising.
            ExecutionError: the batch failed on the staging branch; the branch
                is kept unless the cleanup policy says otherwise.
        """
        logger.info(f"Staging migration on project {project_id}, database {database_name}")

        try:
            branch = self._provisioner.create_branch(project_id)
        except BranchProvisioningError:
            raise
        except Exception as exc:
            raise BranchProvisioningError(
                f"Failed to create staging branch in project {project_id}: {exc}"
            ) from exc
        logger.info(f"Created staging branch {branch.id} (parent {branch.parent_id})")

        if not branch.parent_id:
            # Commit targets parent_id; None would resolve to the current primary.
            leftover = branch
            try:
                self._delete_branch(branch)
                leftover = None
            except BranchProvisioningError as cleanup_exc:
                logger.error(f"Could not remove staging branch {branch.id}: {cleanup_exc}")
            raise BranchProvisioningError(
                f"Staging branch {branch.id} in project {project_id} reports no parent branch",
                branch=leftover,
            )

        try:
            statements = split_sql_statements(script)
            if not statements:
                raise MalformedSqlError("Migration script contains no SQL statements")
        except MalformedSqlError as exc:
            try:
                self._delete_branch(branch)
            except BranchProvisioningError as cleanup_exc:
                logger.error(f"Could not remove staging branch {branch.id}: {cleanup_exc}")
                exc.cleanup_error = str(cleanup_exc)
            raise

        try:
            result = self._executor.execute_batch(
                self._target(project_id, branch.id, database_name), statements
            )
        except Exception as exc:
            if isinstance(exc, ExecutionError):
                error = exc
            else:
                error = ExecutionError(f"Staged batch failed on branch {branch.id}: {exc}")
            error.branch = branch
            logger.warning(f"Staged batch failed on branch {branch.id}: {exc}")
            if self._cleanup_policy is CleanupPolicy.DELETE_ON_FAILURE:
                try:
                    self._delete_branch(branch)
                    error.branch = None
                except BranchProvisioningError as cleanup_exc:
                    logger.error(
                        f"Could not remove staging branch {branch.id}: {cleanup_exc}"
                    )
            else:
                logger.info(f"Keeping branch {branch.id} for inspection")
            if error is exc:
                raise
            raise error from exc

        migration_id = str(uuid.uuid4())
        self._registry.put(
            StagedMigration(
                id=migration_id,
                script=script,
                database_name=database_name,
                staging_branch=branch,
                state=MigrationState.STAGED,
            )
        )
        logger.info(
            f"Staged migration {migration_id} on branch {branch.id} "
            f"({len(statements)} statement(s))"
        )

        return MigrationHandle(
            migration_id=migration_id,
            staging_branch=branch,
            execution_result=result,
        )

    def _is_stale(self, migration: StagedMigration, now: datetime) -> bool:
        if migration.claimed_at is None:
            return True
        return now - migration.claimed_at >= self._stale_claim_after

    def _claim(
        self,
        migration_id: MigrationId,
        count_attempt: bool = True,
        force: bool = False,
    ) -> StagedMigration:
        now = datetime.now(timezone.utc)

        def claim(migration: StagedMigration) -> StagedMigration:
            if migration.state is MigrationState.COMMITTING:
                if not force and not self._is_stale(migration, now):
                    raise MigrationStateConflictError(
                        f"Migration {migration_id} is already being committed"
                    )
                logger.warning(
                    f"Taking over commit claim on migration {migration_id} "
                    f"made at {migration.claimed_at}"
                )
            return replace(
                migration,
                state=MigrationState.COMMITTING,
                claimed_at=now,
                commit_attempts=migration.commit_attempts + int(count_attempt),
            )

        return self._registry.transition(migration_id, claim)

    def _mark_failed(self, migration: StagedMigration, exc: BaseException) -> None:
        self._registry.update(
            replace(
                migration,
                state=MigrationState.FAILED,
                claimed_at=None,
                last_error=str(exc) or type(exc).__name__,
            )
        )

    def commit(self, migration_id: MigrationId) -> CommitResult:
        """
        Re-run the staged script on the staging branch's parent, then drop the
        staging branch and forget the migration.

        Raises:
            MigrationNotFoundError: unknown id, already committed, or lost
                with a non-durable registry after a restart.
            MigrationStateConflictError: a commit of this id is in flight and
                its claim is younger than ``stale_claim_after``.
            ExecutionError: the batch failed on the parent branch; the entry
                is kept in FAILED state together with its staging branch.
            BranchProvisioningError: the SQL was applied but the staging branch
                could not be deleted; ``result`` holds the CommitResult.
        """
        migration = self._claim(migration_id)
        branch = migration.staging_branch
        logger.info(
            f"Committing migration {migration_id} to branch {migration.target_branch_id} "
            f"(attempt {migration.commit_attempts})"
        )

        try:
            statements = split_sql_statements(migration.script)
            result = self._executor.execute_batch(
                self._target(
                    migration.project_id,
                    migration.target_branch_id,
                    migration.database_name,
                ),
                statements,
            )
        except BaseException as exc:
            self._mark_failed(migration, exc)
            logger.error(f"Commit of migration {migration_id} failed: {exc!r}")
            if isinstance(exc, ExecutionError):
                exc.branch = branch
                raise
            if isinstance(exc, MalformedSqlError) or not isinstance(exc, Exception):
                raise
            raise ExecutionError(str(exc), branch=branch) from exc

        # The DDL is on the parent now; the entry must not allow a second apply.
        self._registry.remove(migration_id)
        commit_result = CommitResult(
            migration_id=migration_id,
            deleted_branch=branch,
            target_branch_id=migration.target_branch_id,
            execution_result=result,
        )

        try:
            self._delete_branch(branch)
        except BranchProvisioningError as exc:
            logger.error(
                f"Migration {migration_id} applied but staging branch {branch.id} remains: {exc}"
            )
            raise BranchProvisioningError(
                f"Migration {migration_id} was applied to branch "
                f"{migration.target_branch_id}, but staging branch {branch.id} "
                f"could not be deleted: {exc}",
                branch=branch,
                result=commit_result,
            ) from exc

        logger.info(f"Committed migration {migration_id}")
        return commit_result

    def abandon(self, migration_id: MigrationId, force: bool = False) -> Branch:
        """Drop a staged migration without applying it to the parent branch.

        ``force`` takes over a COMMITTING entry even when its claim is recent,
        e.g. after the committing process was killed.
        """
        migration = self._claim(migration_id, count_attempt=False, force=force)
        try:
            self._delete_branch(migration.staging_branch)
        except BaseException as exc:
            self._mark_failed(migration, exc)
            raise
        self._registry.remove(migration_id)
        logger.info(f"Abandoned migration {migration_id}")
        return migration.staging_branch

    def get(self, migration_id: MigrationId) -> StagedMigration:
        migration = self._registry.get(migration_id)
        if migration is None:
            raise MigrationNotFoundError(migration_id)
        return migration

    def pending(self) -> list[StagedMigration]:
        return self._registry.list_staged()

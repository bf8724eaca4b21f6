"""Shared test helpers for pgstage tests."""

import itertools
from typing import Optional
from unittest.mock import MagicMock

from pgstage.config import Config
from pgstage.exceptions import BranchProvisioningError, ExecutionError
from pgstage.migrations.orchestrator import CleanupPolicy, MigrationOrchestrator
from pgstage.migrations.registry import InMemoryMigrationRegistry
from pgstage.tools import NeonTools, RetryPolicy
from pgstage.types import Branch


def make_branch(
    branch_id: str = "br-staging",
    project_id: str = "proj-1",
    parent_id: Optional[str] = "br-main",
    name: Optional[str] = None,
) -> Branch:
    return Branch(id=branch_id, project_id=project_id, parent_id=parent_id, name=name)


def make_test_config(**overrides) -> Config:
    """Create a Config for tests with sensible defaults."""
    values = {"api_key": "test-key"}
    values.update(overrides)
    return Config(**values)


class FakeProvisioner:
    """In-memory branch provisioner.

    Branches fork from ``primary`` unless a parent is given. Failures are
    queued per call through ``create_failures`` and ``delete_failures``.
    """

    def __init__(self, primary: str = "br-main"):
        self.primary = primary
        self.created: list[Branch] = []
        self.deleted: list[tuple[str, str]] = []
        self.create_failures: list[Exception] = []
        self.delete_failures: list[Exception] = []
        self._ids = itertools.count(1)

    @property
    def live_branches(self) -> list[Branch]:
        deleted = set(self.deleted)
        return [b for b in self.created if (b.project_id, b.id) not in deleted]

    def create_branch(self, project_id, parent_id=None, name=None) -> Branch:
        if self.create_failures:
            raise self.create_failures.pop(0)
        branch = Branch(
            id=f"br-stage-{next(self._ids)}",
            project_id=project_id,
            parent_id=parent_id or self.primary,
            name=name,
        )
        self.created.append(branch)
        return branch

    def delete_branch(self, project_id, branch_id) -> None:
        if self.delete_failures:
            raise self.delete_failures.pop(0)
        self.deleted.append((project_id, branch_id))


class FakeExecutor:
    """Records every call; failures are keyed by target branch id.

    ``fail_on_branches`` maps a branch id to the error raised when a batch
    targets that branch.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.fail_on_branches: dict[Optional[str], Exception] = {}
        self.rows: list[dict] = []

    def execute(self, target, sql):
        self.calls.append((target, [sql]))
        return list(self.rows)

    def execute_batch(self, target, statements):
        self.calls.append((target, list(statements)))
        error = self.fail_on_branches.get(target.branch_id)
        if error is not None:
            raise error
        return [
            {
                "statement_index": i,
                "sql": s,
                "rowcount": 0,
                "status": "OK",
                "rows": list(self.rows),
            }
            for i, s in enumerate(statements)
        ]

    def batches_on(self, branch_id):
        return [stmts for target, stmts in self.calls if target.branch_id == branch_id]


def make_orchestrator(
    provisioner: Optional[FakeProvisioner] = None,
    executor: Optional[FakeExecutor] = None,
    registry=None,
    cleanup_policy: CleanupPolicy = CleanupPolicy.KEEP_ON_EXECUTION_FAILURE,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(
        provisioner=provisioner or FakeProvisioner(),
        executor=executor or FakeExecutor(),
        registry=registry if registry is not None else InMemoryMigrationRegistry(),
        cleanup_policy=cleanup_policy,
    )


def make_tools(
    provisioner: Optional[FakeProvisioner] = None,
    executor: Optional[FakeExecutor] = None,
    client: Optional[MagicMock] = None,
    registry=None,
    max_attempts: int = 2,
) -> NeonTools:
    """NeonTools wired to fakes; ``client`` defaults to a MagicMock."""
    executor = executor or FakeExecutor()
    orchestrator = make_orchestrator(
        provisioner=provisioner, executor=executor, registry=registry
    )
    return NeonTools(
        client=client or MagicMock(),
        executor=executor,
        orchestrator=orchestrator,
        role_name="neondb_owner",
        default_database="neondb",
        stage_retry=RetryPolicy(max_attempts=max_attempts),
    )


def provisioning_error(message: str = "capacity exceeded", branch=None):
    return BranchProvisioningError(message, branch=branch)


def execution_error(message: str = "column already exists", index: int = 0):
    return ExecutionError(message, statement_index=index)

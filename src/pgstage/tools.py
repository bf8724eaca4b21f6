"""Named operations exposed to the calling agent.

Each tool takes a JSON object of arguments and returns a ToolResult. Errors
never escape ``call_tool``: they are logged and returned as a failure result
with a readable message.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pgstage.exceptions import (
    BranchProvisioningError,
    ExecutionError,
    InvalidArgumentError,
    MalformedSqlError,
    PgstageError,
    UnknownToolError,
)
from pgstage.migrations.orchestrator import MigrationOrchestrator, SqlExecutor
from pgstage.neon.client import NeonApiClient
from pgstage.neon.queries import (
    DESCRIBE_BRANCH_STATEMENTS,
    DESCRIBE_TABLE,
    LIST_TABLES,
    escape_sql_string,
)
from pgstage.types import ConnectionTarget

__all__ = [
    "ToolDefinition",
    "ToolResult",
    "RetryPolicy",
    "NeonTools",
    "TOOL_DEFINITIONS",
    "validate_arguments",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class ToolResult:
    content: list[dict[str, str]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, *parts: str, is_error: bool = False) -> "ToolResult":
        return cls(
            content=[{"type": "text", "text": part} for part in parts],
            is_error=is_error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry applied at the tool boundary.

    Only errors listed in ``retry_on`` are retried, and only when they carry
    no branch (a retry must not be able to leak a second staging branch).
    """

    max_attempts: int = 2
    retry_on: tuple[type[Exception], ...] = (BranchProvisioningError,)

    def run(self, operation: Callable[[], Any]) -> Any:
        attempt = 1
        while True:
            try:
                return operation()
            except self.retry_on as exc:
                if attempt >= self.max_attempts or getattr(exc, "branch", None):
                    raise
                logger.warning(
                    f"Attempt {attempt} of {self.max_attempts} failed, retrying: {exc}"
                )
                attempt += 1


def _schema(
    properties: dict[str, dict[str, Any]], required: Optional[list[str]] = None
) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
    }


_PROJECT_ID = {"type": "string", "description": "The ID of the project"}
_BRANCH_ID = {
    "type": "string",
    "description": "An optional ID of the branch; the primary branch when omitted",
}
_DATABASE = {"type": "string", "description": "The name of the database"}

PREPARE_MIGRATION_DESCRIPTION = """\
Stage a schema migration (CREATE, ALTER, DROP ...) on a temporary branch.

Workflow:
  1. Creates a temporary branch from the project's primary branch
  2. Applies the migration SQL on that branch in one transaction
  3. Returns the migration id and the temporary branch for verification

Afterwards you MUST:
  1. Verify the change on the temporary branch with 'run_sql'
  2. Ask the user for confirmation
  3. Call 'complete_database_migration' with the migration id

If the temporary branch cannot be created the call is retried once; after
that the error is returned and no other tool should be tried instead.
"""

TOOL_DEFINITIONS: list[ToolDefinition] = [
    ToolDefinition(
        "list_projects",
        "List all Neon projects in your account.",
        _schema(
            {
                "cursor": {
                    "type": "string",
                    "description": "Cursor from the previous response for the next page.",
                },
                "limit": {
                    "type": "integer",
                    "description": "Number of projects to return (1 to 400).",
                },
                "search": {
                    "type": "string",
                    "description": "Partial project name or id to filter by.",
                },
                "org_id": {"type": "string", "description": "Filter by organization."},
            }
        ),
    ),
    ToolDefinition(
        "create_project",
        "Create a new Neon project.",
        _schema({"name": {"type": "string", "description": "Optional project name."}}),
    ),
    ToolDefinition(
        "delete_project",
        "Delete a Neon project.",
        _schema({"projectId": _PROJECT_ID}, ["projectId"]),
    ),
    ToolDefinition(
        "describe_project",
        "Describe a Neon project and list its branches.",
        _schema({"projectId": _PROJECT_ID}, ["projectId"]),
    ),
    ToolDefinition(
        "run_sql",
        "Execute a single SQL statement against a Neon database.",
        _schema(
            {
                "sql": {"type": "string", "description": "The SQL statement to execute"},
                "databaseName": _DATABASE,
                "projectId": _PROJECT_ID,
                "branchId": _BRANCH_ID,
            },
            ["sql", "databaseName", "projectId"],
        ),
    ),
    ToolDefinition(
        "run_sql_transaction",
        "Execute several SQL statements in one transaction against a Neon database.",
        _schema(
            {
                "sqlStatements": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "The SQL statements to execute, in order",
                },
                "databaseName": _DATABASE,
                "projectId": _PROJECT_ID,
                "branchId": _BRANCH_ID,
            },
            ["sqlStatements", "databaseName", "projectId"],
        ),
    ),
    ToolDefinition(
        "describe_table_schema",
        "Describe the columns of a table in a Neon database.",
        _schema(
            {
                "tableName": {"type": "string", "description": "The name of the table"},
                "databaseName": _DATABASE,
                "projectId": _PROJECT_ID,
                "branchId": _BRANCH_ID,
            },
            ["tableName", "databaseName", "projectId"],
        ),
    ),
    ToolDefinition(
        "get_database_tables",
        "List all tables in a Neon database.",
        _schema(
            {"projectId": _PROJECT_ID, "branchId": _BRANCH_ID, "databaseName": _DATABASE},
            ["projectId", "databaseName"],
        ),
    ),
    ToolDefinition(
        "create_branch",
        "Create a branch in a Neon project.",
        _schema(
            {
                "projectId": _PROJECT_ID,
                "branchName": {"type": "string", "description": "Optional branch name"},
            },
            ["projectId"],
        ),
    ),
    ToolDefinition(
        "prepare_database_migration",
        PREPARE_MIGRATION_DESCRIPTION,
        _schema(
            {
                "migrationSql": {
                    "type": "string",
                    "description": "The migration SQL to stage",
                },
                "databaseName": {
                    "type": "string",
                    "description": "Target database; the configured default when omitted",
                },
                "projectId": _PROJECT_ID,
            },
            ["migrationSql", "projectId"],
        ),
    ),
    ToolDefinition(
        "complete_database_migration",
        "Apply a staged migration to the branch it was staged from, once the "
        "user has confirmed it. Also deletes the temporary branch created by "
        "'prepare_database_migration'.",
        _schema(
            {"migrationId": {"type": "string", "description": "Id from prepare"}},
            ["migrationId"],
        ),
    ),
    ToolDefinition(
        "describe_branch",
        "Show a tree of all objects in a branch: databases, schemas, tables, "
        "views and functions.",
        _schema(
            {
                "projectId": _PROJECT_ID,
                "branchId": {"type": "string", "description": "The branch to describe"},
                "databaseName": _DATABASE,
            },
            ["projectId", "branchId", "databaseName"],
        ),
    ),
    ToolDefinition(
        "delete_branch",
        "Delete a branch from a Neon project.",
        _schema(
            {
                "projectId": _PROJECT_ID,
                "branchId": {"type": "string", "description": "The branch to delete"},
            },
            ["projectId", "branchId"],
        ),
    ),
]

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def validate_arguments(schema: dict[str, Any], arguments: Any) -> dict[str, Any]:
    """Check required fields and value types against a tool's input schema.

    Unknown fields are dropped. Returns the cleaned argument dict.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidArgumentError("Arguments must be a JSON object")

    problems = []
    for name in schema.get("required", []):
        if arguments.get(name) is None:
            problems.append(f"'{name}' is required")

    cleaned: dict[str, Any] = {}
    for name, spec in schema.get("properties", {}).items():
        value = arguments.get(name)
        if value is None:
            continue
        expected = spec.get("type")
        if expected and not _TYPE_CHECKS[expected](value):
            problems.append(f"'{name}' must be of type {expected}")
            continue
        items = spec.get("items", {}).get("type")
        if expected == "array" and items:
            if not all(_TYPE_CHECKS[items](item) for item in value):
                problems.append(f"'{name}' must be an array of {items}")
                continue
        cleaned[name] = value

    if problems:
        raise InvalidArgumentError("Invalid arguments: " + "; ".join(problems))
    return cleaned


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


class NeonTools:
    """Dispatches tool calls to the control plane, SQL executor and orchestrator."""

    def __init__(
        self,
        client: NeonApiClient,
        executor: SqlExecutor,
        orchestrator: MigrationOrchestrator,
        role_name: str,
        default_database: str,
        stage_retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._orchestrator = orchestrator
        self._role_name = role_name
        self._default_database = default_database
        self._stage_retry = stage_retry or RetryPolicy()
        self._definitions = {d.name: d for d in TOOL_DEFINITIONS}
        self._handlers: dict[str, Callable[[dict[str, Any]], ToolResult]] = {
            "list_projects": self._list_projects,
            "create_project": self._create_project,
            "delete_project": self._delete_project,
            "describe_project": self._describe_project,
            "run_sql": self._run_sql,
            "run_sql_transaction": self._run_sql_transaction,
            "describe_table_schema": self._describe_table_schema,
            "get_database_tables": self._get_database_tables,
            "create_branch": self._create_branch,
            "prepare_database_migration": self._prepare_database_migration,
            "complete_database_migration": self._complete_database_migration,
            "describe_branch": self._describe_branch,
            "delete_branch": self._delete_branch,
        }

    @property
    def orchestrator(self) -> MigrationOrchestrator:
        return self._orchestrator

    def list_tools(self) -> list[ToolDefinition]:
        return list(TOOL_DEFINITIONS)

    def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> ToolResult:
        logger.info(f"Tool call: {name}")
        try:
            definition = self._definitions.get(name)
            if definition is None:
                raise UnknownToolError(f"Unknown tool: {name}")
            params = validate_arguments(definition.input_schema, arguments)
            return self._handlers[name](params)
        except PgstageError as exc:
            logger.warning(f"Tool {name} failed: {exc}")
            return ToolResult.text(_failure_message(exc), is_error=True)
        except Exception as exc:
            logger.exception(f"Unexpected error in tool {name}")
            return ToolResult.text(f"Error: {exc}", is_error=True)

    def _target(self, params: dict[str, Any]) -> ConnectionTarget:
        return ConnectionTarget(
            project_id=params["projectId"],
            branch_id=params.get("branchId"),
            database_name=params["databaseName"],
            role_name=self._role_name,
        )

    def _list_projects(self, params: dict[str, Any]) -> ToolResult:
        projects = self._client.list_projects(
            cursor=params.get("cursor"),
            limit=params.get("limit"),
            search=params.get("search"),
            org_id=params.get("org_id"),
        )
        return ToolResult.text(_to_json(projects))

    def _create_project(self, params: dict[str, Any]) -> ToolResult:
        data = self._client.create_project(params.get("name"))
        project = data.get("project", {})
        branch = data.get("branch", {})
        databases = data.get("databases") or [{}]
        return ToolResult.text(
            "\n".join(
                [
                    "Your Neon project is ready.",
                    f'The project_id is "{project.get("id")}"',
                    f'The branch name is "{branch.get("name")}"',
                    f'There is one database available on this branch, called "{databases[0].get("name")}",',
                    "but you can create more databases using SQL commands.",
                ]
            )
        )

    def _delete_project(self, params: dict[str, Any]) -> ToolResult:
        self._client.delete_project(params["projectId"])
        return ToolResult.text(
            f"Project deleted successfully.\nProject ID: {params['projectId']}"
        )

    def _describe_project(self, params: dict[str, Any]) -> ToolResult:
        project = self._client.get_project(params["projectId"]).get("project", {})
        branches = self._client.list_branches(params["projectId"])
        return ToolResult.text(
            f"This project is called {project.get('name')}.",
            "It contains the following branches (use the describe_branch tool "
            f"to learn more about each branch): {_to_json(branches)}",
        )

    def _run_sql(self, params: dict[str, Any]) -> ToolResult:
        rows = self._executor.execute(self._target(params), params["sql"])
        return ToolResult.text(_to_json(rows))

    def _run_sql_transaction(self, params: dict[str, Any]) -> ToolResult:
        results = self._executor.execute_batch(
            self._target(params), params["sqlStatements"]
        )
        return ToolResult.text(_to_json(results))

    def _describe_table_schema(self, params: dict[str, Any]) -> ToolResult:
        sql = DESCRIBE_TABLE.format(table_name=escape_sql_string(params["tableName"]))
        rows = self._executor.execute(self._target(params), sql)
        return ToolResult.text(_to_json(rows))

    def _get_database_tables(self, params: dict[str, Any]) -> ToolResult:
        rows = self._executor.execute(self._target(params), LIST_TABLES)
        return ToolResult.text(_to_json(rows))

    def _create_branch(self, params: dict[str, Any]) -> ToolResult:
        branch = self._client.create_branch(
            params["projectId"], name=params.get("branchName")
        )
        return ToolResult.text(
            "\n".join(
                [
                    "Branch created successfully.",
                    f"Project ID: {branch.project_id}",
                    f"Branch ID: {branch.id}",
                    f"Branch name: {branch.name}",
                    f"Parent branch: {branch.parent_id}",
                ]
            )
        )

    def _prepare_database_migration(self, params: dict[str, Any]) -> ToolResult:
        database_name = params.get("databaseName") or self._default_database
        handle = self._stage_retry.run(
            lambda: self._orchestrator.stage(
                params["migrationSql"], database_name, params["projectId"]
            )
        )
        branch = handle.staging_branch
        return ToolResult.text(
            "\n".join(
                [
                    "Migration created successfully in temporary branch.",
                    f"Migration ID: {handle.migration_id}",
                    f"Temporary branch name: {branch.name}",
                    f"Temporary branch ID: {branch.id}",
                    f"Execution result: {_to_json(handle.execution_result)}",
                    "",
                    "Next steps:",
                    f"  1. Test this migration with 'run_sql' on branch '{branch.id}'",
                    "  2. Verify the changes meet your requirements",
                    "  3. If satisfied, call 'complete_database_migration' with "
                    f"migrationId: {handle.migration_id}",
                ]
            )
        )

    def _complete_database_migration(self, params: dict[str, Any]) -> ToolResult:
        result = self._orchestrator.commit(params["migrationId"])
        return ToolResult.text(f"Result: {_to_json(result.to_dict())}")

    def _describe_branch(self, params: dict[str, Any]) -> ToolResult:
        results = self._executor.execute_batch(
            self._target(params), list(DESCRIBE_BRANCH_STATEMENTS)
        )
        tree = results[-1]["rows"] if results else []
        return ToolResult.text(
            "Database Structure:\n"
            + "\n".join(row.get("tree_structure", "") for row in tree)
        )

    def _delete_branch(self, params: dict[str, Any]) -> ToolResult:
        self._client.delete_branch(params["projectId"], params["branchId"])
        return ToolResult.text(
            "Branch deleted successfully.\n"
            f"Project ID: {params['projectId']}\n"
            f"Branch ID: {params['branchId']}"
        )


def _failure_message(exc: PgstageError) -> str:
    lines = [f"Error: {exc}"]
    if isinstance(exc, ExecutionError) and exc.branch is not None:
        lines.append(
            f"Temporary branch {exc.branch.id} was left in place for inspection."
        )
    if isinstance(exc, MalformedSqlError) and exc.cleanup_error:
        lines.append(f"Cleanup of the temporary branch also failed: {exc.cleanup_error}")
    if isinstance(exc, BranchProvisioningError) and exc.result is not None:
        lines.append(f"Result: {_to_json(exc.result.to_dict())}")
    return "\n".join(lines)

"""Tests for the tool layer: dispatch, argument validation and retry."""

import json
from unittest.mock import MagicMock

import pytest

from pgstage.exceptions import BranchProvisioningError, InvalidArgumentError
from pgstage.tools import TOOL_DEFINITIONS, RetryPolicy, ToolResult, validate_arguments
from pgstage.types import Branch
from tests.helpers import (
    FakeExecutor,
    FakeProvisioner,
    execution_error,
    make_branch,
    make_tools,
    provisioning_error,
)

ADD_LAST_LOGIN = "ALTER TABLE users ADD COLUMN last_login timestamp;"


def text_of(result: ToolResult) -> str:
    return "\n".join(part["text"] for part in result.content)


def migration_id_from(result: ToolResult) -> str:
    for line in text_of(result).splitlines():
        if line.startswith("Migration ID: "):
            return line.split(": ", 1)[1]
    raise AssertionError("no migration id in result")


class TestToolDefinitions:
    def test_tool_names(self):
        assert [d.name for d in TOOL_DEFINITIONS] == [
            "list_projects",
            "create_project",
            "delete_project",
            "describe_project",
            "run_sql",
            "run_sql_transaction",
            "describe_table_schema",
            "get_database_tables",
            "create_branch",
            "prepare_database_migration",
            "complete_database_migration",
            "describe_branch",
            "delete_branch",
        ]

    def test_to_dict_uses_input_schema_key(self):
        data = TOOL_DEFINITIONS[0].to_dict()
        assert set(data) == {"name", "description", "inputSchema"}
        assert data["inputSchema"]["type"] == "object"

    def test_list_tools(self):
        assert make_tools().list_tools() == TOOL_DEFINITIONS


class TestValidateArguments:
    SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "limit": {"type": "integer"},
            "items": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["name"],
    }

    def test_valid_arguments_drop_unknown_fields(self):
        assert validate_arguments(self.SCHEMA, {"name": "a", "extra": 1}) == {"name": "a"}

    def test_missing_required(self):
        with pytest.raises(InvalidArgumentError, match="'name' is required"):
            validate_arguments(self.SCHEMA, {})

    def test_wrong_type(self):
        with pytest.raises(InvalidArgumentError, match="'limit' must be of type integer"):
            validate_arguments(self.SCHEMA, {"name": "a", "limit": "10"})

    def test_bool_is_not_integer(self):
        with pytest.raises(InvalidArgumentError):
            validate_arguments(self.SCHEMA, {"name": "a", "limit": True})

    def test_array_item_type(self):
        with pytest.raises(InvalidArgumentError, match="array of string"):
            validate_arguments(self.SCHEMA, {"name": "a", "items": ["x", 1]})

    def test_non_object_arguments(self):
        with pytest.raises(InvalidArgumentError, match="JSON object"):
            validate_arguments(self.SCHEMA, ["name"])

    def test_none_arguments_treated_as_empty(self):
        assert validate_arguments({"properties": {}}, None) == {}


class TestRetryPolicy:
    def test_retries_branchless_provisioning_error(self):
        operation = MagicMock(side_effect=[provisioning_error(), "ok"])
        assert RetryPolicy(max_attempts=2).run(operation) == "ok"
        assert operation.call_count == 2

    def test_gives_up_after_max_attempts(self):
        operation = MagicMock(side_effect=[provisioning_error(), provisioning_error()])
        with pytest.raises(BranchProvisioningError):
            RetryPolicy(max_attempts=2).run(operation)
        assert operation.call_count == 2

    def test_does_not_retry_when_branch_exists(self):
        operation = MagicMock(side_effect=provisioning_error(branch=make_branch()))
        with pytest.raises(BranchProvisioningError):
            RetryPolicy(max_attempts=3).run(operation)
        assert operation.call_count == 1

    def test_does_not_retry_other_errors(self):
        operation = MagicMock(side_effect=execution_error())
        with pytest.raises(Exception):
            RetryPolicy(max_attempts=3).run(operation)
        assert operation.call_count == 1


class TestCallTool:
    def test_unknown_tool(self):
        result = make_tools().call_tool("drop_everything", {})
        assert result.is_error
        assert "Unknown tool: drop_everything" in text_of(result)

    def test_invalid_arguments(self):
        result = make_tools().call_tool("run_sql", {"sql": "SELECT 1"})
        assert result.is_error
        assert "'databaseName' is required" in text_of(result)

    def test_unexpected_exception_becomes_error_result(self):
        client = MagicMock()
        client.list_projects.side_effect = KeyError("projects")
        result = make_tools(client=client).call_tool("list_projects", {})
        assert result.is_error
        assert text_of(result).startswith("Error:")

    def test_to_dict(self):
        result = ToolResult.text("hello", is_error=True)
        assert result.to_dict() == {
            "content": [{"type": "text", "text": "hello"}],
            "isError": True,
        }


class TestMigrationTools:
    def test_prepare_then_complete(self):
        provisioner = FakeProvisioner(primary="main")
        executor = FakeExecutor()
        tools = make_tools(provisioner=provisioner, executor=executor)

        prepared = tools.call_tool(
            "prepare_database_migration",
            {"migrationSql": ADD_LAST_LOGIN, "databaseName": "neondb", "projectId": "p1"},
        )
        assert not prepared.is_error
        assert "Temporary branch ID: br-stage-1" in text_of(prepared)
        assert "complete_database_migration" in text_of(prepared)

        migration_id = migration_id_from(prepared)
        completed = tools.call_tool(
            "complete_database_migration", {"migrationId": migration_id}
        )

        assert not completed.is_error
        payload = json.loads(text_of(completed).removeprefix("Result: "))
        assert payload["migration_id"] == migration_id
        assert payload["target_branch_id"] == "main"
        assert payload["deleted_branch"]["id"] == "br-stage-1"
        assert payload["state"] == "committed"
        assert executor.batches_on("main") == [
            ["ALTER TABLE users ADD COLUMN last_login timestamp"]
        ]

    def test_prepare_uses_default_database(self):
        executor = FakeExecutor()
        tools = make_tools(executor=executor)
        tools.call_tool(
            "prepare_database_migration", {"migrationSql": "SELECT 1", "projectId": "p1"}
        )
        assert executor.calls[0][0].database_name == "neondb"

    def test_prepare_retries_branch_creation_once(self):
        provisioner = FakeProvisioner()
        provisioner.create_failures.append(provisioning_error())
        tools = make_tools(provisioner=provisioner)

        result = tools.call_tool(
            "prepare_database_migration", {"migrationSql": "SELECT 1", "projectId": "p1"}
        )

        assert not result.is_error
        assert len(provisioner.created) == 1

    def test_prepare_reports_error_after_retries(self):
        provisioner = FakeProvisioner()
        provisioner.create_failures.extend([provisioning_error(), provisioning_error()])
        tools = make_tools(provisioner=provisioner)

        result = tools.call_tool(
            "prepare_database_migration", {"migrationSql": "SELECT 1", "projectId": "p1"}
        )

        assert result.is_error
        assert "capacity exceeded" in text_of(result)
        assert tools.orchestrator.pending() == []

    def test_prepare_failure_mentions_kept_branch(self):
        executor = FakeExecutor()
        executor.fail_on_branches["br-stage-1"] = execution_error()
        tools = make_tools(executor=executor)

        result = tools.call_tool(
            "prepare_database_migration", {"migrationSql": "SELECT 1", "projectId": "p1"}
        )

        assert result.is_error
        assert "br-stage-1 was left in place" in text_of(result)

    def test_complete_unknown_migration(self):
        result = make_tools().call_tool(
            "complete_database_migration", {"migrationId": "nope"}
        )
        assert result.is_error
        assert "Migration not found: nope" in text_of(result)

    def test_complete_reports_result_when_branch_delete_fails(self):
        provisioner = FakeProvisioner()
        tools = make_tools(provisioner=provisioner)
        prepared = tools.call_tool(
            "prepare_database_migration", {"migrationSql": "SELECT 1", "projectId": "p1"}
        )

        provisioner.delete_failures.append(provisioning_error("delete refused"))
        result = tools.call_tool(
            "complete_database_migration", {"migrationId": migration_id_from(prepared)}
        )

        assert result.is_error
        assert '"state": "committed"' in text_of(result)


class TestProjectAndBranchTools:
    def test_list_projects(self):
        client = MagicMock()
        client.list_projects.return_value = [{"id": "p1"}]
        result = make_tools(client=client).call_tool("list_projects", {"limit": 5})

        assert json.loads(text_of(result)) == [{"id": "p1"}]
        client.list_projects.assert_called_once_with(
            cursor=None, limit=5, search=None, org_id=None
        )

    def test_create_project(self):
        client = MagicMock()
        client.create_project.return_value = {
            "project": {"id": "p-new"},
            "branch": {"name": "main"},
            "databases": [{"name": "neondb"}],
        }
        result = make_tools(client=client).call_tool("create_project", {"name": "demo"})
        assert 'The project_id is "p-new"' in text_of(result)
        assert 'called "neondb"' in text_of(result)

    def test_describe_project(self):
        client = MagicMock()
        client.get_project.return_value = {"project": {"name": "demo"}}
        client.list_branches.return_value = [{"id": "br-main"}]
        result = make_tools(client=client).call_tool("describe_project", {"projectId": "p1"})
        assert "This project is called demo." in text_of(result)
        assert "br-main" in text_of(result)

    def test_delete_project(self):
        client = MagicMock()
        result = make_tools(client=client).call_tool("delete_project", {"projectId": "p1"})
        client.delete_project.assert_called_once_with("p1")
        assert "Project ID: p1" in text_of(result)

    def test_create_branch(self):
        client = MagicMock()
        client.create_branch.return_value = Branch("br-dev", "p1", "br-main", "dev")
        result = make_tools(client=client).call_tool(
            "create_branch", {"projectId": "p1", "branchName": "dev"}
        )
        client.create_branch.assert_called_once_with("p1", name="dev")
        assert "Branch ID: br-dev" in text_of(result)

    def test_delete_branch(self):
        client = MagicMock()
        result = make_tools(client=client).call_tool(
            "delete_branch", {"projectId": "p1", "branchId": "br-1"}
        )
        client.delete_branch.assert_called_once_with("p1", "br-1")
        assert "Branch ID: br-1" in text_of(result)


class TestSqlTools:
    def test_run_sql_targets_branch(self):
        executor = FakeExecutor()
        executor.rows = [{"n": 1}]
        result = make_tools(executor=executor).call_tool(
            "run_sql",
            {"sql": "SELECT 1 AS n", "databaseName": "neondb", "projectId": "p1", "branchId": "br-1"},
        )

        target, statements = executor.calls[0]
        assert target.branch_id == "br-1"
        assert target.role_name == "neondb_owner"
        assert statements == ["SELECT 1 AS n"]
        assert json.loads(text_of(result)) == [{"n": 1}]

    def test_run_sql_transaction(self):
        executor = FakeExecutor()
        make_tools(executor=executor).call_tool(
            "run_sql_transaction",
            {"sqlStatements": ["SELECT 1", "SELECT 2"], "databaseName": "neondb", "projectId": "p1"},
        )
        target, statements = executor.calls[0]
        assert target.branch_id is None
        assert statements == ["SELECT 1", "SELECT 2"]

    def test_describe_table_schema_escapes_name(self):
        executor = FakeExecutor()
        make_tools(executor=executor).call_tool(
            "describe_table_schema",
            {"tableName": "o'brien", "databaseName": "neondb", "projectId": "p1"},
        )
        _, statements = executor.calls[0]
        assert "table_name = 'o''brien'" in statements[0]

    def test_get_database_tables(self):
        executor = FakeExecutor()
        make_tools(executor=executor).call_tool(
            "get_database_tables", {"databaseName": "neondb", "projectId": "p1"}
        )
        assert "information_schema.tables" in executor.calls[0][1][0]

    def test_describe_branch_renders_tree(self):
        executor = FakeExecutor()
        executor.rows = [
            {"tree_structure": "neondb (DATABASE)"},
            {"tree_structure": "    public (SCHEMA)"},
        ]
        result = make_tools(executor=executor).call_tool(
            "describe_branch",
            {"projectId": "p1", "branchId": "br-1", "databaseName": "neondb"},
        )
        assert text_of(result) == (
            "Database Structure:\nneondb (DATABASE)\n    public (SCHEMA)"
        )

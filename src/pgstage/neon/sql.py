"""Run SQL on a Neon branch over the Postgres protocol."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Protocol

import psycopg2

from pgstage.exceptions import ExecutionError
from pgstage.types import ConnectionTarget

__all__ = ["ConnectionResolver", "NeonSqlExecutor"]

logger = logging.getLogger(__name__)

_SQL_PREVIEW_CHARS = 200


class ConnectionResolver(Protocol):
    def get_connection_uri(
        self,
        project_id: str,
        database_name: str,
        role_name: str,
        branch_id: str | None = None,
    ) -> str:
        ...


def _serialize_value(value: Any) -> Any:
    """Make a driver value JSON friendly."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, memoryview):
        return value.tobytes().hex()
    if isinstance(value, bytes):
        return value.hex()
    return value


def _rows_to_dicts(cursor: Any) -> list[dict[str, Any]]:
    if not cursor.description:
        return []
    columns = [desc[0] for desc in cursor.description]
    return [
        {col: _serialize_value(v) for col, v in zip(columns, row)}
        for row in cursor.fetchall()
    ]


def _describe_error(exc: Exception) -> str:
    pgerror = getattr(exc, "pgerror", None)
    return (pgerror or str(exc)).strip()


class NeonSqlExecutor:
    """Executes statements against the branch named by a ConnectionTarget.

    A fresh connection is opened per call; the connection URI is resolved
    through the control plane each time, so branch endpoints created moments
    earlier are picked up.
    """

    def __init__(self, resolver: ConnectionResolver, connect_timeout: int = 30) -> None:
        self._resolver = resolver
        self._connect_timeout = connect_timeout

    def _connect(self, target: ConnectionTarget) -> Any:
        uri = self._resolver.get_connection_uri(
            project_id=target.project_id,
            database_name=target.database_name,
            role_name=target.role_name,
            branch_id=target.branch_id,
        )
        try:
            return psycopg2.connect(uri, connect_timeout=self._connect_timeout)
        except psycopg2.Error as exc:
            raise ExecutionError(
                f"Could not connect to {target.database_name} on branch "
                f"{target.branch_id or 'primary'}: {_describe_error(exc)}"
            ) from exc

    def execute(self, target: ConnectionTarget, sql: str) -> list[dict[str, Any]]:
        """Run one statement and return its rows."""
        conn = self._connect(target)
        try:
            with conn.cursor() as cursor:
                try:
                    cursor.execute(sql)
                    rows = _rows_to_dicts(cursor)
                except psycopg2.Error as exc:
                    conn.rollback()
                    raise ExecutionError(_describe_error(exc), statement_index=0) from exc
            try:
                conn.commit()
            except psycopg2.Error as exc:
                raise ExecutionError(
                    f"Commit failed, transaction rolled back: {_describe_error(exc)}"
                ) from exc
            return rows
        finally:
            conn.close()

    def execute_batch(
        self, target: ConnectionTarget, statements: list[str]
    ) -> list[dict[str, Any]]:
        """Run statements in one transaction; any failure rolls back all of them."""
        logger.debug(
            f"Executing {len(statements)} statement(s) on "
            f"{target.project_id}/{target.branch_id or 'primary'}/{target.database_name}"
        )
        results: list[dict[str, Any]] = []
        conn = self._connect(target)
        try:
            with conn.cursor() as cursor:
                for index, statement in enumerate(statements):
                    try:
                        cursor.execute(statement)
                        rows = _rows_to_dicts(cursor)
                    except psycopg2.Error as exc:
                        conn.rollback()
                        raise ExecutionError(
                            f"Statement {index + 1} of {len(statements)} failed, "
                            f"transaction rolled back: {_describe_error(exc)}",
                            statement_index=index,
                        ) from exc
                    results.append(
                        {
                            "statement_index": index,
                            "sql": statement[:_SQL_PREVIEW_CHARS],
                            "rowcount": cursor.rowcount,
                            "status": cursor.statusmessage,
                            "rows": rows,
                        }
                    )
            try:
                conn.commit()
            except psycopg2.Error as exc:
                raise ExecutionError(
                    f"Commit failed, transaction rolled back: {_describe_error(exc)}"
                ) from exc
        finally:
            conn.close()

        return results
